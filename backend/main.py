import uvicorn
from ops_automation.core.config import settings


def main():
    """Start the automation API server."""
    uvicorn.run("ops_automation.main:app", host=settings.HOST, port=settings.PORT, reload=True)


if __name__ == "__main__":
    main()
