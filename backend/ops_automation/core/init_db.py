# backend/ops_automation/core/init_db.py
import asyncio
import logging
from ops_automation.core.database import engine, Base
# Import all models to register them with Base
from ops_automation.models import AutomationRule, ExecutionLog, BusinessEntity, Notification  # noqa: F401

logger = logging.getLogger(__name__)


async def init_db():
    """Create any missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")


if __name__ == "__main__":
    asyncio.run(init_db())
