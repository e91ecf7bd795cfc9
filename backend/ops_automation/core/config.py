from typing import Any
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    CORS_ORIGINS: Any = ["http://localhost:3000"]
    LOG_LEVEL: str = "INFO"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            if v.startswith("[") and v.endswith("]"):
                import json

                try:
                    return json.loads(v)
                except ValueError:
                    pass
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, list):
            return v
        return ["http://localhost:3000"]

    # Database
    # Either a full DATABASE_URL, or POSTGRES_HOST plus the parts below.
    DATABASE_URL: str = "sqlite+aiosqlite:///./ops_automation.db"

    POSTGRES_HOST: str | None = None
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "ops_automation"

    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Automation engine
    AUTOMATION_SCHEDULER_ENABLED: bool = True
    AUTOMATION_TICK_INTERVAL_SECONDS: float = 3600.0
    AUTOMATION_MAX_WORKERS: int = 8
    AUTOMATION_ACTION_TIMEOUT_SECONDS: float = 30.0
    AUTOMATION_SHUTDOWN_GRACE_SECONDS: float = 10.0
    AUTOMATION_REVALIDATE_DELAYED: bool = False
    AUTOMATION_SUPPRESS_REPEAT_MATCHES: bool = True

    # Notification channels
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    EMAIL_FROM_ADDRESS: str = "automations@localhost"
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    @field_validator("AUTOMATION_TICK_INTERVAL_SECONDS", "AUTOMATION_MAX_WORKERS")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @property
    def effective_database_url(self) -> str:
        """Return the database URL, built from POSTGRES_* when POSTGRES_HOST is set."""
        if self.POSTGRES_HOST:
            return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        return self.DATABASE_URL

    @property
    def smtp_configured(self) -> bool:
        return bool(self.SMTP_HOST and self.SMTP_USERNAME and self.SMTP_PASSWORD)


settings = Settings()
