import pytest
from pydantic import ValidationError

from ops_automation.core.config import Settings, settings


def test_settings_loaded():
    assert settings.HOST == "0.0.0.0"
    assert settings.PORT == 8000
    assert settings.AUTOMATION_MAX_WORKERS > 0


def test_database_url(monkeypatch):
    monkeypatch.delenv("POSTGRES_HOST", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert "sqlite" in Settings(_env_file=None).effective_database_url


def test_postgres_url_is_assembled():
    s = Settings(_env_file=None, POSTGRES_HOST="db", POSTGRES_USER="ops", POSTGRES_PASSWORD="pw")
    assert s.effective_database_url == "postgresql+asyncpg://ops:pw@db:5432/ops_automation"


def test_cors_origins_from_comma_list():
    s = Settings(_env_file=None, CORS_ORIGINS="http://a.test, http://b.test")
    assert s.CORS_ORIGINS == ["http://a.test", "http://b.test"]


def test_automation_defaults():
    s = Settings(_env_file=None)
    assert s.AUTOMATION_TICK_INTERVAL_SECONDS == 3600.0
    assert s.AUTOMATION_REVALIDATE_DELAYED is False
    assert s.AUTOMATION_SUPPRESS_REPEAT_MATCHES is True
    assert s.smtp_configured is False


def test_tick_interval_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, AUTOMATION_TICK_INTERVAL_SECONDS=0)
