"""Fixtures for API tests."""

from datetime import datetime
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from ops_automation.api import automations
from ops_automation.automation.actions import build_default_registry
from ops_automation.automation.dispatcher import Dispatcher
from ops_automation.automation.rule_registry import RuleRegistry
from ops_automation.automation.scheduler import Scheduler
from ops_automation.core.database import Base
from ops_automation.services.automation_service import AutomationService
from ops_automation.services.entity_store import SqlEntityStore

API_NOW = datetime(2026, 3, 10, 9, 0, 0)


@pytest.fixture
def api_env(tmp_path, notifier):
    """Engine, store and service for one API test.

    The engine is created without a connection pool so that every
    connection belongs to the TestClient's event loop.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    store = SqlEntityStore(session_factory)
    rules = RuleRegistry()
    actions = build_default_registry(store, notifier)
    dispatcher = Dispatcher(rules, actions, store, session_factory, clock=lambda: API_NOW)
    service = AutomationService(session_factory, rules, actions, dispatcher)
    scheduler = Scheduler(dispatcher, clock=lambda: API_NOW)
    return SimpleNamespace(
        engine=engine, store=store, rules=rules, service=service, scheduler=scheduler
    )


@pytest.fixture
def client_with_automations(api_env):
    """Create a test client with the automations API wired to a fresh database."""
    app = FastAPI()
    app.include_router(automations.router)
    app.dependency_overrides[automations.get_automation_service] = lambda: api_env.service
    app.dependency_overrides[automations.get_scheduler] = lambda: api_env.scheduler

    async def create_tables():
        async with api_env.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    with TestClient(app) as client:
        client.portal.call(create_tables)
        yield client
        client.portal.call(api_env.engine.dispose)


@pytest.fixture
def overdue_rule():
    return {
        "name": "Overdue reminder",
        "trigger_type": "task-overdue",
        "trigger_condition": "dueAt OVERDUE_BY 1d",
        "action_kind": "notify",
        "action_config": {"title": "Overdue: {title}", "recipients": ["manager"]},
    }
