"""Shared fixtures for automation tests."""

from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from ops_automation.core.database import Base
from ops_automation.automation.actions import build_default_registry
from ops_automation.automation.dispatcher import Dispatcher
from ops_automation.automation.rule_registry import RuleRegistry
from ops_automation.automation.worker_pool import WorkerPool
from ops_automation.services.automation_service import AutomationService
from ops_automation.services.entity_store import SqlEntityStore
from ops_automation.services.notifications import NotificationResult, Notifier


# Fixed evaluation time used across the tests
NOW = datetime(2026, 3, 10, 9, 0, 0)


class RecordingChannel:
    """Notification channel that records deliveries instead of sending."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[dict] = []

    async def send(self, recipient, subject, body, related_kind=None, related_id=None):
        if self.fail:
            return NotificationResult(False, "channel unreachable")
        self.sent.append(
            {
                "recipient": recipient,
                "subject": subject,
                "body": body,
                "related_kind": related_kind,
                "related_id": related_id,
            }
        )
        return NotificationResult(True, "recorded")


@pytest.fixture
async def test_engine(tmp_path):
    """Create a test database engine.

    A file database gives every session its own connection, so concurrent
    dispatches commit independently.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'automation.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory):
    return SqlEntityStore(session_factory)


@pytest.fixture
def in_app_channel():
    return RecordingChannel()


@pytest.fixture
def email_channel():
    return RecordingChannel()


@pytest.fixture
def notifier(in_app_channel, email_channel):
    return Notifier(in_app_channel, email_channel)


@pytest.fixture
def action_registry(store, notifier):
    return build_default_registry(store, notifier)


@pytest.fixture
def rule_registry():
    return RuleRegistry()


@pytest.fixture
def dispatcher(rule_registry, action_registry, store, session_factory):
    return Dispatcher(
        rule_registry,
        action_registry,
        store,
        session_factory,
        pool=WorkerPool(max_workers=4, timeout=5.0),
        clock=lambda: NOW,
    )


@pytest.fixture
def service(session_factory, rule_registry, action_registry, dispatcher):
    return AutomationService(session_factory, rule_registry, action_registry, dispatcher)


@pytest.fixture
def now():
    """The dispatcher clock's fixed time."""
    return NOW
