# backend/ops_automation/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ops_automation.core.config import settings
from ops_automation.core.database import async_session
from ops_automation.core.init_db import init_db
from ops_automation.core.logging_config import configure_logging
from ops_automation.api import automations
from ops_automation.automation.actions import build_default_registry
from ops_automation.automation.dispatcher import Dispatcher
from ops_automation.automation.event_emitter import DomainEventEmitter
from ops_automation.automation.rule_registry import RuleRegistry
from ops_automation.automation.scheduler import Scheduler
from ops_automation.automation.worker_pool import WorkerPool
from ops_automation.services.automation_service import AutomationService
from ops_automation.services.entity_store import SqlEntityStore
from ops_automation.services.notifications import EmailChannel, InAppChannel, Notifier

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Operations Automation API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    await init_db()

    entity_store = SqlEntityStore(async_session)
    notifier = Notifier(InAppChannel(async_session), EmailChannel.from_settings(settings))
    action_registry = build_default_registry(
        entity_store, notifier, webhook_timeout=settings.WEBHOOK_TIMEOUT_SECONDS
    )
    rule_registry = RuleRegistry()

    dispatcher = Dispatcher(
        rule_registry,
        action_registry,
        entity_store,
        async_session,
        pool=WorkerPool(
            max_workers=settings.AUTOMATION_MAX_WORKERS,
            timeout=settings.AUTOMATION_ACTION_TIMEOUT_SECONDS,
        ),
        revalidate_delayed=settings.AUTOMATION_REVALIDATE_DELAYED,
        suppress_repeat_matches=settings.AUTOMATION_SUPPRESS_REPEAT_MATCHES,
    )

    # CRUD code in this process publishes entity mutations here
    event_emitter = DomainEventEmitter()
    event_emitter.subscribe(dispatcher.on_event)

    service = AutomationService(async_session, rule_registry, action_registry, dispatcher)
    await service.load_rules()

    scheduler = Scheduler(dispatcher, interval_seconds=settings.AUTOMATION_TICK_INTERVAL_SECONDS)
    if settings.AUTOMATION_SCHEDULER_ENABLED:
        await scheduler.start()
    else:
        logger.warning("Automation scheduler disabled; time-driven rules run only on manual ticks")

    automations.init_automations_api(service, scheduler)

    # Store in app state for access
    app.state.entity_store = entity_store
    app.state.action_registry = action_registry
    app.state.rule_registry = rule_registry
    app.state.dispatcher = dispatcher
    app.state.event_emitter = event_emitter
    app.state.automation_service = service
    app.state.scheduler = scheduler


@app.on_event("shutdown")
async def shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        await scheduler.stop(settings.AUTOMATION_SHUTDOWN_GRACE_SECONDS)


app.include_router(automations.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
