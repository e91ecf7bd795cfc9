"""REST API endpoints for automation rule management."""

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from ops_automation.automation.errors import RuleNotFound, RuleValidationError
from ops_automation.automation.models import DomainEvent, EventVerb
from ops_automation.automation.scheduler import Scheduler
from ops_automation.models.automation import AutomationRule, ExecutionLog
from ops_automation.services.automation_service import AutomationService

router = APIRouter(prefix="/api/automations", tags=["automations"])

# Initialized in main.py
_automation_service: AutomationService | None = None
_scheduler: Scheduler | None = None


def init_automations_api(service: AutomationService, scheduler: Scheduler | None = None):
    """Initialize the automations API.

    Args:
        service: AutomationService instance
        scheduler: Scheduler instance, for status and manual ticks
    """
    global _automation_service, _scheduler
    _automation_service = service
    _scheduler = scheduler


def get_automation_service() -> AutomationService:
    """Get the automation service instance.

    Raises:
        HTTPException: If the service is not initialized
    """
    if _automation_service is None:
        raise HTTPException(status_code=500, detail="Automation service not initialized")
    return _automation_service


def get_scheduler() -> Scheduler:
    if _scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not available")
    return _scheduler


class RuleCreateRequest(BaseModel):
    """Request model for creating a rule."""

    name: str = Field(..., description="Operator-facing rule name")
    description: str | None = None
    trigger_type: str = Field(..., description="e.g. task-overdue, entity-field-changed")
    entity_kind: str | None = Field(default=None, description="Entity kind for generic triggers")
    trigger_condition: dict[str, Any] | list[Any] | str | None = Field(
        default=None, description="Structured condition or condition text"
    )
    delay: str | float | None = Field(default=None, description="e.g. 2h, 1d12h or seconds")
    action_kind: str = Field(..., description="e.g. notify, update-status")
    action_config: dict[str, Any] = Field(default_factory=dict)
    delivery_channel: Literal["in-app", "email", "both"] = "in-app"
    enabled: bool = True


class RuleUpdateRequest(BaseModel):
    """Request model for updating a rule; omitted fields are unchanged."""

    name: str | None = None
    description: str | None = None
    trigger_type: str | None = None
    entity_kind: str | None = None
    trigger_condition: dict[str, Any] | list[Any] | str | None = None
    delay: str | float | None = None
    action_kind: str | None = None
    action_config: dict[str, Any] | None = None
    delivery_channel: Literal["in-app", "email", "both"] | None = None
    enabled: bool | None = None


class ToggleRequest(BaseModel):
    enabled: bool | None = Field(default=None, description="Target state; omitted flips it")


class RunNowRequest(BaseModel):
    """Context for a manual run, e.g. {"taskId": "...", "newStatus": "done"}."""

    context: dict[str, Any] = Field(default_factory=dict)
    actor: str | None = None


class DomainEventRequest(BaseModel):
    """A domain mutation reported by the CRUD layer."""

    event_type: str = Field(..., description="<kind>.<verb>, e.g. task.updated")
    entity_id: str
    after: dict[str, Any] = Field(default_factory=dict)
    before: dict[str, Any] | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_type")
    @classmethod
    def event_type_has_known_verb(cls, v: str) -> str:
        kind, _, verb = v.partition(".")
        if not kind or verb not in {e.value for e in EventVerb}:
            raise ValueError("event_type must look like '<kind>.created|updated|assigned'")
        return v


def _rule_to_dict(rule: AutomationRule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "trigger_type": rule.trigger_type,
        "entity_kind": rule.entity_kind,
        "trigger_condition": rule.trigger_condition,
        "delay_seconds": rule.delay_seconds,
        "action_kind": rule.action_kind,
        "action_config": rule.action_config,
        "delivery_channel": rule.delivery_channel,
        "enabled": rule.enabled,
        "last_run_at": rule.last_run_at.isoformat() if rule.last_run_at else None,
        "created_at": rule.created_at.isoformat() if rule.created_at else None,
        "updated_at": rule.updated_at.isoformat() if rule.updated_at else None,
    }


def _log_to_dict(entry: ExecutionLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "rule_id": entry.rule_id,
        "action_kind": entry.action_kind,
        "entity_id": entry.entity_id,
        "status": entry.status,
        "message": entry.message,
        "context": entry.context,
        "executed_at": entry.executed_at.isoformat(),
    }


@router.get("/")
async def list_rules(
    service: AutomationService = Depends(get_automation_service),
) -> dict[str, Any]:
    """List all automation rules."""
    rules = await service.list_rules()
    return {"rules": [_rule_to_dict(r) for r in rules], "count": len(rules)}


@router.post("/", status_code=201)
async def create_rule(
    request: RuleCreateRequest,
    service: AutomationService = Depends(get_automation_service),
) -> dict[str, Any]:
    """Create a rule.

    Raises:
        HTTPException: 422 if the trigger, condition or action config is invalid
    """
    try:
        rule = await service.create_rule(request.model_dump())
    except RuleValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _rule_to_dict(rule)


@router.get("/logs")
async def list_logs(
    rule_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: AutomationService = Depends(get_automation_service),
) -> dict[str, Any]:
    """Execution history, newest first, optionally for one rule."""
    items, total = await service.list_logs(rule_id=rule_id, limit=limit, offset=offset)
    return {
        "logs": [_log_to_dict(e) for e in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.post("/events")
async def ingest_event(
    request: DomainEventRequest,
    service: AutomationService = Depends(get_automation_service),
) -> dict[str, Any]:
    """Evaluate event-driven rules against a reported domain mutation."""
    event = DomainEvent(
        event_type=request.event_type,
        entity_id=request.entity_id,
        after=request.after,
        before=request.before,
        extra=request.extra,
    )
    outcomes = await service.ingest_event(event)
    return {
        "matched": len(outcomes),
        "results": [o.__dict__ for o in outcomes],
    }


@router.get("/scheduler")
async def scheduler_status(scheduler: Scheduler = Depends(get_scheduler)) -> dict[str, Any]:
    status = scheduler.status()
    if status["last_tick_at"] is not None:
        status["last_tick_at"] = status["last_tick_at"].isoformat()
    return status


@router.post("/scheduler/tick")
async def run_tick(scheduler: Scheduler = Depends(get_scheduler)) -> dict[str, Any]:
    """Run one evaluation pass of the time-driven rules now."""
    outcomes = await scheduler.tick()
    return {"dispatched": len(outcomes), "results": [o.__dict__ for o in outcomes]}


@router.get("/{rule_id}")
async def get_rule(
    rule_id: str,
    service: AutomationService = Depends(get_automation_service),
) -> dict[str, Any]:
    try:
        rule = await service.get_rule(rule_id)
    except RuleNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _rule_to_dict(rule)


@router.put("/{rule_id}")
async def update_rule(
    rule_id: str,
    request: RuleUpdateRequest,
    service: AutomationService = Depends(get_automation_service),
) -> dict[str, Any]:
    try:
        rule = await service.update_rule(rule_id, request.model_dump(exclude_unset=True))
    except RuleNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RuleValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _rule_to_dict(rule)


@router.delete("/{rule_id}")
async def delete_rule(
    rule_id: str,
    service: AutomationService = Depends(get_automation_service),
) -> dict[str, Any]:
    """Delete a rule; its execution logs are kept."""
    try:
        await service.delete_rule(rule_id)
    except RuleNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"message": f"Rule {rule_id} deleted"}


@router.post("/{rule_id}/toggle")
async def toggle_rule(
    rule_id: str,
    request: ToggleRequest | None = None,
    service: AutomationService = Depends(get_automation_service),
) -> dict[str, Any]:
    try:
        rule = await service.toggle_rule(rule_id, request.enabled if request else None)
    except RuleNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _rule_to_dict(rule)


@router.post("/{rule_id}/run")
async def run_rule(
    rule_id: str,
    request: RunNowRequest | None = None,
    service: AutomationService = Depends(get_automation_service),
) -> dict[str, Any]:
    """Execute a rule immediately, bypassing its condition and delay."""
    request = request or RunNowRequest()
    try:
        outcome = await service.run_now(rule_id, request.context, actor=request.actor)
    except RuleNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RuleValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return outcome.__dict__


@router.get("/{rule_id}/logs")
async def list_rule_logs(
    rule_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    service: AutomationService = Depends(get_automation_service),
) -> dict[str, Any]:
    """Execution history of one rule; still available after the rule is deleted."""
    items, total = await service.list_logs(rule_id=rule_id, limit=limit, offset=offset)
    return {
        "logs": [_log_to_dict(e) for e in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
