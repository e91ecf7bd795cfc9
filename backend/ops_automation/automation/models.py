"""Shared data models for the automation engine."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel

from ops_automation.automation.conditions import (
    AllOf,
    ComparisonOperator,
    FieldComparison,
    conjuncts,
)


class TriggerFamily(str, Enum):
    EVENT = "event"
    TIME = "time"


class TriggerType(str, Enum):
    ENTITY_CREATED = "entity-created"
    ENTITY_FIELD_CHANGED = "entity-field-changed"
    ENTITY_ASSIGNED = "entity-assigned"
    TIME_ARRIVAL = "time-arrival"
    INTERVAL_CRON = "interval-cron"
    TASK_OVERDUE = "task-overdue"
    BOOKING_UPCOMING = "booking-upcoming"
    INVOICE_UNPAID = "invoice-unpaid"
    STAFF_IDLE = "staff-idle"
    PROPOSAL_PENDING = "proposal-pending"


class EntityKind(str, Enum):
    TASK = "task"
    BOOKING = "booking"
    INVOICE = "invoice"
    PROPOSAL = "proposal"
    STAFF = "staff"
    CLIENT = "client"


class DeliveryChannel(str, Enum):
    IN_APP = "in-app"
    EMAIL = "email"
    BOTH = "both"


class ExecutionStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


class EventVerb(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ASSIGNED = "assigned"


def _neq(field_name: str, value: Any) -> FieldComparison:
    return FieldComparison(field=field_name, operator=ComparisonOperator.NEQ, value=value)


def _eq(field_name: str, value: Any) -> FieldComparison:
    return FieldComparison(field=field_name, operator=ComparisonOperator.EQ, value=value)


@dataclass(frozen=True)
class TriggerSpec:
    """What a trigger type evaluates against.

    Attributes:
        family: Event-driven or time-driven
        entity_kind: Fixed entity kind, or None when the rule supplies it
        event_verb: Domain event verb an event trigger listens to
        base_conditions: Conjuncts prepended to every rule of this type
        default_condition: Condition used when the rule supplies none
        requires_temporal: Whether the rule condition needs a temporal conjunct
        has_entity: False only for interval triggers, which fire per rule
    """

    family: TriggerFamily
    entity_kind: EntityKind | None = None
    event_verb: EventVerb | None = None
    base_conditions: tuple = ()
    default_condition: dict[str, Any] | None = None
    requires_temporal: bool = False
    has_entity: bool = True


TRIGGER_SPECS: dict[TriggerType, TriggerSpec] = {
    TriggerType.ENTITY_CREATED: TriggerSpec(
        family=TriggerFamily.EVENT, event_verb=EventVerb.CREATED
    ),
    TriggerType.ENTITY_FIELD_CHANGED: TriggerSpec(
        family=TriggerFamily.EVENT, event_verb=EventVerb.UPDATED
    ),
    TriggerType.ENTITY_ASSIGNED: TriggerSpec(
        family=TriggerFamily.EVENT, event_verb=EventVerb.ASSIGNED
    ),
    TriggerType.TIME_ARRIVAL: TriggerSpec(
        family=TriggerFamily.TIME, requires_temporal=True
    ),
    TriggerType.INTERVAL_CRON: TriggerSpec(
        family=TriggerFamily.TIME, has_entity=False, default_condition={"type": "interval"}
    ),
    TriggerType.TASK_OVERDUE: TriggerSpec(
        family=TriggerFamily.TIME,
        entity_kind=EntityKind.TASK,
        base_conditions=(_neq("status", "done"), _neq("status", "completed")),
        default_condition={"field": "dueAt", "direction": "overdue-by", "threshold": "1d"},
        requires_temporal=True,
    ),
    TriggerType.BOOKING_UPCOMING: TriggerSpec(
        family=TriggerFamily.TIME,
        entity_kind=EntityKind.BOOKING,
        base_conditions=(_neq("status", "cancelled"),),
        default_condition={"field": "startTime", "direction": "upcoming-within", "threshold": "7d"},
        requires_temporal=True,
    ),
    TriggerType.INVOICE_UNPAID: TriggerSpec(
        family=TriggerFamily.TIME,
        entity_kind=EntityKind.INVOICE,
        base_conditions=(_neq("status", "paid"), _neq("status", "void")),
        default_condition={"field": "dueDate", "direction": "overdue-by", "threshold": "30d"},
        requires_temporal=True,
    ),
    TriggerType.STAFF_IDLE: TriggerSpec(
        family=TriggerFamily.TIME,
        entity_kind=EntityKind.STAFF,
        base_conditions=(_neq("active", False),),
        default_condition={"field": "lastActiveAt", "direction": "overdue-by", "threshold": "3d"},
        requires_temporal=True,
    ),
    TriggerType.PROPOSAL_PENDING: TriggerSpec(
        family=TriggerFamily.TIME,
        entity_kind=EntityKind.PROPOSAL,
        base_conditions=(_eq("status", "sent"),),
        default_condition={"field": "createdAt", "direction": "overdue-by", "threshold": "7d"},
        requires_temporal=True,
    ),
}


def _first(mapping: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


@dataclass
class TriggerContext:
    """Transient payload carried through one dispatch.

    ``fields`` is the entity's (after) snapshot, ``before`` the snapshot
    prior to the mutation when there is one, and ``extra`` holds values
    supplied with the event or by an operator (``taskId``, ``newStatus``,
    ``subtasks``, ``message``).
    """

    entity_kind: str | None = None
    entity_id: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    before: dict[str, Any] | None = None
    event_type: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        if name in self.extra:
            return self.extra[name]
        return self.fields.get(name, default)

    @property
    def task_id(self) -> str | None:
        value = _first(self.extra, "taskId", "task_id")
        if value is None and self.entity_kind == EntityKind.TASK.value:
            value = self.entity_id
        if value is None:
            value = _first(self.fields, "taskId", "task_id")
        return str(value) if value is not None else None

    @property
    def new_status(self) -> str | None:
        return _first(self.extra, "newStatus", "new_status")

    @property
    def subtasks(self) -> list[str] | None:
        return _first(self.extra, "subtasks")

    @property
    def message(self) -> str | None:
        return _first(self.extra, "message")

    def template_values(self) -> dict[str, Any]:
        """Values available to ``{placeholder}`` message templates."""
        values = {**self.fields, **self.extra}
        values.setdefault("entityId", self.entity_id)
        values.setdefault("entityKind", self.entity_kind)
        return values

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe payload stored on the execution log."""
        payload: dict[str, Any] = {
            "entityKind": self.entity_kind,
            "entityId": self.entity_id,
            "eventType": self.event_type,
            "fields": self.fields,
        }
        if self.before is not None:
            payload["before"] = self.before
        if self.extra:
            payload["extra"] = self.extra
        return _json_safe(payload)

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> "TriggerContext":
        """Build a context from an operator-supplied payload (run-now)."""
        payload = dict(payload or {})
        entity_kind = payload.pop("entityKind", None) or payload.pop("entity_kind", None)
        entity_id = payload.pop("entityId", None) or payload.pop("entity_id", None)
        fields = payload.pop("fields", None) or {}
        before = payload.pop("before", None)
        if entity_id is None and _first(payload, "taskId", "task_id") is not None:
            entity_kind = entity_kind or EntityKind.TASK.value
            entity_id = str(_first(payload, "taskId", "task_id"))
        return cls(
            entity_kind=entity_kind,
            entity_id=str(entity_id) if entity_id is not None else None,
            fields=fields,
            before=before,
            event_type="manual",
            extra=payload,
        )


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (datetime,)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


@dataclass
class DomainEvent:
    """A mutation to a business entity."""

    event_type: str  # "<kind>.<verb>", e.g. "task.updated"
    entity_id: str
    after: dict[str, Any] = field(default_factory=dict)
    before: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def entity_kind(self) -> str:
        return self.event_type.split(".", 1)[0]

    @property
    def verb(self) -> str:
        parts = self.event_type.split(".", 1)
        return parts[1] if len(parts) > 1 else ""

    def to_context(self) -> TriggerContext:
        return TriggerContext(
            entity_kind=self.entity_kind,
            entity_id=self.entity_id,
            fields=dict(self.after),
            before=dict(self.before) if self.before is not None else None,
            event_type=self.event_type,
            extra=dict(self.extra),
        )


@dataclass
class EntityRecord:
    """A business entity as returned by the entity store."""

    id: str
    kind: str
    properties: dict[str, Any] = field(default_factory=dict)
    parent_id: str | None = None


@dataclass
class ActionResult:
    """Outcome of one action invocation."""

    ok: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleDef:
    """A validated automation rule as the engine sees it."""

    id: str
    name: str
    trigger_type: TriggerType
    condition: Any
    action_kind: str
    action_config: BaseModel
    entity_kind: str | None = None
    delay: timedelta = timedelta(0)
    delivery_channel: DeliveryChannel = DeliveryChannel.IN_APP
    enabled: bool = True
    last_run_at: datetime | None = None
    description: str | None = None

    @property
    def spec(self) -> TriggerSpec:
        return TRIGGER_SPECS[self.trigger_type]

    @property
    def family(self) -> TriggerFamily:
        return self.spec.family

    def effective_conditions(self) -> list[Any]:
        """Base conditions of the trigger type followed by the rule's own."""
        return list(self.spec.base_conditions) + conjuncts(self.condition)

    def effective_condition(self) -> AllOf:
        return AllOf(conditions=self.effective_conditions())


@dataclass
class Match:
    """A rule whose condition held for one entity (or, for interval rules, none)."""

    rule: RuleDef
    context: TriggerContext
    matched_at: datetime

    @property
    def key(self) -> tuple[str, str | None]:
        return (self.rule.id, self.context.entity_id)
