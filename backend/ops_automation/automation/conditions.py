"""Trigger condition shapes.

Conditions form a small closed set rather than an expression language so
that evaluation is always total and side-effect free:

- ``compare``: field <operator> value
- ``temporal``: a date field overdue by / upcoming within a threshold
- ``changed``: a field changed between the before and after snapshot
- ``interval``: enough time (or a cron time) has passed since the rule last ran
- ``all``: conjunction of the above

Disjunction is deliberately unsupported; an operator wanting OR creates
two rules.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

import pydantic
from apscheduler.triggers.cron import CronTrigger
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_serializer,
    field_validator,
    model_validator,
)

from ops_automation.automation.durations import format_duration, parse_duration
from ops_automation.automation.errors import RuleValidationError


class ComparisonOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"


class TemporalDirection(str, Enum):
    OVERDUE_BY = "overdue-by"
    UPCOMING_WITHIN = "upcoming-within"


class FieldComparison(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["compare"] = "compare"
    field: str = Field(min_length=1)
    operator: ComparisonOperator
    value: Any = None


class TemporalCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["temporal"] = "temporal"
    field: str = Field(min_length=1)
    threshold: timedelta
    direction: TemporalDirection

    @field_validator("threshold", mode="before")
    @classmethod
    def _parse_threshold(cls, v: Any) -> timedelta:
        return parse_duration(v)

    @field_serializer("threshold")
    def _serialize_threshold(self, v: timedelta) -> str:
        return format_duration(v)


class FieldChanged(BaseModel):
    """Field changed between snapshots, optionally from/to given values.

    ``from``/``to`` are only checked when they were supplied, so
    ``{"field": "assignee", "to": null}`` means "was unassigned".
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["changed"] = "changed"
    field: str = Field(min_length=1)
    from_value: Any = Field(default=None, alias="from")
    to_value: Any = Field(default=None, alias="to")

    @property
    def checks_from(self) -> bool:
        return "from_value" in self.model_fields_set

    @property
    def checks_to(self) -> bool:
        return "to_value" in self.model_fields_set


class IntervalCondition(BaseModel):
    """Rule-level schedule for interval-cron triggers.

    Either a fixed ``every`` period since the last successful run, or a
    standard five-field crontab expression (``"0 9 * * *"``) evaluated in
    UTC: the rule is due once the first cron time after its last run has
    passed. Cron times are only observed at scheduler ticks, so the
    effective resolution is the tick interval.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["interval"] = "interval"
    every: timedelta = timedelta(0)
    cron: str | None = None

    @field_validator("every", mode="before")
    @classmethod
    def _parse_every(cls, v: Any) -> timedelta:
        return parse_duration(v)

    @field_validator("cron")
    @classmethod
    def _check_cron(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = " ".join(v.split())
        CronTrigger.from_crontab(v, timezone=timezone.utc)
        return v

    @model_validator(mode="after")
    def _one_schedule(self) -> "IntervalCondition":
        if self.cron is not None and self.every > timedelta(0):
            raise ValueError("An interval takes either 'every' or 'cron', not both")
        return self

    @field_serializer("every")
    def _serialize_every(self, v: timedelta) -> str:
        return format_duration(v)

    def next_cron_run(self, after: datetime) -> datetime | None:
        """First cron time strictly after ``after`` (naive UTC in and out)."""
        trigger = CronTrigger.from_crontab(self.cron, timezone=timezone.utc)
        start = after.replace(tzinfo=timezone.utc) + timedelta(microseconds=1)
        next_run = trigger.get_next_fire_time(None, start)
        if next_run is None:
            return None
        return next_run.astimezone(timezone.utc).replace(tzinfo=None)


LeafCondition = Annotated[
    Union[FieldComparison, TemporalCondition, FieldChanged, IntervalCondition],
    Field(discriminator="type"),
]


class AllOf(BaseModel):
    """Conjunction; an empty list always matches."""

    model_config = ConfigDict(frozen=True)

    type: Literal["all"] = "all"
    conditions: list[LeafCondition] = Field(default_factory=list)


Condition = Annotated[
    Union[FieldComparison, TemporalCondition, FieldChanged, IntervalCondition, AllOf],
    Field(discriminator="type"),
]

_condition_adapter = TypeAdapter(Condition)

_DISJUNCTION_KEYS = ("any", "or", "any_of", "anyOf")
_CONJUNCTION_KEYS = ("all", "and", "all_of", "allOf")


def parse_condition(raw: Any) -> Union[FieldComparison, TemporalCondition, FieldChanged, IntervalCondition, AllOf]:
    """Parse a trigger condition from its stored or authored form.

    Accepts condition text (parsed by the condition grammar), a list of
    conjuncts, an explicit ``{"type": ...}`` dict, or the shorthand dict
    shapes without a type (``{field, operator, value}``,
    ``{field, thresholdDuration, direction}``, ``{every}``, ``{all: [...]}``).

    Raises:
        RuleValidationError: If the condition is malformed or uses OR
    """
    if raw is None or raw == {} or raw == "":
        return AllOf()

    if isinstance(raw, str):
        from ops_automation.automation.parser import ConditionParser

        raw = ConditionParser().parse(raw)

    normalized = _normalize(raw)
    try:
        return _condition_adapter.validate_python(normalized)
    except pydantic.ValidationError as e:
        raise RuleValidationError(f"Invalid trigger condition: {e}") from None


def _normalize(raw: Any) -> Any:
    if isinstance(raw, BaseModel):
        return raw
    if isinstance(raw, list):
        return {"type": "all", "conditions": [_normalize(item) for item in raw]}
    if not isinstance(raw, dict):
        raise RuleValidationError(f"Invalid trigger condition: {raw!r}")

    if raw.get("type") in ("any", "or") or any(k in raw for k in _DISJUNCTION_KEYS):
        raise RuleValidationError(
            "Disjunction is not supported in trigger conditions; create one rule per alternative"
        )

    data = dict(raw)
    for key in _CONJUNCTION_KEYS:
        if key in data and "type" not in data:
            return {"type": "all", "conditions": [_normalize(c) for c in data[key]]}
    if data.get("type") == "all":
        data["conditions"] = [_normalize(c) for c in data.get("conditions", [])]
        return data

    if "thresholdDuration" in data:
        data["threshold"] = data.pop("thresholdDuration")
    if "threshold_duration" in data:
        data["threshold"] = data.pop("threshold_duration")

    if "type" not in data:
        if "operator" in data:
            data["type"] = "compare"
        elif "direction" in data:
            data["type"] = "temporal"
        elif "every" in data or "cron" in data:
            data["type"] = "interval"
        elif "from" in data or "to" in data or data.get("changed") is True:
            data["type"] = "changed"
        else:
            raise RuleValidationError(f"Unrecognised trigger condition shape: {raw!r}")
    data.pop("changed", None)
    return data


def conjuncts(condition: Any) -> list[Any]:
    """Flatten a condition into its list of leaf conjuncts."""
    if isinstance(condition, AllOf):
        return list(condition.conditions)
    return [condition]


def dump_condition(condition: Any) -> dict[str, Any]:
    """Serialize a condition into the JSON form stored on the rule.

    Unset optional fields are left out so that a ``changed`` condition
    without ``from``/``to`` round-trips without gaining checks.
    """
    if isinstance(condition, AllOf):
        return {"type": "all", "conditions": [dump_condition(c) for c in condition.conditions]}
    data = condition.model_dump(mode="json", by_alias=True, exclude_unset=True)
    data["type"] = condition.type
    return data
