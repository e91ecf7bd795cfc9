"""Condition evaluator for automation triggers."""

from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any
import logging

from ops_automation.automation.conditions import (
    AllOf,
    ComparisonOperator,
    FieldChanged,
    FieldComparison,
    IntervalCondition,
    TemporalCondition,
    TemporalDirection,
)
from ops_automation.automation.context import EvaluationContext
from ops_automation.automation.models import (
    Match,
    RuleDef,
    TriggerContext,
    TriggerFamily,
)

if TYPE_CHECKING:
    from ops_automation.services.entity_store import EntityStore

logger = logging.getLogger(__name__)


def to_datetime(value: Any) -> datetime | None:
    """Coerce a stored date/time value to a naive UTC datetime.

    Returns None for anything that is not a recognisable date/time.
    """
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            result = datetime.fromisoformat(text)
        except ValueError:
            return None
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            result = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        return None

    if result.tzinfo is not None:
        result = result.astimezone(timezone.utc).replace(tzinfo=None)
    return result


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def loose_eq(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    a, b = _as_number(actual), _as_number(expected)
    if a is not None and b is not None:
        return a == b
    if isinstance(actual, (datetime, date)) or isinstance(expected, (datetime, date)):
        da, db = to_datetime(actual), to_datetime(expected)
        return da is not None and da == db
    return False


def _coerce_pair(actual: Any, expected: Any) -> tuple[Any, Any]:
    a, b = _as_number(actual), _as_number(expected)
    if a is not None and b is not None:
        return a, b
    da, db = to_datetime(actual), to_datetime(expected)
    if da is not None and db is not None and not isinstance(actual, (int, float)):
        return da, db
    return actual, expected


class ConditionEvaluator:
    """Evaluator for trigger conditions.

    Evaluation is total: a missing field, an unparsable date or values
    that cannot be ordered make the conjunct false instead of raising.
    """

    def __init__(self, context: EvaluationContext):
        self.ctx = context

    def evaluate(self, condition: Any) -> bool:
        if isinstance(condition, AllOf):
            # Short-circuits on the first failing conjunct.
            return all(self.evaluate(c) for c in condition.conditions)
        if isinstance(condition, FieldComparison):
            return self._evaluate_comparison(condition)
        if isinstance(condition, TemporalCondition):
            return self._evaluate_temporal(condition)
        if isinstance(condition, FieldChanged):
            return self._evaluate_changed(condition)
        if isinstance(condition, IntervalCondition):
            return self._evaluate_interval(condition)
        raise ValueError(f"Unknown condition type: {type(condition).__name__}")

    def _evaluate_comparison(self, cond: FieldComparison) -> bool:
        actual = self.ctx.resolve_path(cond.field)
        expected = cond.value
        op = cond.operator

        if op == ComparisonOperator.EQ:
            return loose_eq(actual, expected)
        if op == ComparisonOperator.NEQ:
            return not loose_eq(actual, expected)
        if actual is None or expected is None:
            return False

        left, right = _coerce_pair(actual, expected)
        try:
            if op == ComparisonOperator.GT:
                return left > right
            if op == ComparisonOperator.LT:
                return left < right
            if op == ComparisonOperator.GTE:
                return left >= right
            if op == ComparisonOperator.LTE:
                return left <= right
        except TypeError:
            return False
        raise ValueError(f"Unknown comparison operator: {op}")

    def _evaluate_temporal(self, cond: TemporalCondition) -> bool:
        moment = to_datetime(self.ctx.resolve_path(cond.field))
        if moment is None:
            return False
        now = to_datetime(self.ctx.now)

        if cond.direction == TemporalDirection.OVERDUE_BY:
            return now - moment > cond.threshold
        return now <= moment <= now + cond.threshold

    def _evaluate_changed(self, cond: FieldChanged) -> bool:
        if self.ctx.old_values is None:
            return False
        before = self.ctx.resolve_path(cond.field, self.ctx.old_values)
        after = self.ctx.resolve_path(cond.field)
        if loose_eq(before, after) and (
            self.ctx.has_path(cond.field, self.ctx.old_values) == self.ctx.has_path(cond.field)
        ):
            return False
        if cond.checks_from and not loose_eq(before, cond.from_value):
            return False
        if cond.checks_to and not loose_eq(after, cond.to_value):
            return False
        return True

    def _evaluate_interval(self, cond: IntervalCondition) -> bool:
        if self.ctx.last_run_at is None:
            return True
        now = to_datetime(self.ctx.now)
        last_run = to_datetime(self.ctx.last_run_at)
        if now is None or last_run is None:
            return False
        if cond.cron is not None:
            due = cond.next_cron_run(last_run)
            return due is not None and due <= now
        return now - last_run >= cond.every


def evaluate_rule(
    rule: RuleDef,
    entity: dict[str, Any],
    now: datetime,
    before: dict[str, Any] | None = None,
) -> bool:
    """Evaluate a rule's effective condition against one snapshot."""
    ctx = EvaluationContext(
        entity=entity, old_values=before, now=now, last_run_at=rule.last_run_at
    )
    return ConditionEvaluator(ctx).evaluate(rule.effective_condition())


def match_event(rule: RuleDef, context: TriggerContext, now: datetime) -> Match | None:
    """Match an event-driven rule against an event context.

    The rule matches when its trigger listens to the event's verb on the
    event's entity kind and its condition holds on the after snapshot.
    """
    if rule.family != TriggerFamily.EVENT or not rule.enabled:
        return None
    if context.event_type is None or "." not in context.event_type:
        return None
    kind, verb = context.event_type.split(".", 1)
    if rule.spec.event_verb is None or rule.spec.event_verb.value != verb:
        return None
    if rule.entity_kind and rule.entity_kind != kind:
        return None
    if not evaluate_rule(rule, context.fields, now, before=context.before):
        return None
    return Match(rule=rule, context=context, matched_at=now)


async def scan_entities(rule: RuleDef, store: "EntityStore", now: datetime) -> list[Match]:
    """Evaluate a time-driven rule against current entity state.

    Candidates come from the entity store filtered by the trigger's entity
    kind (and any plain equality conjuncts); the full condition is then
    applied to each one.
    """
    if rule.family != TriggerFamily.TIME or not rule.enabled:
        return []

    if not rule.spec.has_entity:
        if evaluate_rule(rule, {}, now):
            return [Match(rule=rule, context=TriggerContext(event_type="tick"), matched_at=now)]
        return []

    store_filter = {
        c.field: c.value
        for c in rule.effective_conditions()
        if isinstance(c, FieldComparison)
        and c.operator == ComparisonOperator.EQ
        and "." not in c.field
        and isinstance(c.value, (str, int, float, bool))
    }
    candidates = await store.find_entities_matching(rule.entity_kind, store_filter)
    logger.debug(f"Rule {rule.name}: {len(candidates)} candidate {rule.entity_kind} entities")

    matches = []
    for entity in candidates:
        if evaluate_rule(rule, entity.properties, now):
            matches.append(
                Match(
                    rule=rule,
                    context=TriggerContext(
                        entity_kind=entity.kind,
                        entity_id=entity.id,
                        fields=dict(entity.properties),
                        event_type="tick",
                    ),
                    matched_at=now,
                )
            )
    return matches
