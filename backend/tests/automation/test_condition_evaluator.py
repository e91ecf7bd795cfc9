"""Tests for trigger condition evaluation."""

from datetime import datetime, timedelta

import pytest

from ops_automation.automation.actions import NotifyConfig
from ops_automation.automation.conditions import parse_condition
from ops_automation.automation.context import EvaluationContext
from ops_automation.automation.evaluator import (
    ConditionEvaluator,
    evaluate_rule,
    loose_eq,
    match_event,
    scan_entities,
    to_datetime,
)
from ops_automation.automation.models import EntityRecord, RuleDef, TriggerContext, TriggerType

NOW = datetime(2026, 3, 10, 9, 0, 0)


def make_rule(trigger_type, condition=None, **kwargs) -> RuleDef:
    return RuleDef(
        id=kwargs.pop("id", "rule-1"),
        name=kwargs.pop("name", "Test rule"),
        trigger_type=trigger_type,
        condition=parse_condition(condition),
        action_kind="notify",
        action_config=NotifyConfig(),
        **kwargs,
    )


def evaluate(condition, entity, old_values=None, last_run_at=None) -> bool:
    ctx = EvaluationContext(entity=entity, old_values=old_values, now=NOW, last_run_at=last_run_at)
    return ConditionEvaluator(ctx).evaluate(parse_condition(condition))


class FakeStore:
    def __init__(self, records):
        self.records = records
        self.queries = []

    async def find_entities_matching(self, kind, filter=None):
        self.queries.append((kind, dict(filter or {})))
        return [r for r in self.records if r.kind == kind]


class TestHelpers:
    def test_to_datetime(self):
        assert to_datetime("2026-03-10T09:00:00Z") == NOW
        assert to_datetime("2026-03-10T10:00:00+01:00") == NOW
        assert to_datetime("2026-03-10") == datetime(2026, 3, 10)
        assert to_datetime("not a date") is None
        assert to_datetime(None) is None

    def test_loose_eq(self):
        assert loose_eq("5", 5)
        assert loose_eq(2.0, 2)
        assert not loose_eq(None, "done")


class TestComparison:
    def test_eq_and_neq(self):
        assert evaluate('status == "sent"', {"status": "sent"})
        assert not evaluate('status != "sent"', {"status": "sent"})

    def test_neq_on_missing_field_holds(self):
        assert evaluate('status != "done"', {})

    def test_ordering(self):
        assert evaluate("amount > 100", {"amount": 250})
        assert evaluate("amount <= 100", {"amount": "100"})
        assert not evaluate("amount < 100", {"amount": 250})

    def test_missing_field_is_false(self):
        assert not evaluate("amount > 100", {})

    def test_type_mismatch_is_false(self):
        assert not evaluate("amount > 100", {"amount": "lots"})
        assert not evaluate("amount > 100", {"amount": {"value": 5}})

    def test_dates_compare_as_dates(self):
        assert evaluate('dueAt < "2026-04-01"', {"dueAt": "2026-03-15T00:00:00Z"})

    def test_nested_and_properties_paths(self):
        assert evaluate('client.tier == "gold"', {"client": {"tier": "gold"}})
        assert evaluate('status == "todo"', {"properties": {"status": "todo"}})


class TestTemporal:
    def test_overdue_by(self):
        assert evaluate("dueAt OVERDUE_BY 1d", {"dueAt": (NOW - timedelta(days=3)).isoformat()})
        assert not evaluate("dueAt OVERDUE_BY 1d", {"dueAt": (NOW - timedelta(hours=12)).isoformat()})
        assert not evaluate("dueAt OVERDUE_BY 1d", {"dueAt": (NOW + timedelta(days=3)).isoformat()})

    def test_upcoming_within(self):
        assert evaluate("startTime UPCOMING_WITHIN 7d", {"startTime": NOW + timedelta(days=2)})
        assert not evaluate("startTime UPCOMING_WITHIN 7d", {"startTime": NOW + timedelta(days=8)})
        assert not evaluate("startTime UPCOMING_WITHIN 7d", {"startTime": NOW - timedelta(hours=1)})

    def test_unparsable_or_missing_date_is_false(self):
        assert not evaluate("dueAt OVERDUE_BY 1d", {"dueAt": "yesterday"})
        assert not evaluate("dueAt OVERDUE_BY 1d", {})


class TestChanged:
    def test_changed_to(self):
        cond = 'status CHANGED TO "done"'
        assert evaluate(cond, {"status": "done"}, old_values={"status": "todo"})
        assert not evaluate(cond, {"status": "done"}, old_values={"status": "done"})
        assert not evaluate(cond, {"status": "blocked"}, old_values={"status": "todo"})

    def test_changed_from(self):
        cond = 'status CHANGED FROM "todo"'
        assert evaluate(cond, {"status": "in_progress"}, old_values={"status": "todo"})
        assert not evaluate(cond, {"status": "done"}, old_values={"status": "in_progress"})

    def test_field_appearing_counts_as_change(self):
        assert evaluate("assignee CHANGED", {"assignee": "u1"}, old_values={})

    def test_without_before_snapshot_is_false(self):
        assert not evaluate("status CHANGED", {"status": "done"})


class TestInterval:
    def test_never_run_matches(self):
        assert evaluate("EVERY 1h", {})

    def test_respects_last_run(self):
        assert not evaluate("EVERY 1h", {}, last_run_at=NOW - timedelta(minutes=30))
        assert evaluate("EVERY 1h", {}, last_run_at=NOW - timedelta(hours=2))

    def test_cron_is_due_once_a_cron_time_has_passed(self):
        daily = 'CRON "0 9 * * *"'
        assert evaluate(daily, {})
        assert evaluate(daily, {}, last_run_at=NOW - timedelta(hours=1))
        assert not evaluate(daily, {}, last_run_at=NOW)
        assert evaluate(daily, {}, last_run_at=NOW - timedelta(hours=23, minutes=30))

    def test_cron_every_quarter_hour(self):
        quarterly = {"cron": "*/15 * * * *"}
        assert evaluate(quarterly, {}, last_run_at=NOW - timedelta(minutes=10))
        assert not evaluate(quarterly, {}, last_run_at=NOW)


class TestConjunction:
    def test_all_must_hold(self):
        cond = 'dueAt OVERDUE_BY 1d AND status != "done"'
        overdue = (NOW - timedelta(days=2)).isoformat()
        assert evaluate(cond, {"dueAt": overdue, "status": "todo"})
        assert not evaluate(cond, {"dueAt": overdue, "status": "done"})

    def test_empty_conjunction_holds(self):
        assert evaluate(None, {})


class TestRuleEvaluation:
    def test_base_conditions_are_applied(self):
        rule = make_rule(TriggerType.TASK_OVERDUE, "dueAt OVERDUE_BY 1d", entity_kind="task")
        overdue = (NOW - timedelta(days=3)).isoformat()
        assert evaluate_rule(rule, {"dueAt": overdue, "status": "todo"}, NOW)
        assert not evaluate_rule(rule, {"dueAt": overdue, "status": "done"}, NOW)
        assert not evaluate_rule(rule, {"dueAt": overdue, "status": "completed"}, NOW)

    def test_match_event(self):
        rule = make_rule(
            TriggerType.ENTITY_FIELD_CHANGED, 'status CHANGED TO "done"', entity_kind="task"
        )
        context = TriggerContext(
            entity_kind="task",
            entity_id="t1",
            fields={"status": "done"},
            before={"status": "todo"},
            event_type="task.updated",
        )
        match = match_event(rule, context, NOW)
        assert match is not None
        assert match.key == ("rule-1", "t1")

    @pytest.mark.parametrize("event_type", ["booking.updated", "task.created", "task"])
    def test_match_event_requires_kind_and_verb(self, event_type):
        rule = make_rule(TriggerType.ENTITY_FIELD_CHANGED, "status CHANGED", entity_kind="task")
        context = TriggerContext(
            entity_kind="task",
            entity_id="t1",
            fields={"status": "done"},
            before={"status": "todo"},
            event_type=event_type,
        )
        assert match_event(rule, context, NOW) is None

    def test_disabled_rule_never_matches(self):
        rule = make_rule(TriggerType.ENTITY_CREATED, entity_kind="task", enabled=False)
        context = TriggerContext(entity_kind="task", entity_id="t1", event_type="task.created")
        assert match_event(rule, context, NOW) is None

    def test_time_rule_does_not_match_events(self):
        rule = make_rule(TriggerType.TASK_OVERDUE, "dueAt OVERDUE_BY 1d", entity_kind="task")
        context = TriggerContext(entity_kind="task", entity_id="t1", event_type="task.updated")
        assert match_event(rule, context, NOW) is None


class TestScanEntities:
    async def test_scan_matches_only_qualifying_entities(self):
        overdue = (NOW - timedelta(days=3)).isoformat()
        store = FakeStore([
            EntityRecord(id="t1", kind="task", properties={"dueAt": overdue, "status": "todo"}),
            EntityRecord(id="t2", kind="task", properties={"dueAt": overdue, "status": "done"}),
            EntityRecord(id="t3", kind="task", properties={"dueAt": NOW.isoformat(), "status": "todo"}),
        ])
        rule = make_rule(TriggerType.TASK_OVERDUE, "dueAt OVERDUE_BY 1d", entity_kind="task")

        matches = await scan_entities(rule, store, NOW)

        assert [m.context.entity_id for m in matches] == ["t1"]
        assert matches[0].context.event_type == "tick"
        assert store.queries == [("task", {})]

    async def test_equality_conjuncts_are_pushed_to_the_store(self):
        store = FakeStore([])
        rule = make_rule(TriggerType.PROPOSAL_PENDING, "createdAt OVERDUE_BY 7d", entity_kind="proposal")
        await scan_entities(rule, store, NOW)
        assert store.queries == [("proposal", {"status": "sent"})]

    async def test_interval_rule_fires_once_without_entity(self):
        store = FakeStore([])
        rule = make_rule(TriggerType.INTERVAL_CRON, "EVERY 1h")
        matches = await scan_entities(rule, store, NOW)
        assert len(matches) == 1
        assert matches[0].context.entity_id is None
        assert store.queries == []
