"""Automation rule management.

Validates rule definitions, persists them, keeps the in-memory rule
registry in step with the database and exposes run-now, event ingestion
and the execution log to the API layer.
"""

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ops_automation.automation.action_registry import ActionRegistry
from ops_automation.automation.conditions import (
    FieldChanged,
    IntervalCondition,
    TemporalCondition,
    conjuncts,
    dump_condition,
    parse_condition,
)
from ops_automation.automation.dispatcher import DispatchOutcome, Dispatcher
from ops_automation.automation.durations import parse_duration
from ops_automation.automation.errors import RuleNotFound, RuleValidationError
from ops_automation.automation.models import (
    TRIGGER_SPECS,
    DeliveryChannel,
    DomainEvent,
    EntityKind,
    RuleDef,
    TriggerContext,
    TriggerFamily,
    TriggerType,
)
from ops_automation.automation.rule_registry import RuleRegistry
from ops_automation.models.automation import AutomationRule, ExecutionLog
from ops_automation.repositories.automation_repository import (
    ExecutionLogRepository,
    RuleRepository,
)

logger = logging.getLogger(__name__)

_DEFINITION_FIELDS = (
    "name",
    "description",
    "trigger_type",
    "entity_kind",
    "trigger_condition",
    "delay",
    "action_kind",
    "action_config",
    "delivery_channel",
    "enabled",
)


class AutomationService:
    """Management operations over automation rules."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rules: RuleRegistry,
        actions: ActionRegistry,
        dispatcher: Dispatcher,
    ):
        self.session_factory = session_factory
        self.rules = rules
        self.actions = actions
        self.dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_definition(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate a rule definition and return its column values.

        Raises:
            RuleValidationError: If any part of the definition is invalid
        """
        name = (data.get("name") or "").strip()
        if not name:
            raise RuleValidationError("Rule name is required")

        try:
            trigger_type = TriggerType(data.get("trigger_type"))
        except ValueError:
            raise RuleValidationError(
                f"Unknown trigger type '{data.get('trigger_type')}'"
            ) from None
        spec = TRIGGER_SPECS[trigger_type]

        entity_kind = self._resolve_entity_kind(trigger_type, data.get("entity_kind"))

        raw_condition = data.get("trigger_condition")
        if raw_condition in (None, "", {}, []) and spec.default_condition is not None:
            raw_condition = spec.default_condition
        condition = parse_condition(raw_condition)
        self._check_condition_shapes(trigger_type, condition)

        try:
            delay = parse_duration(data.get("delay") or 0)
        except ValueError as e:
            raise RuleValidationError(f"Invalid delay: {e}") from None

        action_kind = data.get("action_kind")
        config = self.actions.validate_config(action_kind, data.get("action_config") or {})

        try:
            delivery_channel = DeliveryChannel(data.get("delivery_channel") or DeliveryChannel.IN_APP)
        except ValueError:
            raise RuleValidationError(
                f"Unknown delivery channel '{data.get('delivery_channel')}'"
            ) from None

        return {
            "name": name,
            "description": data.get("description"),
            "trigger_type": trigger_type.value,
            "entity_kind": entity_kind,
            "trigger_condition": dump_condition(condition),
            "delay_seconds": delay.total_seconds(),
            "action_kind": action_kind,
            "action_config": config.model_dump(mode="json", by_alias=True),
            "delivery_channel": delivery_channel.value,
            "enabled": bool(data.get("enabled", True)),
        }

    @staticmethod
    def _resolve_entity_kind(trigger_type: TriggerType, raw: str | None) -> str | None:
        spec = TRIGGER_SPECS[trigger_type]
        if not spec.has_entity:
            if raw:
                raise RuleValidationError(f"{trigger_type.value} rules do not target an entity kind")
            return None
        if spec.entity_kind is not None:
            if raw and raw != spec.entity_kind.value:
                raise RuleValidationError(
                    f"{trigger_type.value} rules always target '{spec.entity_kind.value}', not '{raw}'"
                )
            return spec.entity_kind.value
        if not raw:
            raise RuleValidationError(f"{trigger_type.value} rules require an entity_kind")
        try:
            return EntityKind(raw).value
        except ValueError:
            raise RuleValidationError(f"Unknown entity kind '{raw}'") from None

    @staticmethod
    def _check_condition_shapes(trigger_type: TriggerType, condition: Any) -> None:
        spec = TRIGGER_SPECS[trigger_type]
        leaves = conjuncts(condition)

        if spec.family != TriggerFamily.EVENT and any(isinstance(c, FieldChanged) for c in leaves):
            raise RuleValidationError("'changed' conditions are only valid on event triggers")

        has_interval = any(isinstance(c, IntervalCondition) for c in leaves)
        if trigger_type == TriggerType.INTERVAL_CRON:
            if not has_interval:
                raise RuleValidationError("interval-cron rules require an interval condition")
            if any(not isinstance(c, IntervalCondition) for c in leaves):
                raise RuleValidationError("interval-cron rules only accept interval conditions")
        elif has_interval:
            raise RuleValidationError("Interval conditions are only valid on interval-cron rules")

        if spec.requires_temporal and not any(isinstance(c, TemporalCondition) for c in leaves):
            raise RuleValidationError(
                f"{trigger_type.value} rules require a temporal condition (overdue-by or upcoming-within)"
            )

    def to_rule_def(self, row: AutomationRule) -> RuleDef:
        """Build the engine's view of a persisted rule."""
        return RuleDef(
            id=row.id,
            name=row.name,
            description=row.description,
            trigger_type=TriggerType(row.trigger_type),
            entity_kind=row.entity_kind,
            condition=parse_condition(row.trigger_condition),
            delay=timedelta(seconds=row.delay_seconds or 0),
            action_kind=row.action_kind,
            action_config=self.actions.validate_config(row.action_kind, row.action_config),
            delivery_channel=DeliveryChannel(row.delivery_channel),
            enabled=row.enabled,
            last_run_at=row.last_run_at,
        )

    # ------------------------------------------------------------------
    # Rule lifecycle
    # ------------------------------------------------------------------

    async def load_rules(self) -> int:
        """Load every persisted rule into the registry.

        Rules that no longer validate (e.g. an action kind that was
        removed) are logged and left out.
        """
        async with self.session_factory() as session:
            rows = await RuleRepository(session).list_all()

        self.rules.clear()
        loaded = 0
        for row in rows:
            try:
                self.rules.register(self.to_rule_def(row))
                loaded += 1
            except RuleValidationError as e:
                logger.error(f"Skipping invalid rule {row.id} ({row.name}): {e}")
        logger.info(f"Loaded {loaded} automation rule(s)")
        return loaded

    async def list_rules(self) -> list[AutomationRule]:
        async with self.session_factory() as session:
            return await RuleRepository(session).list_all()

    async def get_rule(self, rule_id: str) -> AutomationRule:
        async with self.session_factory() as session:
            row = await RuleRepository(session).get_by_id(rule_id)
        if row is None:
            raise RuleNotFound(rule_id)
        return row

    async def create_rule(self, data: dict[str, Any]) -> AutomationRule:
        columns = self.validate_definition(data)
        async with self.session_factory() as session:
            row = await RuleRepository(session).create(**columns)
        self.rules.register(self.to_rule_def(row))
        logger.info(f"Created rule {row.name} ({row.id}): {row.trigger_type} -> {row.action_kind}")
        return row

    async def update_rule(self, rule_id: str, changes: dict[str, Any]) -> AutomationRule:
        """Apply a partial update; the merged definition is re-validated."""
        current = await self.get_rule(rule_id)
        merged = self._definition_of(current)
        merged.update({k: v for k, v in changes.items() if k in _DEFINITION_FIELDS})
        if "trigger_type" in changes and changes["trigger_type"] != current.trigger_type:
            # A new trigger type brings its own entity kind and default condition.
            try:
                spec = TRIGGER_SPECS[TriggerType(changes["trigger_type"])]
            except ValueError:
                spec = None
            if "entity_kind" not in changes and spec is not None and (
                spec.entity_kind is not None or not spec.has_entity
            ):
                merged["entity_kind"] = None
            if "trigger_condition" not in changes:
                merged["trigger_condition"] = None
        columns = self.validate_definition(merged)

        async with self.session_factory() as session:
            row = await RuleRepository(session).update(rule_id, **columns)
        if row is None:
            raise RuleNotFound(rule_id)
        self.rules.register(self.to_rule_def(row))
        logger.info(f"Updated rule {row.name} ({row.id})")
        return row

    @staticmethod
    def _definition_of(row: AutomationRule) -> dict[str, Any]:
        return {
            "name": row.name,
            "description": row.description,
            "trigger_type": row.trigger_type,
            "entity_kind": row.entity_kind,
            "trigger_condition": row.trigger_condition,
            "delay": row.delay_seconds,
            "action_kind": row.action_kind,
            "action_config": row.action_config,
            "delivery_channel": row.delivery_channel,
            "enabled": row.enabled,
        }

    async def delete_rule(self, rule_id: str) -> None:
        """Delete a rule. Its execution history is kept."""
        async with self.session_factory() as session:
            deleted = await RuleRepository(session).delete(rule_id)
        if not deleted:
            raise RuleNotFound(rule_id)
        self.rules.remove(rule_id)
        logger.info(f"Deleted rule {rule_id}")

    async def toggle_rule(self, rule_id: str, enabled: bool | None = None) -> AutomationRule:
        """Enable or disable a rule; flips the current state when ``enabled`` is None."""
        current = await self.get_rule(rule_id)
        target = (not current.enabled) if enabled is None else enabled
        async with self.session_factory() as session:
            row = await RuleRepository(session).set_enabled(rule_id, target)
        if row is None:
            raise RuleNotFound(rule_id)
        if self.rules.set_enabled(rule_id, target) is None:
            self.rules.register(self.to_rule_def(row))
        logger.info(f"Rule {row.name} ({rule_id}) {'enabled' if target else 'disabled'}")
        return row

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_now(
        self, rule_id: str, payload: dict[str, Any] | None = None, actor: str | None = None
    ) -> DispatchOutcome:
        """Execute a rule immediately with an operator-supplied context."""
        rule = self.rules.lookup(rule_id)
        if rule is None:
            rule = self.to_rule_def(await self.get_rule(rule_id))

        context = TriggerContext.from_payload(payload)
        if context.entity_kind is None:
            context.entity_kind = rule.entity_kind
        if context.entity_id and not context.fields:
            entity = await self.dispatcher.store.get_entity(context.entity_id)
            if entity is not None:
                context.fields = dict(entity.properties)
                context.entity_kind = entity.kind
        return await self.dispatcher.run_now(rule, context, actor=actor)

    async def ingest_event(self, event: DomainEvent) -> list[DispatchOutcome]:
        """Evaluate event-driven rules against an externally reported mutation."""
        return await self.dispatcher.handle_event(event.event_type, event.to_context())

    async def list_logs(
        self, rule_id: str | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[ExecutionLog], int]:
        async with self.session_factory() as session:
            repo = ExecutionLogRepository(session)
            items = await repo.list(rule_id=rule_id, limit=limit, offset=offset)
            total = await repo.count(rule_id=rule_id)
        return items, total
