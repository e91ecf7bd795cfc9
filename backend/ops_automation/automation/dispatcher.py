"""Dispatcher: turns matches into action executions and execution logs.

The dispatcher is the error boundary for actions. Whatever an action
raises ends up as an ``error`` log entry; nothing propagates to the event
source or the scheduler.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ops_automation.automation.action_registry import ActionRegistry
from ops_automation.automation.conditions import AllOf, FieldChanged
from ops_automation.automation.context import EvaluationContext
from ops_automation.automation.errors import AutomationError
from ops_automation.automation.evaluator import ConditionEvaluator, match_event, scan_entities
from ops_automation.automation.models import (
    DomainEvent,
    ExecutionStatus,
    Match,
    RuleDef,
    TriggerContext,
    TriggerFamily,
)
from ops_automation.automation.rule_registry import RuleRegistry
from ops_automation.automation.worker_pool import ActionTimeout, WorkerPool
from ops_automation.repositories.automation_repository import (
    SKIPPED_PREFIX,
    ExecutionLogRepository,
    RuleRepository,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.utcnow()


@dataclass
class DispatchOutcome:
    """What happened to one match.

    ``status`` is ``ok`` or ``error`` for executions that ran and
    ``scheduled`` for delayed executions that were queued.
    """

    rule_id: str
    entity_id: str | None
    status: str
    message: str


class Dispatcher:
    """Evaluates rules against events and ticks and runs their actions."""

    def __init__(
        self,
        rules: RuleRegistry,
        actions: ActionRegistry,
        store,
        session_factory: async_sessionmaker[AsyncSession],
        pool: WorkerPool | None = None,
        revalidate_delayed: bool = False,
        suppress_repeat_matches: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the dispatcher.

        Args:
            rules: Registry of rules to evaluate
            actions: Registry of action handlers
            store: EntityStore queried by time-driven rules
            session_factory: Session factory for logs and last_run_at
            pool: Worker pool bounding concurrent actions
            revalidate_delayed: Re-check the condition when a delay elapses
            suppress_repeat_matches: Skip time-driven matches that already
                ran successfully for the same entity
            clock: Returns the current naive UTC time
        """
        self.rules = rules
        self.actions = actions
        self.store = store
        self.session_factory = session_factory
        self.pool = pool or WorkerPool()
        self.revalidate_delayed = revalidate_delayed
        self.suppress_repeat_matches = suppress_repeat_matches
        self.clock = clock

        self._pending: dict[tuple[str, str | None], asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._busy_rules: set[str] = set()
        self._accepting = True

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_event(
        self, event_type: str, context: TriggerContext, now: datetime | None = None
    ) -> list[DispatchOutcome]:
        """Evaluate event-driven rules against a domain mutation."""
        now = now or self.clock()
        if context.event_type is None:
            context.event_type = event_type

        matches = []
        for rule in self.rules.get_by_family(TriggerFamily.EVENT):
            match = match_event(rule, context, now)
            if match is not None:
                matches.append(match)

        if matches:
            logger.info(f"{event_type} on {context.entity_id}: {len(matches)} rule(s) matched")
        return await self._dispatch_matches(matches)

    def on_event(self, event: DomainEvent) -> None:
        """Emitter listener; handles the event in a background task."""
        if not self._accepting:
            logger.debug(f"Dispatcher stopped; ignoring {event.event_type}")
            return
        self._track(asyncio.get_running_loop().create_task(
            self.handle_event(event.event_type, event.to_context())
        ))

    async def handle_tick(self, now: datetime | None = None) -> list[DispatchOutcome]:
        """Evaluate every enabled time-driven rule against current entity state.

        A rule still being evaluated by an earlier tick is skipped.
        """
        now = now or self.clock()
        rules = self.rules.get_by_family(TriggerFamily.TIME)
        results = await asyncio.gather(*(self._tick_rule(rule, now) for rule in rules))
        return [outcome for outcomes in results for outcome in outcomes]

    async def run_now(
        self, rule: RuleDef, context: TriggerContext, actor: str | None = None
    ) -> DispatchOutcome:
        """Execute a rule immediately, bypassing its condition and delay."""
        if context.event_type is None:
            context.event_type = "manual"
        logger.info(f"Running rule {rule.name} ({rule.id}) now for {actor or 'system'}")
        return await self._execute(rule, context, self.clock(), actor=actor)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    async def _tick_rule(self, rule: RuleDef, now: datetime) -> list[DispatchOutcome]:
        if rule.id in self._busy_rules:
            logger.info(f"Rule {rule.name} is still busy from a previous tick; skipping")
            return []

        self._busy_rules.add(rule.id)
        try:
            matches = await scan_entities(rule, self.store, now)
            matches = await self._without_repeats(rule, matches)
            return await self._dispatch_matches(matches)
        except (AutomationError, SQLAlchemyError) as e:
            logger.error(f"Tick evaluation of rule {rule.name} failed: {e}")
            return []
        finally:
            self._busy_rules.discard(rule.id)

    async def _without_repeats(self, rule: RuleDef, matches: list[Match]) -> list[Match]:
        if not self.suppress_repeat_matches or not rule.spec.has_entity or not matches:
            return matches
        async with self.session_factory() as session:
            logs = ExecutionLogRepository(session)
            fresh = []
            for match in matches:
                if await logs.has_success(rule.id, match.context.entity_id):
                    logger.debug(f"Rule {rule.name} already ran for {match.context.entity_id}")
                    continue
                fresh.append(match)
        return fresh

    def _still_enabled(self, match: Match) -> bool:
        # Evaluation may have awaited the store; toggles since then win.
        current = self.rules.lookup(match.rule.id)
        if current is None or not current.enabled:
            logger.info(f"Rule {match.rule.name} was disabled or deleted during evaluation; dropping match")
            return False
        return True

    async def _dispatch_matches(self, matches: list[Match]) -> list[DispatchOutcome]:
        immediate = []
        outcomes = []
        for match in matches:
            if not self._still_enabled(match):
                continue
            if match.rule.delay.total_seconds() > 0:
                outcome = self._schedule_delayed(match)
                if outcome is not None:
                    outcomes.append(outcome)
            else:
                immediate.append(match)

        if immediate:
            outcomes.extend(await asyncio.gather(
                *(self._execute(m.rule, m.context, m.matched_at) for m in immediate)
            ))
        return outcomes

    # ------------------------------------------------------------------
    # Delayed execution
    # ------------------------------------------------------------------

    def _schedule_delayed(self, match: Match) -> DispatchOutcome | None:
        key = match.key
        if key in self._pending:
            logger.debug(f"Delayed execution already pending for {key}")
            return None
        if not self._accepting:
            return None

        task = asyncio.get_running_loop().create_task(self._run_delayed(match))
        self._pending[key] = task
        self._track(task)
        task.add_done_callback(lambda t, k=key: self._forget_pending(k, t))

        fire_at = match.matched_at + match.rule.delay
        logger.info(f"Rule {match.rule.name} scheduled for {key[1]} at {fire_at.isoformat()}")
        return DispatchOutcome(
            rule_id=match.rule.id,
            entity_id=match.context.entity_id,
            status="scheduled",
            message=f"Scheduled for {fire_at.isoformat()}",
        )

    def _forget_pending(self, key: tuple[str, str | None], task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    async def _run_delayed(self, match: Match) -> DispatchOutcome:
        await asyncio.sleep(match.rule.delay.total_seconds())
        self._pending.pop(match.key, None)

        ran_at = match.matched_at + match.rule.delay
        rule = self.rules.lookup(match.rule.id)
        if rule is None:
            return await self._log_skip(match, "rule was deleted before the delayed execution")
        if not rule.enabled:
            return await self._log_skip(match, "rule was disabled before the delayed execution")
        if self.revalidate_delayed:
            try:
                still_matches = await self._still_matches(rule, match, self.clock())
            except AutomationError as e:
                logger.warning(f"Revalidation of rule {rule.name} failed: {e}")
                await self._write_log(rule, match.context, ExecutionStatus.ERROR, str(e))
                return DispatchOutcome(rule.id, match.context.entity_id, "error", str(e))
            if not still_matches:
                return await self._log_skip(match, "condition no longer met")

        return await self._execute(rule, match.context, ran_at)

    async def _still_matches(self, rule: RuleDef, match: Match, now: datetime) -> bool:
        # Change conjuncts describe the triggering event and are not re-checked.
        conditions = [c for c in rule.effective_conditions() if not isinstance(c, FieldChanged)]
        fields: dict[str, Any] = {}
        if match.context.entity_id is not None and rule.spec.has_entity:
            entity = await self.store.get_entity(match.context.entity_id)
            if entity is None:
                return False
            fields = entity.properties

        ctx = EvaluationContext(entity=fields, old_values=None, now=now, last_run_at=None)
        return ConditionEvaluator(ctx).evaluate(AllOf(conditions=conditions))

    async def _log_skip(self, match: Match, reason: str) -> DispatchOutcome:
        message = f"{SKIPPED_PREFIX} {reason}"
        logger.info(f"Rule {match.rule.name} for {match.context.entity_id}: {message}")
        await self._write_log(match.rule, match.context, ExecutionStatus.OK, message)
        return DispatchOutcome(
            rule_id=match.rule.id,
            entity_id=match.context.entity_id,
            status=ExecutionStatus.OK.value,
            message=message,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        rule: RuleDef,
        context: TriggerContext,
        ran_at: datetime,
        actor: str | None = None,
    ) -> DispatchOutcome:
        """Run one action and write exactly one execution log entry."""
        try:
            result = await self.pool.run(
                lambda: self.actions.dispatch(
                    rule.action_kind,
                    context,
                    rule.action_config,
                    actor=actor,
                    delivery_channel=rule.delivery_channel,
                )
            )
            status, message = ExecutionStatus.OK, result.message
        except ActionTimeout as e:
            status, message = ExecutionStatus.ERROR, f"{rule.action_kind}: {e}"
        except Exception as e:
            status = ExecutionStatus.ERROR
            message = str(e) or type(e).__name__

        if status == ExecutionStatus.OK:
            logger.info(f"Rule {rule.name} succeeded: {message}")
        else:
            logger.warning(f"Rule {rule.name} failed: {message}")

        await self._write_log(rule, context, status, message, actor=actor)
        if status == ExecutionStatus.OK:
            await self._record_run(rule, ran_at)

        return DispatchOutcome(
            rule_id=rule.id,
            entity_id=context.entity_id or context.task_id,
            status=status.value,
            message=message,
        )

    async def _write_log(
        self,
        rule: RuleDef,
        context: TriggerContext,
        status: ExecutionStatus,
        message: str,
        actor: str | None = None,
    ) -> None:
        payload = context.to_payload()
        payload["triggerType"] = rule.trigger_type.value
        if actor:
            payload["actor"] = actor
        try:
            async with self.session_factory() as session:
                await ExecutionLogRepository(session).append(
                    rule_id=rule.id,
                    status=status.value,
                    message=message,
                    context=payload,
                    entity_id=context.entity_id or context.task_id,
                    action_kind=rule.action_kind,
                )
        except SQLAlchemyError:
            logger.exception(f"Failed to write execution log for rule {rule.id}")

    async def _record_run(self, rule: RuleDef, ran_at: datetime) -> None:
        try:
            async with self.session_factory() as session:
                await RuleRepository(session).compare_and_set_last_run(rule.id, ran_at)
        except SQLAlchemyError:
            logger.exception(f"Failed to update last_run_at for rule {rule.id}")
            return
        self.rules.record_run(rule.id, ran_at)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @property
    def pending_delayed(self) -> int:
        return len(self._pending)

    @property
    def in_flight(self) -> int:
        return self.pool.in_flight

    async def shutdown(self, grace: float) -> None:
        """Stop accepting work, drop pending delays and drain the rest.

        Delayed executions still waiting for their delay are cancelled;
        executions already running get up to ``grace`` seconds.
        """
        self._accepting = False

        dropped = list(self._pending.values())
        for task in dropped:
            task.cancel()
        if dropped:
            logger.info(f"Dropped {len(dropped)} pending delayed execution(s)")

        running = [t for t in self._background if not t.done()]
        if running:
            done, still_running = await asyncio.wait(running, timeout=grace)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning(f"Cancelled {len(still_running)} dispatch(es) after {grace}s")
                await asyncio.gather(*still_running, return_exceptions=True)

        await self.pool.drain(grace)
