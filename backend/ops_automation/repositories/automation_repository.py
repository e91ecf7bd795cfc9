"""Repository classes for automation rule and execution log persistence."""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ops_automation.models.automation import AutomationRule, ExecutionLog

# Message prefix of ok entries written for executions that did not run.
SKIPPED_PREFIX = "Skipped:"

_UPDATABLE_FIELDS = {
    "name",
    "description",
    "trigger_type",
    "entity_kind",
    "trigger_condition",
    "delay_seconds",
    "action_kind",
    "action_config",
    "delivery_channel",
    "enabled",
}


class RuleRepository:
    """Repository for AutomationRule database operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: SQLAlchemy async session
        """
        self.session = session

    async def create(self, **fields: Any) -> AutomationRule:
        """Create a new rule.

        Args:
            **fields: Column values (name, trigger_type, action_kind, ...)

        Returns:
            Created AutomationRule instance
        """
        rule = AutomationRule(**fields)
        self.session.add(rule)
        await self.session.commit()
        await self.session.refresh(rule)
        return rule

    async def get_by_id(self, rule_id: str) -> Optional[AutomationRule]:
        result = await self.session.execute(
            select(AutomationRule).where(AutomationRule.id == rule_id)
        )
        return result.scalar_one_or_none()

    async def list_all(self) -> List[AutomationRule]:
        """List all rules, oldest first."""
        result = await self.session.execute(
            select(AutomationRule).order_by(AutomationRule.created_at, AutomationRule.id)
        )
        return list(result.scalars().all())

    async def update(self, rule_id: str, **fields: Any) -> Optional[AutomationRule]:
        """Update a rule's editable columns.

        Returns:
            Updated AutomationRule or None if not found

        Raises:
            ValueError: If a non-editable column is passed
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        rule = await self.get_by_id(rule_id)
        if rule is None:
            return None
        for name, value in fields.items():
            setattr(rule, name, value)
        await self.session.commit()
        await self.session.refresh(rule)
        return rule

    async def set_enabled(self, rule_id: str, enabled: bool) -> Optional[AutomationRule]:
        return await self.update(rule_id, enabled=enabled)

    async def delete(self, rule_id: str) -> bool:
        """Delete a rule; its execution logs are kept.

        Returns:
            True if deleted, False if not found
        """
        result = await self.session.execute(
            delete(AutomationRule).where(AutomationRule.id == rule_id)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def compare_and_set_last_run(self, rule_id: str, ran_at: datetime) -> bool:
        """Advance last_run_at if it is unset or older than ``ran_at``.

        Concurrent executions of the same rule race on this single
        conditional UPDATE; last_run_at never moves backwards.

        Returns:
            True if the row was updated
        """
        result = await self.session.execute(
            update(AutomationRule)
            .where(
                AutomationRule.id == rule_id,
                or_(AutomationRule.last_run_at.is_(None), AutomationRule.last_run_at < ran_at),
            )
            .values(last_run_at=ran_at)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount > 0


class ExecutionLogRepository:
    """Repository for the append-only execution log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        rule_id: str,
        status: str,
        message: str,
        context: dict[str, Any] | None = None,
        entity_id: str | None = None,
        action_kind: str | None = None,
        executed_at: datetime | None = None,
    ) -> ExecutionLog:
        """Append one execution record."""
        entry = ExecutionLog(
            rule_id=rule_id,
            status=status,
            message=message,
            context=context or {},
            entity_id=entity_id,
            action_kind=action_kind,
        )
        if executed_at is not None:
            entry.executed_at = executed_at
        self.session.add(entry)
        await self.session.commit()
        await self.session.refresh(entry)
        return entry

    async def list(
        self, rule_id: str | None = None, limit: int = 50, offset: int = 0
    ) -> List[ExecutionLog]:
        """List log entries newest first, optionally for one rule."""
        stmt = select(ExecutionLog)
        if rule_id is not None:
            stmt = stmt.where(ExecutionLog.rule_id == rule_id)
        stmt = (
            stmt.order_by(ExecutionLog.executed_at.desc(), ExecutionLog.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count(self, rule_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(ExecutionLog)
        if rule_id is not None:
            stmt = stmt.where(ExecutionLog.rule_id == rule_id)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def has_success(self, rule_id: str, entity_id: str | None) -> bool:
        """Whether the rule already ran successfully for this entity.

        Skipped executions are logged as ok but do not count.
        """
        stmt = select(ExecutionLog.id).where(
            ExecutionLog.rule_id == rule_id,
            ExecutionLog.status == "ok",
            ~ExecutionLog.message.startswith(SKIPPED_PREFIX),
        )
        if entity_id is None:
            stmt = stmt.where(ExecutionLog.entity_id.is_(None))
        else:
            stmt = stmt.where(ExecutionLog.entity_id == entity_id)
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none() is not None
