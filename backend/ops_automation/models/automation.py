# backend/ops_automation/models/automation.py
import uuid
from datetime import datetime
from typing import Any
from sqlalchemy import Boolean, DateTime, Float, Index, String, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from ops_automation.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.utcnow()


class AutomationRule(Base):
    """An operator-defined "when X happens, do Y" rule."""
    __tablename__ = "automation_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[str] = mapped_column(String(40), nullable=False)  # e.g. "task-overdue"
    entity_kind: Mapped[str | None] = mapped_column(String(40), nullable=True)  # e.g. "task"
    trigger_condition: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    delay_seconds: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    action_kind: Mapped[str] = mapped_column(String(40), nullable=False)  # e.g. "notify"
    action_config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    delivery_channel: Mapped[str] = mapped_column(String(20), default="in-app", nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_automation_rules_trigger", "trigger_type", "enabled"),
    )

    def __init__(self, **kwargs):
        if "enabled" not in kwargs:
            kwargs["enabled"] = True
        if "delay_seconds" not in kwargs:
            kwargs["delay_seconds"] = 0.0
        super().__init__(**kwargs)


class ExecutionLog(Base):
    """Append-only audit row, one per action execution.

    rule_id is a plain column rather than a foreign key so that history
    survives rule deletion.
    """
    __tablename__ = "automation_execution_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    rule_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action_kind: Mapped[str | None] = mapped_column(String(40), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False)  # ok | error
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    executed_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("idx_execution_logs_rule", "rule_id", "executed_at"),
        Index("idx_execution_logs_rule_entity", "rule_id", "entity_id", "status"),
    )
