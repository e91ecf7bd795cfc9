# backend/ops_automation/models/entity.py
"""
Business entity storage.

Tasks, subtasks, bookings, invoices, proposals, staff and clients share one
table: the kind column separates them and the per-kind attributes live in
the JSON properties column. Subtasks point at their task through parent_id.
"""

import uuid
from sqlalchemy import Column, String, Boolean, JSON, DateTime, Index, Text
from sqlalchemy.sql import func
from ops_automation.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class BusinessEntity(Base):
    """One business record (task, booking, invoice, ...)."""
    __tablename__ = "business_entities"

    id = Column(String(36), primary_key=True, default=_new_id)
    kind = Column(String(40), nullable=False)
    parent_id = Column(String(36), nullable=True)
    properties = Column(JSON, default=dict)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_business_entities_kind", "kind"),
        Index("idx_business_entities_parent", "parent_id"),
    )


class Notification(Base):
    """In-app notification delivered by automation actions."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)
    related_kind = Column(String(40), nullable=True)
    related_id = Column(String(64), nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())
