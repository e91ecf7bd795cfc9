"""Entity store consumed by the automation engine.

The engine only depends on the EntityStore interface. SqlEntityStore is
the bundled implementation over the business_entities table.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ops_automation.automation.errors import EntityNotFound, TransientIOError
from ops_automation.automation.evaluator import loose_eq
from ops_automation.automation.models import EntityRecord
from ops_automation.models.entity import BusinessEntity

logger = logging.getLogger(__name__)

# Fields a record of the given kind must carry as a non-blank string.
REQUIRED_TEXT_FIELDS: dict[str, tuple[str, ...]] = {
    "subtask": ("title",),
    "task": ("title",),
}
MAX_TEXT_LENGTH = 500


@dataclass
class UpdateOutcome:
    """Result of a conditional entity update."""

    found: bool
    changed: bool = False
    entity: EntityRecord | None = None


@dataclass
class InsertStatus:
    """Per-record status of insert_related."""

    index: int
    ok: bool
    entity_id: str | None = None
    error: str | None = None


class EntityStore(ABC):
    """Interface of the relational store holding business entities."""

    @abstractmethod
    async def find_entities_matching(
        self, entity_kind: str, filter: dict[str, Any] | None = None
    ) -> list[EntityRecord]:
        """List entities of a kind whose properties equal every filter value."""

    @abstractmethod
    async def get_entity(self, entity_id: str) -> EntityRecord | None:
        """Fetch one entity by id."""

    @abstractmethod
    async def update_entity(
        self, entity_id: str, patch: dict[str, Any], kind: str | None = None
    ) -> UpdateOutcome:
        """Apply a property patch in a single transactional write.

        The write only happens if the entity exists (and has ``kind``, when
        given). Patching values that are already in place changes nothing.
        """

    @abstractmethod
    async def insert_related(
        self, parent_id: str, kind: str, records: list[dict[str, Any]]
    ) -> list[InsertStatus]:
        """Insert child records under ``parent_id`` with per-record status.

        Raises:
            EntityNotFound: If the parent does not exist
        """


def _record(row: BusinessEntity) -> EntityRecord:
    return EntityRecord(
        id=row.id,
        kind=row.kind,
        properties=dict(row.properties or {}),
        parent_id=row.parent_id,
    )


class SqlEntityStore(EntityStore):
    """Entity store backed by the business_entities table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize the store.

        Args:
            session_factory: Factory producing async sessions; each
                operation runs in its own session and transaction
        """
        self.session_factory = session_factory

    async def find_entities_matching(
        self, entity_kind: str, filter: dict[str, Any] | None = None
    ) -> list[EntityRecord]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(BusinessEntity).where(BusinessEntity.kind == entity_kind)
                )
                rows = result.scalars().all()
        except (OperationalError, DBAPIError) as e:
            raise TransientIOError(f"Entity store unavailable: {e}") from e

        records = [_record(row) for row in rows]
        if not filter:
            return records
        return [
            r for r in records
            if all(loose_eq(r.properties.get(k), v) for k, v in filter.items())
        ]

    async def get_entity(self, entity_id: str) -> EntityRecord | None:
        try:
            async with self.session_factory() as session:
                row = await session.get(BusinessEntity, entity_id)
                return _record(row) if row is not None else None
        except (OperationalError, DBAPIError) as e:
            raise TransientIOError(f"Entity store unavailable: {e}") from e

    async def update_entity(
        self, entity_id: str, patch: dict[str, Any], kind: str | None = None
    ) -> UpdateOutcome:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = await session.get(BusinessEntity, entity_id, with_for_update=True)
                    if row is None or (kind is not None and row.kind != kind):
                        return UpdateOutcome(found=False)

                    props = dict(row.properties or {})
                    changed = any(props.get(k) != v for k, v in patch.items())
                    if changed:
                        props.update(patch)
                        row.properties = props
                    outcome = UpdateOutcome(found=True, changed=changed, entity=_record(row))
        except (OperationalError, DBAPIError) as e:
            raise TransientIOError(f"Entity store unavailable: {e}") from e

        if outcome.changed:
            logger.info(f"Updated {kind or 'entity'} {entity_id}: {sorted(patch)}")
        return outcome

    async def insert_related(
        self, parent_id: str, kind: str, records: list[dict[str, Any]]
    ) -> list[InsertStatus]:
        statuses: list[InsertStatus] = []
        rows: list[tuple[int, BusinessEntity]] = []

        for index, record in enumerate(records):
            error = self._validate_record(kind, record)
            if error:
                statuses.append(InsertStatus(index=index, ok=False, error=error))
                continue
            rows.append((index, BusinessEntity(kind=kind, parent_id=parent_id, properties=dict(record))))

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    parent = await session.get(BusinessEntity, parent_id)
                    if parent is None:
                        raise EntityNotFound(parent_id)
                    session.add_all([row for _, row in rows])
                    await session.flush()
                    statuses.extend(
                        InsertStatus(index=index, ok=True, entity_id=row.id) for index, row in rows
                    )
        except (OperationalError, DBAPIError) as e:
            raise TransientIOError(f"Entity store unavailable: {e}") from e

        statuses.sort(key=lambda s: s.index)
        return statuses

    @staticmethod
    def _validate_record(kind: str, record: Any) -> str | None:
        if not isinstance(record, dict):
            return "record must be an object"
        for field_name in REQUIRED_TEXT_FIELDS.get(kind, ()):
            value = record.get(field_name)
            if not isinstance(value, str) or not value.strip():
                return f"'{field_name}' must be a non-empty string"
            if len(value) > MAX_TEXT_LENGTH:
                return f"'{field_name}' exceeds {MAX_TEXT_LENGTH} characters"
        return None

    async def create_entity(
        self, kind: str, properties: dict[str, Any], parent_id: str | None = None
    ) -> EntityRecord:
        """Insert a standalone entity; used by seeding and the CRUD layer."""
        async with self.session_factory() as session:
            row = BusinessEntity(kind=kind, parent_id=parent_id, properties=dict(properties))
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _record(row)

    async def list_children(self, parent_id: str, kind: str | None = None) -> list[EntityRecord]:
        async with self.session_factory() as session:
            stmt = select(BusinessEntity).where(BusinessEntity.parent_id == parent_id)
            if kind is not None:
                stmt = stmt.where(BusinessEntity.kind == kind)
            result = await session.execute(stmt)
            return [_record(row) for row in result.scalars().all()]
