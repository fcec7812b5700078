"""Local record stores with indexed lookup by external id and natural key.

Provides:
- RecordStore: abstract async interface used by the upsert layer
- InMemoryRecordStore: dict-backed store with explicit secondary indexes
- SqlRecordStore: SQLAlchemy-backed store (session_factory callable pattern)

Both implementations resolve ``external_id`` and ``natural_key`` through an
index, never a scan, and keep those indexes free of stale aliases when a
record's identifiers change.
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic_core import to_jsonable_python
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.recruitops.sync.models import MODEL_FOR_ENTITY, SyncedRecordMixin
from src.recruitops.sync.schemas import EntityType, StoredRecord

logger = structlog.get_logger(__name__)


class DuplicateExternalIdError(ValueError):
    """Raised when an external id is already bound to another local record."""

    def __init__(self, entity_type: EntityType, external_id: str, owner_id: int) -> None:
        self.entity_type = entity_type
        self.external_id = external_id
        self.owner_id = owner_id
        super().__init__(
            f"{entity_type.value} external id {external_id!r} already belongs to record {owner_id}"
        )


class RecordStore(ABC):
    """Abstract local store for synced records of every entity type."""

    @abstractmethod
    async def get(self, entity_type: EntityType, record_id: int) -> StoredRecord | None:
        """Fetch a record by local id."""
        ...

    @abstractmethod
    async def get_by_external_id(self, entity_type: EntityType, external_id: str) -> StoredRecord | None:
        """Fetch a record through the external id index."""
        ...

    @abstractmethod
    async def get_by_natural_key(self, entity_type: EntityType, natural_key: str) -> StoredRecord | None:
        """Fetch a record through the natural key index."""
        ...

    @abstractmethod
    async def insert(
        self,
        entity_type: EntityType,
        fields: dict[str, Any],
        external_id: str | None = None,
        natural_key: str | None = None,
        last_synced_at: datetime | None = None,
    ) -> StoredRecord:
        """Create a record with a freshly assigned local id."""
        ...

    @abstractmethod
    async def save(self, record: StoredRecord) -> StoredRecord:
        """Persist changes to an existing record, maintaining both indexes."""
        ...

    @abstractmethod
    async def list_records(self, entity_type: EntityType) -> list[StoredRecord]:
        """All records of ``entity_type`` ordered by local id."""
        ...


# ── In-Memory Store ─────────────────────────────────────────────────────────


class InMemoryRecordStore(RecordStore):
    """Dict-backed store; records are copied in and out to avoid aliasing."""

    def __init__(self) -> None:
        self._records: dict[EntityType, dict[int, StoredRecord]] = {t: {} for t in EntityType}
        self._by_external_id: dict[EntityType, dict[str, int]] = {t: {} for t in EntityType}
        self._by_natural_key: dict[EntityType, dict[str, int]] = {t: {} for t in EntityType}
        self._ids = {t: itertools.count(1) for t in EntityType}

    async def get(self, entity_type: EntityType, record_id: int) -> StoredRecord | None:
        record = self._records[entity_type].get(record_id)
        return record.model_copy(deep=True) if record else None

    async def get_by_external_id(self, entity_type: EntityType, external_id: str) -> StoredRecord | None:
        record_id = self._by_external_id[entity_type].get(external_id)
        return await self.get(entity_type, record_id) if record_id is not None else None

    async def get_by_natural_key(self, entity_type: EntityType, natural_key: str) -> StoredRecord | None:
        record_id = self._by_natural_key[entity_type].get(natural_key)
        return await self.get(entity_type, record_id) if record_id is not None else None

    async def insert(
        self,
        entity_type: EntityType,
        fields: dict[str, Any],
        external_id: str | None = None,
        natural_key: str | None = None,
        last_synced_at: datetime | None = None,
    ) -> StoredRecord:
        if external_id is not None:
            self._check_external_id_free(entity_type, external_id, record_id=None)

        record = StoredRecord(
            id=next(self._ids[entity_type]),
            entity_type=entity_type,
            external_id=external_id,
            natural_key=natural_key,
            fields=dict(fields),
            last_synced_at=last_synced_at,
        )
        self._records[entity_type][record.id] = record.model_copy(deep=True)
        self._index(entity_type, record)
        return record

    async def save(self, record: StoredRecord) -> StoredRecord:
        records = self._records[record.entity_type]
        previous = records.get(record.id)
        if previous is None:
            raise KeyError(f"{record.entity_type.value} record {record.id} does not exist")

        if record.external_id is not None and record.external_id != previous.external_id:
            self._check_external_id_free(record.entity_type, record.external_id, record.id)

        self._unindex(record.entity_type, previous)
        saved = record.model_copy(update={"updated_at": datetime.now(timezone.utc)}, deep=True)
        records[record.id] = saved
        self._index(record.entity_type, saved)
        return saved.model_copy(deep=True)

    async def list_records(self, entity_type: EntityType) -> list[StoredRecord]:
        return [r.model_copy(deep=True) for _, r in sorted(self._records[entity_type].items())]

    def index_sizes(self, entity_type: EntityType) -> tuple[int, int]:
        """(external id entries, natural key entries) -- used to verify index hygiene."""
        return len(self._by_external_id[entity_type]), len(self._by_natural_key[entity_type])

    def _check_external_id_free(self, entity_type: EntityType, external_id: str, record_id: int | None) -> None:
        owner = self._by_external_id[entity_type].get(external_id)
        if owner is not None and owner != record_id:
            raise DuplicateExternalIdError(entity_type, external_id, owner)

    def _index(self, entity_type: EntityType, record: StoredRecord) -> None:
        if record.external_id is not None:
            self._by_external_id[entity_type][record.external_id] = record.id
        if record.natural_key is not None:
            self._by_natural_key[entity_type][record.natural_key] = record.id

    def _unindex(self, entity_type: EntityType, record: StoredRecord) -> None:
        # Only drop entries that still point at this record
        if record.external_id is not None and self._by_external_id[entity_type].get(record.external_id) == record.id:
            del self._by_external_id[entity_type][record.external_id]
        if record.natural_key is not None and self._by_natural_key[entity_type].get(record.natural_key) == record.id:
            del self._by_natural_key[entity_type][record.natural_key]


# ── SQL Store ───────────────────────────────────────────────────────────────


def _model_to_record(entity_type: EntityType, model: SyncedRecordMixin) -> StoredRecord:
    """Convert a table row to a StoredRecord."""
    return StoredRecord(
        id=model.id,
        entity_type=entity_type,
        external_id=model.external_id,
        natural_key=model.natural_key,
        fields=dict(model.data or {}),
        last_synced_at=model.last_synced_at,
        created_at=model.created_at or datetime.now(timezone.utc),
        updated_at=model.updated_at,
    )


class SqlRecordStore(RecordStore):
    """Record store backed by one SQL table per entity type.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get(self, entity_type: EntityType, record_id: int) -> StoredRecord | None:
        model_cls = MODEL_FOR_ENTITY[entity_type]
        async for session in self._session_factory():
            model = await session.get(model_cls, record_id)
            return _model_to_record(entity_type, model) if model else None
        return None

    async def _get_by(self, entity_type: EntityType, column: str, value: str) -> StoredRecord | None:
        model_cls = MODEL_FOR_ENTITY[entity_type]
        async for session in self._session_factory():
            stmt = (
                select(model_cls)
                .where(getattr(model_cls, column) == value)
                .order_by(model_cls.id)
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_record(entity_type, model) if model else None
        return None

    async def get_by_external_id(self, entity_type: EntityType, external_id: str) -> StoredRecord | None:
        return await self._get_by(entity_type, "external_id", external_id)

    async def get_by_natural_key(self, entity_type: EntityType, natural_key: str) -> StoredRecord | None:
        return await self._get_by(entity_type, "natural_key", natural_key)

    async def insert(
        self,
        entity_type: EntityType,
        fields: dict[str, Any],
        external_id: str | None = None,
        natural_key: str | None = None,
        last_synced_at: datetime | None = None,
    ) -> StoredRecord:
        model_cls = MODEL_FOR_ENTITY[entity_type]
        async for session in self._session_factory():
            model = model_cls(
                external_id=external_id,
                natural_key=natural_key,
                data=to_jsonable_python(fields),
                last_synced_at=last_synced_at,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_record(entity_type, model)
        raise RuntimeError("session factory yielded no session")

    async def save(self, record: StoredRecord) -> StoredRecord:
        model_cls = MODEL_FOR_ENTITY[record.entity_type]
        async for session in self._session_factory():
            model = await session.get(model_cls, record.id)
            if model is None:
                raise KeyError(f"{record.entity_type.value} record {record.id} does not exist")
            model.external_id = record.external_id
            model.natural_key = record.natural_key
            model.data = to_jsonable_python(record.fields)
            model.last_synced_at = record.last_synced_at
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_record(record.entity_type, model)
        raise RuntimeError("session factory yielded no session")

    async def list_records(self, entity_type: EntityType) -> list[StoredRecord]:
        model_cls = MODEL_FOR_ENTITY[entity_type]
        async for session in self._session_factory():
            result = await session.execute(select(model_cls).order_by(model_cls.id))
            return [_model_to_record(entity_type, m) for m in result.scalars().all()]
        return []
