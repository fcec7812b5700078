"""SqlRecordStore tests against a throwaway SQLite database (aiosqlite).

Exercises the same contract as the in-memory store: indexed lookups,
insert/save round trips, ordering, and the unique external id constraint.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.recruitops.core.database import Base
from src.recruitops.sync import models  # noqa: F401
from src.recruitops.sync.field_mapping import map_contact, map_task
from src.recruitops.sync.schemas import EntityType
from src.recruitops.sync.store import SqlRecordStore
from src.recruitops.sync.upsert import UpsertLayer


@pytest_asyncio.fixture
async def sql_store(tmp_path) -> AsyncGenerator[SqlRecordStore, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'records.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def session_factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    yield SqlRecordStore(session_factory=session_factory)
    await engine.dispose()


class TestSqlRecordStore:
    async def test_insert_and_lookup(self, sql_store):
        stored = await sql_store.insert(
            EntityType.CANDIDATE,
            {"email": "a@example.com", "first_name": "Ana"},
            external_id="12x1",
            natural_key="a@example.com",
        )

        assert stored.id is not None
        by_ext = await sql_store.get_by_external_id(EntityType.CANDIDATE, "12x1")
        by_key = await sql_store.get_by_natural_key(EntityType.CANDIDATE, "a@example.com")
        assert by_ext.id == stored.id == by_key.id
        assert by_ext.fields["first_name"] == "Ana"

    async def test_save_updates_row(self, sql_store):
        stored = await sql_store.insert(EntityType.CLIENT, {"name": "Acme"}, natural_key="acme")

        saved = await sql_store.save(
            stored.model_copy(update={"fields": {"name": "Acme BV"}, "natural_key": "acme bv", "external_id": "11x1"})
        )

        assert saved.fields == {"name": "Acme BV"}
        assert saved.updated_at is not None
        assert await sql_store.get_by_natural_key(EntityType.CLIENT, "acme") is None
        assert (await sql_store.get_by_external_id(EntityType.CLIENT, "11x1")).id == stored.id

    async def test_entity_tables_are_separate(self, sql_store):
        await sql_store.insert(EntityType.CLIENT, {"name": "Acme"}, external_id="1")
        await sql_store.insert(EntityType.VACANCY, {"title": "Dev"}, external_id="1")

        assert len(await sql_store.list_records(EntityType.CLIENT)) == 1
        assert len(await sql_store.list_records(EntityType.VACANCY)) == 1
        assert await sql_store.list_records(EntityType.TODO) == []

    async def test_unique_external_id(self, sql_store):
        await sql_store.insert(EntityType.CLIENT, {"name": "A"}, external_id="11x1")

        with pytest.raises(IntegrityError):
            await sql_store.insert(EntityType.CLIENT, {"name": "B"}, external_id="11x1")

    async def test_save_missing_row_raises(self, sql_store):
        stored = await sql_store.insert(EntityType.CLIENT, {"name": "A"})
        ghost = stored.model_copy(update={"id": stored.id + 100})

        with pytest.raises(KeyError):
            await sql_store.save(ghost)

    async def test_dates_are_stored_as_json(self, sql_store):
        layer = UpsertLayer(sql_store)

        await layer.upsert(map_task({"id": "9x1", "subject": "Call", "due_date": "2026-05-01"}))

        stored = await sql_store.get_by_external_id(EntityType.TODO, "9x1")
        assert stored.fields["due_date"] == date(2026, 5, 1).isoformat()

    async def test_upsert_is_idempotent(self, sql_store):
        layer = UpsertLayer(sql_store)
        batch = [map_contact({"id": f"12x{i}", "email": f"p{i}@example.com"}) for i in range(5)]

        await layer.bulk_upsert(batch)
        second = await layer.bulk_upsert(batch)

        assert (second.created, second.updated) == (0, 5)
        assert len(await sql_store.list_records(EntityType.CANDIDATE)) == 5
