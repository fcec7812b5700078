"""Tests for UpsertLayer and InMemoryRecordStore.

Tests cover:
- Idempotent upsert (same batch twice -> no new records)
- External id and natural key resolution, including the guard against
  attaching a record to a local row that already belongs to another CRM id
- Client natural keys tried email first, then name
- Authoritative overwrite and protective survival through the store
- Index hygiene when natural keys change
- Per-record failure isolation in bulk_upsert
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.recruitops.sync.field_mapping import map_contact
from src.recruitops.sync.schemas import EntityType, IncomingRecord
from src.recruitops.sync.store import DuplicateExternalIdError, InMemoryRecordStore
from src.recruitops.sync.upsert import UpsertLayer, natural_key_for, natural_keys_for


def _candidate(external_id: str | None = None, **fields) -> IncomingRecord:
    return IncomingRecord(entity_type=EntityType.CANDIDATE, external_id=external_id, fields=fields)


def _client(external_id: str | None = None, **fields) -> IncomingRecord:
    return IncomingRecord(entity_type=EntityType.CLIENT, external_id=external_id, fields=fields)


# ── Idempotency ──────────────────────────────────────────────────────────────


class TestIdempotency:
    async def test_second_identical_batch_creates_nothing(self, upsert_layer, memory_store):
        batch = [
            map_contact({"id": "12x1", "firstname": "Ana", "email": "ana@example.com"}),
            map_contact({"id": "12x2", "firstname": "Ben", "email": "ben@example.com"}),
        ]

        first = await upsert_layer.bulk_upsert(batch)
        second = await upsert_layer.bulk_upsert(batch)

        assert (first.created, first.updated) == (2, 0)
        assert (second.created, second.updated) == (0, 2)
        assert len(await memory_store.list_records(EntityType.CANDIDATE)) == 2
        assert sorted(first.ids) == sorted(second.ids)

    async def test_last_synced_at_set_from_clock(self, memory_store):
        moment = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
        layer = UpsertLayer(memory_store, clock=lambda: moment)

        _, stored = await layer.upsert(_candidate("12x1", email="a@example.com"))

        assert stored.last_synced_at == moment


# ── Resolution ───────────────────────────────────────────────────────────────


class TestResolution:
    async def test_natural_key_adopts_unlinked_record(self, upsert_layer, memory_store):
        await upsert_layer.upsert(_candidate(None, email="Ana@Example.com", first_name="Ana"))

        action, stored = await upsert_layer.upsert(_candidate("12x1", email="ana@example.com"))

        assert action == "updated"
        assert stored.external_id == "12x1"
        assert stored.fields["first_name"] == "Ana"
        assert len(await memory_store.list_records(EntityType.CANDIDATE)) == 1

    async def test_natural_key_does_not_steal_linked_record(self, upsert_layer, memory_store):
        await upsert_layer.upsert(_candidate("12x1", email="shared@example.com"))

        action, stored = await upsert_layer.upsert(_candidate("12x2", email="shared@example.com"))

        assert action == "created"
        assert stored.external_id == "12x2"
        records = await memory_store.list_records(EntityType.CANDIDATE)
        assert [r.external_id for r in records] == ["12x1", "12x2"]

    async def test_external_id_never_reassigned(self, upsert_layer, memory_store):
        _, original = await upsert_layer.upsert(_candidate("12x1", email="a@example.com"))

        await upsert_layer.upsert(_candidate("12x1", email="b@example.com"))

        stored = await memory_store.get(EntityType.CANDIDATE, original.id)
        assert stored.external_id == "12x1"
        assert stored.fields["email"] == "b@example.com"

    async def test_no_identifier_is_skipped(self, upsert_layer, memory_store):
        result = await upsert_layer.bulk_upsert([_candidate(None, first_name="Nobody")])

        assert result.skipped == 1
        assert await memory_store.list_records(EntityType.CANDIDATE) == []

    async def test_todos_need_external_id(self, upsert_layer):
        record = IncomingRecord(entity_type=EntityType.TODO, fields={"title": "Call"})
        action, _ = await upsert_layer.upsert(record)
        assert action == "skipped"

    async def test_client_matched_by_email_before_name(self, upsert_layer, memory_store):
        _, local = await upsert_layer.upsert(_client(None, name="Acme", email="info@acme.com"))

        action, stored = await upsert_layer.upsert(_client("11x1", name="Acme Holding", email="INFO@acme.com"))

        assert action == "updated"
        assert stored.id == local.id
        assert stored.fields["name"] == "Acme Holding"
        assert len(await memory_store.list_records(EntityType.CLIENT)) == 1

    async def test_client_falls_back_to_name(self, upsert_layer, memory_store):
        _, local = await upsert_layer.upsert(_client(None, name="Acme"))

        action, stored = await upsert_layer.upsert(_client("11x2", name="ACME", email="ops@acme.com"))

        assert action == "updated"
        assert stored.id == local.id
        assert stored.external_id == "11x2"

    def test_client_natural_keys_in_priority_order(self):
        fields = {"name": "Acme", "email": " Info@Acme.com "}
        assert natural_keys_for(EntityType.CLIENT, fields) == ["info@acme.com", "acme"]
        assert natural_key_for(EntityType.CLIENT, fields) == "info@acme.com"

    def test_natural_key_is_lowercased(self):
        assert natural_key_for(EntityType.CLIENT, {"name": " Acme BV "}) == "acme bv"
        assert natural_key_for(EntityType.TODO, {"title": "x"}) is None
        assert natural_key_for(EntityType.CANDIDATE, {"email": ""}) is None


# ── Field Policies Through The Store ─────────────────────────────────────────


class TestFieldPolicies:
    async def test_authoritative_overwrite(self, upsert_layer, memory_store):
        await upsert_layer.upsert(map_contact({"id": "12x1", "email": "a@example.com", "jobTitle": "CTO"}))

        await upsert_layer.upsert(map_contact({"id": "12x1", "email": "a@example.com", "jobTitle": ""}))

        stored = await memory_store.get_by_external_id(EntityType.CANDIDATE, "12x1")
        assert stored.fields["job_title"] == ""

    async def test_protective_survival(self, upsert_layer, memory_store):
        await upsert_layer.upsert(map_contact({"id": "12x1", "email": "a@example.com", "salaryRangeMin": "50000"}))

        await upsert_layer.upsert(map_contact({"id": "12x1", "email": "a@example.com", "salaryRangeMin": ""}))

        stored = await memory_store.get_by_external_id(EntityType.CANDIDATE, "12x1")
        assert stored.fields["salary_range_min"] == 50000

    async def test_absent_authoritative_field_keeps_local_value(self, upsert_layer, memory_store):
        await upsert_layer.upsert(map_contact({"id": "12x1", "email": "a@example.com", "phone": "+31 6 1"}))

        await upsert_layer.upsert(map_contact({"id": "12x1", "email": "a@example.com"}))

        stored = await memory_store.get_by_external_id(EntityType.CANDIDATE, "12x1")
        assert stored.fields["phone"] == "+31 6 1"


# ── Index Hygiene ────────────────────────────────────────────────────────────


class TestIndexHygiene:
    async def test_changed_email_moves_natural_key(self, upsert_layer, memory_store):
        await upsert_layer.upsert(_candidate("12x1", email="old@example.com"))
        await upsert_layer.upsert(_candidate("12x1", email="new@example.com"))

        assert await memory_store.get_by_natural_key(EntityType.CANDIDATE, "old@example.com") is None
        assert (await memory_store.get_by_natural_key(EntityType.CANDIDATE, "new@example.com")).external_id == "12x1"
        assert memory_store.index_sizes(EntityType.CANDIDATE) == (1, 1)

    async def test_duplicate_external_id_rejected(self):
        store = InMemoryRecordStore()
        await store.insert(EntityType.CLIENT, {"name": "A"}, external_id="11x1")

        with pytest.raises(DuplicateExternalIdError):
            await store.insert(EntityType.CLIENT, {"name": "B"}, external_id="11x1")

    async def test_records_are_copied(self, memory_store):
        stored = await memory_store.insert(EntityType.CLIENT, {"name": "A"}, external_id="11x1")
        stored.fields["name"] = "mutated"

        assert (await memory_store.get(EntityType.CLIENT, stored.id)).fields["name"] == "A"

    async def test_save_unknown_record_raises(self, memory_store):
        stored = await memory_store.insert(EntityType.CLIENT, {"name": "A"})
        other = InMemoryRecordStore()

        with pytest.raises(KeyError):
            await other.save(stored)


# ── Failure Isolation ────────────────────────────────────────────────────────


class _FlakyStore(InMemoryRecordStore):
    async def insert(self, entity_type, fields, external_id=None, natural_key=None, last_synced_at=None):
        if external_id == "12x2":
            raise RuntimeError("disk full")
        return await super().insert(entity_type, fields, external_id, natural_key, last_synced_at)


async def test_failing_record_counted_as_skipped():
    layer = UpsertLayer(_FlakyStore())

    result = await layer.bulk_upsert(
        [_candidate(f"12x{i}", email=f"p{i}@example.com") for i in range(1, 4)]
    )

    assert result.created == 2
    assert result.skipped == 1
    assert result.processed == 3
