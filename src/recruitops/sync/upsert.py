"""Idempotent create-or-update of mapped CRM records into a RecordStore.

Resolution order for each incoming record:
1. external id index
2. natural key index, trying each key field in priority order (candidate:
   email; client: email, then name; vacancy: title), lower-cased, but only
   onto a local record that has no external id yet or the same one
3. otherwise create, unless the record carries neither identifier (skipped)

Matched records are merged with merge_fields(), so authoritative fields
follow the CRM and protective fields are never blanked. An external id, once
assigned to a local record, is never replaced.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.recruitops.sync.field_mapping import FIELD_POLICIES, is_empty, merge_fields
from src.recruitops.sync.schemas import EntityType, IncomingRecord, StoredRecord, UpsertResult
from src.recruitops.sync.store import RecordStore

logger = structlog.get_logger(__name__)

NATURAL_KEY_FIELDS: dict[EntityType, tuple[str, ...]] = {
    EntityType.CANDIDATE: ("email",),
    EntityType.CLIENT: ("email", "name"),
    EntityType.VACANCY: ("title",),
    EntityType.TODO: (),
}


def natural_keys_for(entity_type: EntityType, fields: dict[str, Any]) -> list[str]:
    """Lower-cased natural key candidates for ``fields``, highest priority first."""
    keys = []
    for key_field in NATURAL_KEY_FIELDS.get(entity_type, ()):
        value = fields.get(key_field)
        if not is_empty(value):
            keys.append(str(value).strip().lower())
    return keys


def natural_key_for(entity_type: EntityType, fields: dict[str, Any]) -> str | None:
    """The natural key stored for ``fields``, or None if the type has none or all are blank."""
    keys = natural_keys_for(entity_type, fields)
    return keys[0] if keys else None


class UpsertLayer:
    """Applies batches of IncomingRecord to a RecordStore.

    Args:
        store: Target record store.
        clock: Returns the timestamp written to ``last_synced_at``.
    """

    def __init__(
        self,
        store: RecordStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def store(self) -> RecordStore:
        return self._store

    async def resolve(self, record: IncomingRecord) -> StoredRecord | None:
        """Find the local record ``record`` should update, if any."""
        entity_type = record.entity_type
        if record.external_id:
            existing = await self._store.get_by_external_id(entity_type, record.external_id)
            if existing is not None:
                return existing

        for natural_key in natural_keys_for(entity_type, record.fields):
            existing = await self._store.get_by_natural_key(entity_type, natural_key)
            if existing is None:
                continue
            if existing.external_id is None or existing.external_id == record.external_id:
                return existing
        return None

    async def upsert(self, record: IncomingRecord) -> tuple[str, StoredRecord | None]:
        """Upsert one record. Returns (``created``|``updated``|``skipped``, record)."""
        entity_type = record.entity_type
        rules = FIELD_POLICIES[entity_type]
        now = self._clock()

        existing = await self.resolve(record)
        if existing is not None:
            merged = merge_fields(existing.fields, record.fields, rules)
            updated = existing.model_copy(
                update={
                    "fields": merged,
                    "natural_key": natural_key_for(entity_type, merged),
                    "external_id": existing.external_id or record.external_id,
                    "last_synced_at": now,
                }
            )
            return "updated", await self._store.save(updated)

        natural_key = natural_key_for(entity_type, record.fields)
        if not record.external_id and natural_key is None:
            return "skipped", None

        created = await self._store.insert(
            entity_type,
            fields=dict(record.fields),
            external_id=record.external_id,
            natural_key=natural_key,
            last_synced_at=now,
        )
        return "created", created

    async def bulk_upsert(self, records: Iterable[IncomingRecord]) -> UpsertResult:
        """Upsert every record; a failing record is logged and counted as skipped."""
        result = UpsertResult()
        for record in records:
            try:
                action, stored = await self.upsert(record)
            except Exception as exc:
                result.skipped += 1
                result.failed += 1
                logger.error(
                    "sync.upsert_error",
                    entity_type=record.entity_type.value,
                    external_id=record.external_id,
                    error=str(exc),
                )
                continue

            if action == "created":
                result.created += 1
            elif action == "updated":
                result.updated += 1
            else:
                result.skipped += 1
                logger.debug(
                    "sync.upsert_skipped_no_identifier",
                    entity_type=record.entity_type.value,
                )
            if stored is not None:
                result.ids.append(stored.id)

        return result
