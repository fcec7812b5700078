"""Per-entity sync units run by the orchestrator.

Each unit pulls one record family from the CRM, maps it, and upserts it:
- CandidateSync: CRM Contacts, paged with a count estimate and progress
  events. The only unit with an outbound capability (status push-back).
- ClientSync: CRM organizations via the bulk GetAccounts operation
- VacancySync: CRM jobs module, linked to local clients by account id
- TodoSync: CRM calendar/task module

Read-only units declare ``supports_outbound = False``; the orchestrator
skips them for outbound-only runs instead of calling write paths that do
not exist.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime

import structlog

from src.recruitops.crm.connector import CRMConnector
from src.recruitops.crm.errors import RemoteError
from src.recruitops.sync.field_mapping import map_account, map_contact, map_job, map_task
from src.recruitops.sync.progress import ProgressBus
from src.recruitops.sync.schemas import EntitySyncResult, EntityType, SyncDirection, UpsertResult
from src.recruitops.sync.upsert import UpsertLayer

logger = structlog.get_logger(__name__)

CONTACTS_MODULE = "Contacts"
PUSHED_STATUS_FIELD = "crm_status"


class EntitySync(ABC):
    """One entity type's sync in one run.

    Args:
        connector: CRM connector shared by all units.
        upsert: Upsert layer bound to the local record store.
        progress: Progress bus for batch events (optional).
    """

    entity_type: EntityType
    supports_outbound: bool = False

    def __init__(
        self,
        connector: CRMConnector,
        upsert: UpsertLayer,
        progress: ProgressBus | None = None,
    ) -> None:
        self._connector = connector
        self._upsert = upsert
        self._progress = progress

    @abstractmethod
    async def pull(
        self,
        since: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> tuple[UpsertResult, bool]:
        """Import from the CRM. Returns (upsert counts, cancelled)."""
        ...

    async def push(self) -> tuple[int, int]:
        """Export to the CRM. Returns (pushed, skipped).

        Read-only units (``supports_outbound = False``) have nothing to export.
        """
        return 0, 0

    async def run(
        self,
        direction: SyncDirection,
        since: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> EntitySyncResult:
        result = EntitySyncResult(entity_type=self.entity_type, direction=direction)
        if direction.inbound:
            result.pulled, result.cancelled = await self.pull(since=since, cancel=cancel)
        if direction.outbound and self.supports_outbound:
            result.pushed, result.push_skipped = await self.push()

        logger.info(
            "sync.entity_complete",
            entity_type=self.entity_type.value,
            direction=direction.value,
            created=result.pulled.created,
            updated=result.pulled.updated,
            skipped=result.pulled.skipped,
            pushed=result.pushed,
            cancelled=result.cancelled,
        )
        return result


class CandidateSync(EntitySync):
    """Contacts <-> candidates. Inbound pages through the Contacts module."""

    entity_type = EntityType.CANDIDATE
    supports_outbound = True

    async def pull(
        self,
        since: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> tuple[UpsertResult, bool]:
        base = f"SELECT * FROM {CONTACTS_MODULE}"
        if since is not None:
            base += f" WHERE modifiedtime > '{since:%Y-%m-%d %H:%M:%S}'"

        total = await self._connector.estimate_total(base)
        if total is None:
            total = await self._connector.count_by_paging(base, cancel)
        if self._progress is not None:
            self._progress.started(total, self.entity_type)

        result = UpsertResult()
        processed = 0
        async for page in self._connector.iter_pages(base, cancel):
            batch = await self._upsert.bulk_upsert(map_contact(row) for row in page)
            result = result.merge(batch)
            processed += len(page)
            if total is not None and processed > total:
                total = processed
            if self._progress is not None:
                self._progress.batch(len(page), processed, total, self.entity_type)

        cancelled = bool(cancel and cancel.is_set())
        if not cancelled and self._progress is not None and total != processed:
            self._progress.batch(0, processed, processed, self.entity_type)
        return result, cancelled

    async def push(self) -> tuple[int, int]:
        """Write changed local candidate statuses back to their CRM contacts."""
        store = self._upsert.store
        pushed = skipped = 0

        for record in await store.list_records(self.entity_type):
            status = record.fields.get("status")
            if not status or status == record.fields.get(PUSHED_STATUS_FIELD):
                continue

            external_id = record.external_id
            if external_id is None and record.fields.get("email"):
                external_id = await self._connector.find_id_by_field(
                    CONTACTS_MODULE, "email", record.fields["email"]
                )
            if external_id is None:
                skipped += 1
                logger.info("sync.status_push_skipped_no_contact", record_id=record.id)
                continue

            try:
                await self._connector.push_candidate_status(external_id, status)
            except RemoteError as exc:
                skipped += 1
                logger.warning(
                    "sync.status_push_failed",
                    record_id=record.id,
                    external_id=external_id,
                    error=str(exc),
                )
                continue

            fields = {**record.fields, PUSHED_STATUS_FIELD: status}
            await store.save(
                record.model_copy(
                    update={"fields": fields, "external_id": record.external_id or external_id}
                )
            )
            pushed += 1

        return pushed, skipped


class ClientSync(EntitySync):
    """Organizations -> clients through the bulk accounts export."""

    entity_type = EntityType.CLIENT

    async def pull(
        self,
        since: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> tuple[UpsertResult, bool]:
        accounts = await self._connector.import_accounts()
        result = await self._upsert.bulk_upsert(map_account(a) for a in accounts)
        return result, False


class VacancySync(EntitySync):
    """Jobs module -> vacancies, linked to already-synced clients."""

    entity_type = EntityType.VACANCY

    def __init__(self, *args, module: str = "Jobs", **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._module = module

    async def pull(
        self,
        since: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> tuple[UpsertResult, bool]:
        rows = await self._connector.query_all(f"SELECT * FROM {self._module}", cancel)
        records = [map_job(row) for row in rows]

        store = self._upsert.store
        for record in records:
            account_id = record.fields.get("client_external_id")
            if account_id:
                client = await store.get_by_external_id(EntityType.CLIENT, account_id)
                if client is not None:
                    record.fields["client_id"] = client.id

        result = await self._upsert.bulk_upsert(records)
        return result, bool(cancel and cancel.is_set())


class TodoSync(EntitySync):
    """Calendar/task module -> todos."""

    entity_type = EntityType.TODO

    def __init__(self, *args, module: str = "Calendar", **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._module = module

    async def pull(
        self,
        since: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> tuple[UpsertResult, bool]:
        rows = await self._connector.query_all(f"SELECT * FROM {self._module}", cancel)
        result = await self._upsert.bulk_upsert(map_task(row) for row in rows)
        return result, bool(cancel and cancel.is_set())
