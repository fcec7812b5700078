"""Pydantic schemas for CRM synchronization.

Defines:
- Enums: EntityType, SyncState, SyncDirection, HistoryStatus
- Records: IncomingRecord (mapped from the CRM), StoredRecord (local store view)
- Results: UpsertResult, EntitySyncResult
- Progress: ProgressEvent, ProgressCounters
- Control plane: SyncHistoryEntry, SyncStatusSnapshot, SyncRequest, SyncConfigUpdate
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Record families kept in sync with the CRM."""

    CANDIDATE = "candidate"
    CLIENT = "client"
    VACANCY = "vacancy"
    TODO = "todo"


class SyncState(str, Enum):
    """Lifecycle state of the orchestrator."""

    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class SyncDirection(str, Enum):
    """Which way data flows relative to the external CRM."""

    TO_EXTERNAL = "to_external"
    FROM_EXTERNAL = "from_external"
    BIDIRECTIONAL = "bidirectional"

    @property
    def inbound(self) -> bool:
        return self in (SyncDirection.FROM_EXTERNAL, SyncDirection.BIDIRECTIONAL)

    @property
    def outbound(self) -> bool:
        return self in (SyncDirection.TO_EXTERNAL, SyncDirection.BIDIRECTIONAL)


class HistoryStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


# ── Records ─────────────────────────────────────────────────────────────────


class IncomingRecord(BaseModel):
    """Partial internal record produced by the field mapping engine."""

    entity_type: EntityType
    external_id: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)


class StoredRecord(BaseModel):
    """A record as held by a RecordStore."""

    id: int
    entity_type: EntityType
    external_id: str | None = None
    natural_key: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime | None = None


class UpsertResult(BaseModel):
    """Counts and affected local ids for one bulk upsert."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0  # store errors; also counted in skipped
    ids: list[int] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped

    def merge(self, other: UpsertResult) -> UpsertResult:
        return UpsertResult(
            created=self.created + other.created,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            failed=self.failed + other.failed,
            ids=self.ids + other.ids,
        )


class EntitySyncResult(BaseModel):
    """Outcome of syncing one entity type in one direction."""

    entity_type: EntityType
    direction: SyncDirection
    pulled: UpsertResult = Field(default_factory=UpsertResult)
    pushed: int = 0
    push_skipped: int = 0
    cancelled: bool = False

    def summary(self) -> str:
        parts = []
        if self.direction.inbound:
            parts.append(
                f"{self.pulled.created} created, {self.pulled.updated} updated, "
                f"{self.pulled.skipped} skipped"
            )
        if self.direction.outbound:
            parts.append(f"{self.pushed} pushed")
        if self.cancelled:
            parts.append("cancelled")
        return "; ".join(parts) or "nothing to do"


# ── Progress ────────────────────────────────────────────────────────────────


class ProgressEvent(BaseModel):
    """One event on the progress stream of a sync run."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["started", "batch", "completed", "error"]
    entity_type: EntityType = EntityType.CANDIDATE
    batch_size: int = 0
    processed: int = 0
    total: int | None = None
    message: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)


class ProgressCounters(BaseModel):
    """Immutable progress snapshot; replaced whole so readers never see a torn state."""

    model_config = ConfigDict(frozen=True)

    processed: int = 0
    total: int = 0
    started_at: datetime | None = None


# ── Control Plane ───────────────────────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncHistoryEntry(_CamelModel):
    """Outcome of one entity type in one run, newest first in history."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = Field(default_factory=_utcnow)
    entity_type: EntityType
    direction: SyncDirection
    status: HistoryStatus
    message: str | None = None


class SyncStatusSnapshot(_CamelModel):
    """Point-in-time view of the orchestrator for polling clients."""

    status: SyncState
    last_sync_time: datetime | None = None
    is_initialized: bool = False
    enable_auto_sync: bool = False
    processed_candidates: int = 0
    total_candidates: int = 0
    progress_percentage: int = 0
    rate: int = 0
    is_running: bool = False
    message: str = "Ready"


class SyncRequest(_CamelModel):
    """Body of a manual sync trigger."""

    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    full: bool = False


class SyncConfigUpdate(_CamelModel):
    """Partial scheduler reconfiguration; omitted fields keep their value."""

    sync_interval: int | None = Field(default=None, gt=0, description="Seconds between auto-sync runs")
    enable_auto_sync: bool | None = None
