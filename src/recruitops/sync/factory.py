"""Wiring helpers shared by the application lifespan and the ops script."""

from __future__ import annotations

from src.recruitops.config import Settings, StoreBackend
from src.recruitops.core.database import get_session
from src.recruitops.core.monitoring import MetricsProgressSubscriber
from src.recruitops.crm.connector import CRMConnector
from src.recruitops.sync.entities import CandidateSync, ClientSync, TodoSync, VacancySync
from src.recruitops.sync.orchestrator import SyncOrchestrator
from src.recruitops.sync.progress import ProgressBus, log_progress
from src.recruitops.sync.store import InMemoryRecordStore, RecordStore, SqlRecordStore
from src.recruitops.sync.upsert import UpsertLayer


def build_store(settings: Settings) -> RecordStore:
    """Record store for the configured backend."""
    if settings.STORE_BACKEND == StoreBackend.memory:
        return InMemoryRecordStore()
    return SqlRecordStore(session_factory=get_session)


def build_orchestrator(
    settings: Settings,
    connector: CRMConnector,
    store: RecordStore,
) -> SyncOrchestrator:
    """Assemble the entity syncs, progress bus and orchestrator."""
    progress = ProgressBus()
    progress.subscribe(log_progress)
    progress.subscribe(MetricsProgressSubscriber())

    upsert = UpsertLayer(store)
    return SyncOrchestrator(
        connector=connector,
        mandatory=CandidateSync(connector, upsert, progress),
        secondary=[
            ClientSync(connector, upsert, progress),
            VacancySync(connector, upsert, progress, module=settings.CRM_VACANCY_MODULE),
            TodoSync(connector, upsert, progress, module=settings.CRM_TASK_MODULE),
        ],
        progress=progress,
        history_limit=settings.SYNC_HISTORY_LIMIT,
        sync_interval_seconds=settings.SYNC_INTERVAL_SECONDS,
        enable_auto_sync=settings.ENABLE_AUTO_SYNC,
    )
