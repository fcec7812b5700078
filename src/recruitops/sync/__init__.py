"""CRM synchronization -- mapping, upsert, per-entity syncs and the orchestrator.

Provides:
- SyncOrchestrator: run sequencing, state machine, progress and history
- AutoSyncScheduler: periodic trigger for the orchestrator
- CandidateSync / ClientSync / VacancySync / TodoSync: per-entity sync units
- UpsertLayer + RecordStore implementations (in-memory and SQL)
- ProgressBus: subscribable progress stream
"""

from src.recruitops.sync.entities import CandidateSync, ClientSync, EntitySync, TodoSync, VacancySync
from src.recruitops.sync.orchestrator import InvalidStateTransitionError, SyncOrchestrator
from src.recruitops.sync.progress import ProgressBus, log_progress
from src.recruitops.sync.scheduler import AutoSyncScheduler
from src.recruitops.sync.store import InMemoryRecordStore, RecordStore, SqlRecordStore
from src.recruitops.sync.upsert import UpsertLayer

__all__ = [
    "AutoSyncScheduler",
    "CandidateSync",
    "ClientSync",
    "EntitySync",
    "InMemoryRecordStore",
    "InvalidStateTransitionError",
    "ProgressBus",
    "RecordStore",
    "SqlRecordStore",
    "SyncOrchestrator",
    "TodoSync",
    "UpsertLayer",
    "VacancySync",
    "log_progress",
]
