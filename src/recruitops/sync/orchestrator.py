"""Sync orchestrator -- state machine, run sequencing, progress and history.

Provides SyncOrchestrator, which:
- Guards its lifecycle with an explicit transition table
  (idle -> syncing -> success|error -> syncing|idle)
- Runs the mandatory candidate sync, then each secondary sync in isolation
- Aggregates progress from the ProgressBus into one immutable snapshot
- Keeps a bounded, newest-first history of per-entity outcomes
- Owns the AutoSyncScheduler and the background-run task
- Tracks the incremental watermark: the start time of the last inbound
  candidate pull that was neither cancelled nor hit store failures

A single asyncio.Lock makes "at most one active run" a real guarantee rather
than a status check that concurrent triggers could race past.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from src.recruitops.crm.connector import CRMConnector
from src.recruitops.crm.errors import CRMError
from src.recruitops.sync.entities import EntitySync
from src.recruitops.sync.progress import ProgressBus
from src.recruitops.sync.scheduler import AutoSyncScheduler
from src.recruitops.sync.schemas import (
    EntitySyncResult,
    EntityType,
    HistoryStatus,
    ProgressCounters,
    ProgressEvent,
    SyncConfigUpdate,
    SyncDirection,
    SyncHistoryEntry,
    SyncState,
    SyncStatusSnapshot,
)

logger = structlog.get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 50

# ── State Machine ───────────────────────────────────────────────────────────

_TRANSITIONS: dict[SyncState, set[SyncState]] = {
    SyncState.IDLE: {SyncState.SYNCING},
    SyncState.SYNCING: {SyncState.SUCCESS, SyncState.ERROR},
    SyncState.SUCCESS: {SyncState.SYNCING, SyncState.IDLE},
    SyncState.ERROR: {SyncState.SYNCING, SyncState.IDLE},
}


class InvalidStateTransitionError(ValueError):
    """Raised when a state change is not allowed by the transition table."""

    def __init__(self, current: SyncState, target: SyncState) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid sync state transition: {current.value} -> {target.value}")


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


class SyncOrchestrator:
    """Coordinates one CRM sync run at a time.

    Args:
        connector: CRM connector (used for initialize() connection checks).
        mandatory: Entity sync whose failure fails the run (candidates).
        secondary: Entity syncs whose failures are recorded but tolerated.
        progress: Progress bus shared with the entity syncs.
        history_limit: Maximum retained history entries.
        sync_interval_seconds: Auto-sync interval.
        enable_auto_sync: Start the scheduler on initialize().
        clock: Wall-clock source (UTC).
        monotonic: Monotonic clock for throughput.
    """

    def __init__(
        self,
        connector: CRMConnector,
        mandatory: EntitySync,
        secondary: list[EntitySync] | None = None,
        progress: ProgressBus | None = None,
        history_limit: int = 100,
        sync_interval_seconds: float = 300,
        enable_auto_sync: bool = False,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connector = connector
        self._mandatory = mandatory
        self._secondary = list(secondary or [])
        self._progress = progress if progress is not None else ProgressBus()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic

        self._state = SyncState.IDLE
        self._counters = ProgressCounters()
        self._started_monotonic: float | None = None
        self._history: deque[SyncHistoryEntry] = deque(maxlen=history_limit)
        self._last_sync_time: datetime | None = None
        self._watermark: datetime | None = None
        self._last_error: str | None = None
        self._initialized = False

        self._run_lock = asyncio.Lock()
        self._cancel = asyncio.Event()
        self._active_task: asyncio.Task | None = None

        self._progress.subscribe(self._on_progress)
        self.scheduler = AutoSyncScheduler(
            tick=self._scheduled_tick,
            is_busy=lambda: self.is_running,
            interval_seconds=sync_interval_seconds,
            enabled=enable_auto_sync,
        )

    # ── State ───────────────────────────────────────────────────────────────

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_running(self) -> bool:
        return (
            self._state == SyncState.SYNCING
            or self._run_lock.locked()
            or (self._active_task is not None and not self._active_task.done())
        )

    @property
    def progress(self) -> ProgressBus:
        return self._progress

    @property
    def last_sync_time(self) -> datetime | None:
        return self._last_sync_time

    @property
    def watermark(self) -> datetime | None:
        """Start time of the last complete inbound candidate pull."""
        return self._watermark

    def _transition(self, target: SyncState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidStateTransitionError(self._state, target)
        logger.debug("sync.state_changed", previous=self._state.value, state=target.value)
        self._state = target

    def reset(self) -> None:
        """Return to idle after a finished run (no-op while running)."""
        if self._state in (SyncState.SUCCESS, SyncState.ERROR) and not self.is_running:
            self._transition(SyncState.IDLE)

    # ── Progress ────────────────────────────────────────────────────────────

    def _on_progress(self, event: ProgressEvent) -> None:
        if event.entity_type != EntityType.CANDIDATE:
            return
        current = self._counters
        if event.kind == "started":
            if event.total is not None:
                self._counters = ProgressCounters(total=event.total, started_at=current.started_at)
            return
        if event.kind != "batch":
            return
        total = max(event.total or 0, event.processed)
        self._counters = ProgressCounters(
            processed=event.processed,
            total=total,
            started_at=current.started_at,
        )

    # ── History ─────────────────────────────────────────────────────────────

    def _record(
        self,
        entity_type: EntityType,
        direction: SyncDirection,
        status: HistoryStatus,
        message: str,
    ) -> None:
        self._history.appendleft(
            SyncHistoryEntry(
                timestamp=self._clock(),
                entity_type=entity_type,
                direction=direction,
                status=status,
                message=message,
            )
        )

    def history(self, limit: int = DEFAULT_HISTORY_LIMIT) -> list[SyncHistoryEntry]:
        """Most recent history entries first."""
        if limit <= 0:
            return []
        return list(self._history)[:limit]

    # ── Runs ────────────────────────────────────────────────────────────────

    async def sync_all(
        self,
        direction: SyncDirection | str = SyncDirection.BIDIRECTIONAL,
        full: bool = False,
    ) -> bool:
        """Run one sync. Returns False if another run is already active.

        Raises:
            Exception: Whatever the mandatory candidate sync raised; the run
                is left in the error state with an error history entry.
        """
        direction = SyncDirection(direction)
        if self._run_lock.locked():
            logger.info("sync.trigger_ignored", reason="already_running")
            return False

        async with self._run_lock:
            self._transition(SyncState.SYNCING)
            try:
                return await self._run(direction, full)
            finally:
                if self._state == SyncState.SYNCING:
                    # Cancelled or interrupted by a BaseException
                    self._last_error = "Sync interrupted"
                    self._transition(SyncState.ERROR)
                    self._progress.error(self._last_error)
                self._cancel.clear()

    async def _run(self, direction: SyncDirection, full: bool) -> bool:
        self._last_error = None
        run_started = self._clock()
        self._counters = ProgressCounters(started_at=run_started)
        self._started_monotonic = self._monotonic()
        since = None if full else self._watermark

        logger.info(
            "sync.run_started",
            direction=direction.value,
            incremental=since is not None,
        )
        self._progress.started(None)

        attempted: list[EntitySyncResult] = []
        mandatory = self._mandatory
        try:
            mandatory_result = await mandatory.run(direction, since=since, cancel=self._cancel)
            attempted.append(mandatory_result)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            self._last_error = message
            self._transition(SyncState.ERROR)
            self._record(mandatory.entity_type, direction, HistoryStatus.ERROR, message)
            self._progress.error(message, mandatory.entity_type)
            logger.error(
                "sync.run_failed",
                entity_type=mandatory.entity_type.value,
                direction=direction.value,
                error=message,
                error_type=type(exc).__name__,
            )
            raise

        for entity in self._secondary:
            if not direction.inbound and not entity.supports_outbound:
                logger.debug("sync.entity_skipped_read_only", entity_type=entity.entity_type.value)
                continue
            if self._cancel.is_set():
                logger.info("sync.entity_skipped_cancelled", entity_type=entity.entity_type.value)
                continue
            try:
                attempted.append(await entity.run(direction, cancel=self._cancel))
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                self._record(entity.entity_type, direction, HistoryStatus.ERROR, message)
                logger.warning(
                    "sync.secondary_failed",
                    entity_type=entity.entity_type.value,
                    error=message,
                    error_type=type(exc).__name__,
                )

        self._transition(SyncState.SUCCESS)
        self._last_sync_time = self._clock()
        pull_complete = not mandatory_result.cancelled and not mandatory_result.pulled.failed
        if direction.inbound and pull_complete:
            # Start of a complete pull; rows modified while it ran are fetched again next time
            self._watermark = run_started
        for result in attempted:
            self._record(result.entity_type, direction, HistoryStatus.SUCCESS, result.summary())
        self._progress.completed(self._counters.processed)

        logger.info(
            "sync.run_complete",
            direction=direction.value,
            processed=self._counters.processed,
            entities=[r.entity_type.value for r in attempted],
        )
        return True

    def trigger(
        self,
        direction: SyncDirection | str = SyncDirection.BIDIRECTIONAL,
        full: bool = False,
    ) -> bool:
        """Start a run in the background. Returns False if one is already active."""
        if self.is_running:
            logger.info("sync.trigger_ignored", reason="already_running")
            return False
        self._active_task = asyncio.create_task(
            self._run_in_background(SyncDirection(direction), full),
            name="crm-sync-run",
        )
        return True

    async def _run_in_background(self, direction: SyncDirection, full: bool) -> None:
        try:
            await self.sync_all(direction, full=full)
        except Exception:
            logger.error("sync.background_run_failed", direction=direction.value, exc_info=True)

    async def _scheduled_tick(self) -> None:
        self.trigger(SyncDirection.BIDIRECTIONAL)

    def cancel(self) -> bool:
        """Ask the active run to stop at the next page boundary."""
        if not self.is_running:
            return False
        self._cancel.set()
        logger.info("sync.cancel_requested")
        return True

    async def wait(self) -> None:
        """Wait for the background run started by trigger(), if any."""
        task = self._active_task
        if task is not None:
            await asyncio.shield(task)

    # ── Status ──────────────────────────────────────────────────────────────

    def status(self) -> SyncStatusSnapshot:
        """Point-in-time status; counters are read once as a single snapshot."""
        counters = self._counters
        state = self._state
        is_running = state == SyncState.SYNCING

        if counters.total > 0:
            percentage = _round_half_up(counters.processed / counters.total * 100)
        else:
            percentage = 0 if is_running else 100
        percentage = max(0, min(100, percentage))

        rate = 0
        if is_running and self._started_monotonic is not None and counters.processed > 0:
            elapsed = self._monotonic() - self._started_monotonic
            if elapsed > 0:
                rate = _round_half_up(counters.processed / elapsed)

        if is_running:
            message = "Syncing candidates from CRM..."
        elif state == SyncState.SUCCESS:
            message = "Sync complete"
        elif state == SyncState.ERROR:
            message = f"Sync failed: {self._last_error}" if self._last_error else "Sync failed"
        else:
            message = "Ready"

        return SyncStatusSnapshot(
            status=state,
            last_sync_time=self._last_sync_time,
            is_initialized=self._initialized,
            enable_auto_sync=self.scheduler.is_running,
            processed_candidates=counters.processed,
            total_candidates=counters.total,
            progress_percentage=percentage,
            rate=max(0, rate),
            is_running=is_running,
            message=message,
        )

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def initialize(self) -> bool:
        """Verify the CRM connection and start auto-sync if enabled."""
        try:
            ok = await self._connector.verify_connection()
        except CRMError as exc:
            logger.error("sync.initialize_failed", error=str(exc))
            ok = False

        self._initialized = ok
        if ok and self.scheduler.enabled:
            self.scheduler.start()
        logger.info("sync.initialized", connected=ok, auto_sync=self.scheduler.is_running)
        return ok

    def update_config(self, update: SyncConfigUpdate) -> SyncStatusSnapshot:
        """Reconfigure the scheduler; omitted values are kept."""
        self.scheduler.configure(
            interval_seconds=update.sync_interval,
            enabled=update.enable_auto_sync,
        )
        logger.info(
            "sync.config_updated",
            interval_seconds=self.scheduler.interval,
            auto_sync=self.scheduler.is_running,
        )
        return self.status()

    def start_auto_sync(self) -> None:
        self.scheduler.start()

    def stop_auto_sync(self) -> None:
        self.scheduler.stop()

    async def shutdown(self) -> None:
        """Stop the scheduler, cancel any active run and close the connector."""
        await self.scheduler.shutdown()
        task = self._active_task
        if task is not None and not task.done():
            self._cancel.set()
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._connector.logout()
        await self._connector.close()
