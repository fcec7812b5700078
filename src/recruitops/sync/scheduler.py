"""Auto-sync scheduler -- a repeating asyncio timer around the orchestrator.

Each tick sleeps for the configured interval, skips if a run is already
active, and otherwise fires the tick callback (which schedules a run in the
background and returns immediately, so stopping the scheduler never cancels
a run in flight). configure() swaps interval and enabled flag and restarts
or stops the loop without an await in between.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class AutoSyncScheduler:
    """Background loop that periodically triggers a sync.

    Args:
        tick: Async callable fired on every non-skipped tick.
        is_busy: Returns True while a run is active (tick is skipped).
        interval_seconds: Seconds between ticks.
        enabled: Whether start() should be called by the owner on initialize.
    """

    def __init__(
        self,
        tick: Callable[[], Awaitable[Any]],
        is_busy: Callable[[], bool],
        interval_seconds: float = 300,
        enabled: bool = False,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._tick = tick
        self._is_busy = is_busy
        self._interval = float(interval_seconds)
        self._enabled = enabled
        self._task: asyncio.Task | None = None
        self.ticks_fired = 0
        self.ticks_skipped = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start (or restart) the loop with the current interval."""
        self._cancel_task()
        self._enabled = True
        self._task = asyncio.create_task(self._loop(), name="crm-auto-sync")
        logger.info("scheduler.auto_sync_started", interval_seconds=self._interval)

    def stop(self) -> None:
        """Stop the loop. A run already in progress is left alone."""
        was_running = self.is_running
        self._cancel_task()
        self._enabled = False
        if was_running:
            logger.info("scheduler.auto_sync_stopped")

    def configure(self, interval_seconds: float | None = None, enabled: bool | None = None) -> None:
        """Apply a new interval and/or enabled flag, restarting or stopping as needed."""
        if interval_seconds is not None:
            if interval_seconds <= 0:
                raise ValueError("interval_seconds must be positive")
            self._interval = float(interval_seconds)

        want_running = self._enabled if enabled is None else enabled
        if want_running and (interval_seconds is not None or not self.is_running):
            self.start()
        elif not want_running:
            self.stop()

    async def shutdown(self) -> None:
        """Stop the loop and wait for it to unwind."""
        task = self._task
        self.stop()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if self._is_busy():
                self.ticks_skipped += 1
                logger.debug("scheduler.tick_skipped_busy")
                continue
            try:
                await self._tick()
                self.ticks_fired += 1
            except Exception:
                logger.warning("scheduler.tick_failed", exc_info=True)
