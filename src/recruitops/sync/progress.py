"""Subscribable progress stream for sync runs.

ProgressBus fans every ProgressEvent out to an observer list so the
orchestrator's counters, the log and the metrics gauges can follow the same
run independently. A failing subscriber is logged and skipped; it never
affects the run or the other subscribers.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from src.recruitops.sync.schemas import EntityType, ProgressEvent

logger = structlog.get_logger(__name__)

ProgressSubscriber = Callable[[ProgressEvent], None]


class ProgressBus:
    """Synchronous observer list for ProgressEvent."""

    def __init__(self) -> None:
        self._subscribers: list[ProgressSubscriber] = []

    def subscribe(self, subscriber: ProgressSubscriber) -> Callable[[], None]:
        """Register ``subscriber``; returns a callable that unsubscribes it."""
        self._subscribers.append(subscriber)
        return lambda: self.unsubscribe(subscriber)

    def unsubscribe(self, subscriber: ProgressSubscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def __len__(self) -> int:
        return len(self._subscribers)

    def publish(self, event: ProgressEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.warning(
                    "sync.progress_subscriber_failed",
                    kind=event.kind,
                    subscriber=getattr(subscriber, "__name__", type(subscriber).__name__),
                    exc_info=True,
                )

    # Convenience emitters

    def started(self, total: int | None, entity_type: EntityType = EntityType.CANDIDATE) -> None:
        self.publish(ProgressEvent(kind="started", entity_type=entity_type, total=total))

    def batch(
        self,
        batch_size: int,
        processed: int,
        total: int | None,
        entity_type: EntityType = EntityType.CANDIDATE,
    ) -> None:
        self.publish(
            ProgressEvent(
                kind="batch",
                entity_type=entity_type,
                batch_size=batch_size,
                processed=processed,
                total=total,
            )
        )

    def completed(self, processed: int = 0, entity_type: EntityType = EntityType.CANDIDATE) -> None:
        self.publish(ProgressEvent(kind="completed", entity_type=entity_type, processed=processed, total=processed))

    def error(self, message: str, entity_type: EntityType = EntityType.CANDIDATE) -> None:
        self.publish(ProgressEvent(kind="error", entity_type=entity_type, message=message))


def log_progress(event: ProgressEvent) -> None:
    """Subscriber that writes progress events to the structured log."""
    if event.kind == "batch":
        logger.debug(
            "sync.progress_batch",
            entity_type=event.entity_type.value,
            batch_size=event.batch_size,
            processed=event.processed,
            total=event.total,
        )
    elif event.kind == "error":
        logger.warning("sync.progress_error", entity_type=event.entity_type.value, error=event.message)
    else:
        logger.info(
            f"sync.progress_{event.kind}",
            entity_type=event.entity_type.value,
            processed=event.processed,
            total=event.total,
        )
