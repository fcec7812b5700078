"""Prometheus metrics, Sentry integration, and CRM call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- CRM request and sync progress metrics (counters, histograms, gauges)
- track_crm_call(): Context manager for CRM request metrics
- MetricsProgressSubscriber: feeds sync progress events into gauges
- init_sentry(): Initialize Sentry with sync-aware event tagging
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

if TYPE_CHECKING:
    from src.recruitops.sync.schemas import ProgressEvent

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── CRM Metrics ──────────────────────────────────────────────────────────────

crm_requests_total = Counter(
    "crm_requests_total",
    "Total requests sent to the external CRM",
    ["operation", "outcome"],
)

crm_request_duration_seconds = Histogram(
    "crm_request_duration_seconds",
    "External CRM request duration in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "crm_sync_runs_total",
    "Completed sync runs by final status",
    ["status"],
)

sync_records_processed = Gauge(
    "crm_sync_records_processed",
    "Records processed in the current or last sync run",
)

sync_records_total = Gauge(
    "crm_sync_records_estimated_total",
    "Estimated record total for the current or last sync run (0 when unknown)",
)

sync_in_progress = Gauge(
    "crm_sync_in_progress",
    "1 while a sync run is active",
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── CRM Metrics Helper ───────────────────────────────────────────────────────


@asynccontextmanager
async def track_crm_call(operation: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one CRM request.

    Usage:
        async with track_crm_call("query") as tracker:
            response = await client.post(...)

    The outcome label is ``success`` unless the body raises, in which case it
    is the exception class name (``TransientError``, ``AuthExpiredError``...).
    Callers may override it through ``tracker["outcome"]``.
    """
    tracker: dict[str, Any] = {"outcome": "success"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception as exc:
        tracker["outcome"] = type(exc).__name__
        raise
    finally:
        crm_requests_total.labels(operation=operation, outcome=tracker["outcome"]).inc()
        crm_request_duration_seconds.labels(operation=operation).observe(
            time.perf_counter() - start_time
        )


class MetricsProgressSubscriber:
    """Progress-bus subscriber that mirrors sync progress into gauges."""

    def __call__(self, event: ProgressEvent) -> None:
        if event.kind == "started":
            sync_in_progress.set(1)
            sync_records_processed.set(0)
            sync_records_total.set(event.total or 0)
        elif event.kind == "batch":
            sync_records_processed.set(event.processed)
            sync_records_total.set(event.total or 0)
        elif event.kind == "completed":
            sync_in_progress.set(0)
            sync_runs_total.labels(status="success").inc()
        elif event.kind == "error":
            sync_in_progress.set(0)
            sync_runs_total.labels(status="error").inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Tag events raised from the CRM connector with the failing class."""
        exc_info = hint.get("exc_info")
        if exc_info and exc_info[0] is not None:
            module = getattr(exc_info[0], "__module__", "")
            if module.startswith("src.recruitops.crm"):
                event.setdefault("tags", {})["crm_error"] = exc_info[0].__name__
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
