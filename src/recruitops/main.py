"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database and CRM sync initialization, and the v1 API
router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.recruitops.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.recruitops.api.v1.router import router as v1_router
from src.recruitops.config import StoreBackend, get_settings
from src.recruitops.core.database import close_db, init_db
from src.recruitops.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.recruitops.crm.connector import CRMConnector
from src.recruitops.crm.errors import ConfigurationError
from src.recruitops.sync.factory import build_orchestrator, build_store


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and CRM sync on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    if settings.STORE_BACKEND == StoreBackend.database:
        await init_db()

    # ── CRM Sync ─────────────────────────────────────────────────────────
    # A missing CRM configuration does not prevent startup; the control
    # plane answers 503 until the service is configured.

    connector: CRMConnector | None = None
    app.state.sync_orchestrator = None
    try:
        connector = CRMConnector.from_settings(settings)
        orchestrator = build_orchestrator(settings, connector, build_store(settings))
        app.state.sync_orchestrator = orchestrator
        await orchestrator.initialize()
        log.info(
            "crm_sync.initialized",
            auth_scheme=settings.VTIGER_AUTH_SCHEME.value,
            store_backend=settings.STORE_BACKEND.value,
        )
    except ConfigurationError as exc:
        log.warning("crm_sync.not_configured", error=str(exc))

    yield

    orchestrator = app.state.sync_orchestrator
    if orchestrator is not None:
        await orchestrator.shutdown()
    elif connector is not None:
        await connector.close()

    if settings.STORE_BACKEND == StoreBackend.database:
        await close_db()
    log.info("app.shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="RecruitOps CRM Sync",
        version="0.1.0",
        description="Synchronization between the recruitment platform and a Vtiger CRM",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
