"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
covers the record store database (when the database backend is used) and
whether the CRM sync service came up.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.recruitops.config import StoreBackend, get_settings
from src.recruitops.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and CRM sync availability."""
    settings = get_settings()
    checks: dict = {"database": "ok", "crm_sync": "ok"}

    if settings.STORE_BACKEND == StoreBackend.database:
        try:
            engine = get_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            checks["database"] = "error"
            checks["database_error"] = str(e)
    else:
        checks["database"] = "memory"

    if getattr(request.app.state, "sync_orchestrator", None) is None:
        checks["crm_sync"] = "unavailable"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if the store is reachable, 503 otherwise.

    An unconfigured CRM is reported but does not fail readiness; the sync
    endpoints answer 503 on their own in that case.
    """
    checks = await _check_dependencies(request)
    healthy = checks.get("database") in ("ok", "memory")

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )
