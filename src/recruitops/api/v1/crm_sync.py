"""REST endpoints for the CRM sync control plane.

Provides status polling, history, manual sync triggers, scheduler
configuration and explicit auto-sync start/stop. The orchestrator lives on
app.state; when the CRM is not configured it is None and every endpoint
answers 503.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel

from src.recruitops.sync.orchestrator import DEFAULT_HISTORY_LIMIT, SyncOrchestrator
from src.recruitops.sync.schemas import (
    SyncConfigUpdate,
    SyncHistoryEntry,
    SyncRequest,
)

router = APIRouter(prefix="/api/v1/crm-sync", tags=["crm-sync"])


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_orchestrator(request: Request) -> SyncOrchestrator:
    """Retrieve SyncOrchestrator from app.state, 503 if not available."""
    orchestrator = getattr(request.app.state, "sync_orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRM sync is not available. Check the Vtiger connection settings.",
        )
    return orchestrator


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/status")
async def get_sync_status(request: Request) -> dict[str, Any]:
    """Current sync status snapshot (camelCase keys)."""
    orchestrator = _get_orchestrator(request)
    return _dump(orchestrator.status())


@router.get("/history")
async def get_sync_history(
    request: Request,
    limit: int = Query(default=DEFAULT_HISTORY_LIMIT, ge=1, le=1000),
) -> list[dict[str, Any]]:
    """Sync history, newest first."""
    orchestrator = _get_orchestrator(request)
    entries: list[SyncHistoryEntry] = orchestrator.history(limit)
    return [_dump(entry) for entry in entries]


@router.post("/sync", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(request: Request, body: SyncRequest | None = None) -> dict[str, Any]:
    """Start a sync in the background and return immediately."""
    orchestrator = _get_orchestrator(request)
    body = body or SyncRequest()
    started = orchestrator.trigger(body.direction, full=body.full)
    return {
        "started": started,
        "message": "Sync started" if started else "Sync already in progress",
        "status": _dump(orchestrator.status()),
    }


@router.post("/sync/cancel")
async def cancel_sync(request: Request) -> dict[str, Any]:
    """Ask the active run to stop at its next page boundary."""
    orchestrator = _get_orchestrator(request)
    return {"cancelled": orchestrator.cancel()}


@router.post("/config")
async def update_sync_config(request: Request, body: SyncConfigUpdate) -> dict[str, Any]:
    """Reconfigure the auto-sync interval (seconds) and enabled flag."""
    orchestrator = _get_orchestrator(request)
    snapshot = orchestrator.update_config(body)
    return {
        "syncInterval": orchestrator.scheduler.interval,
        "enableAutoSync": orchestrator.scheduler.is_running,
        "status": _dump(snapshot),
    }


@router.post("/auto-sync/start")
async def start_auto_sync(request: Request) -> dict[str, Any]:
    orchestrator = _get_orchestrator(request)
    orchestrator.start_auto_sync()
    return _dump_auto_sync(orchestrator)


@router.post("/auto-sync/stop")
async def stop_auto_sync(request: Request) -> dict[str, Any]:
    orchestrator = _get_orchestrator(request)
    orchestrator.stop_auto_sync()
    return _dump_auto_sync(orchestrator)


def _dump_auto_sync(orchestrator: SyncOrchestrator) -> dict[str, Any]:
    return {
        "enableAutoSync": orchestrator.scheduler.is_running,
        "syncInterval": orchestrator.scheduler.interval,
    }
