"""
Sync endpoints: on-demand passes, statistics and health.
"""

from fastapi import APIRouter, Depends, HTTPException

from ticketsync.api.deps import get_runtime, verify_password
from ticketsync.runtime import SyncRuntime
from ticketsync.schemas import (
    HealthStatus,
    SyncResult,
    SyncStatistics,
    SyncTriggerResponse,
)
from ticketsync.services.store import UnsupportedTableError, check_table
from ticketsync.timeutils import utcnow

router = APIRouter(prefix="/sync", tags=["sync"])


def _start_background(runtime: SyncRuntime, mode: str) -> SyncTriggerResponse:
    started_at = utcnow()
    try:
        runtime.worker.run_sync(mode)
    except RuntimeError:
        raise HTTPException(
            status_code=409,
            detail="An on-demand sync is already running. Please wait for it to complete."
        )
    return SyncTriggerResponse(
        message=f"{mode.capitalize()} sync started",
        started_at=started_at
    )


@router.post("/full", response_model=SyncTriggerResponse, status_code=202)
async def trigger_full_sync(
    runtime: SyncRuntime = Depends(get_runtime),
    _: bool = Depends(verify_password)
):
    """
    Start a full sync of every configured table in the background.

    Use GET /api/scheduler/worker to follow progress and results.

    Raises:
        409: If an on-demand sync is already running
    """
    return _start_background(runtime, "full")


@router.post("/incremental", response_model=SyncTriggerResponse, status_code=202)
async def trigger_incremental_sync(
    runtime: SyncRuntime = Depends(get_runtime),
    _: bool = Depends(verify_password)
):
    """Start an incremental (delta window) sync in the background."""
    return _start_background(runtime, "incremental")


@router.post("/tables/{table}", response_model=SyncResult)
async def sync_table(
    table: str,
    runtime: SyncRuntime = Depends(get_runtime),
    _: bool = Depends(verify_password)
):
    """
    Run a full pass over one table and wait for its result.

    Raises:
        400: If the table is not synchronized
    """
    try:
        check_table(table)
    except UnsupportedTableError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return await runtime.orchestrator.manual_sync(table)


@router.get("/stats", response_model=SyncStatistics)
async def get_sync_stats(
    runtime: SyncRuntime = Depends(get_runtime),
    _: bool = Depends(verify_password)
):
    return runtime.orchestrator.get_statistics()


@router.get("/health", response_model=HealthStatus)
async def get_sync_health(
    runtime: SyncRuntime = Depends(get_runtime),
    _: bool = Depends(verify_password)
):
    """Healthy, degraded or error, from failure rate and recent errors."""
    return runtime.orchestrator.get_health_status()
