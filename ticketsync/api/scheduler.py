"""
Scheduler endpoints for managing cron-driven sync jobs.
"""

from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from ticketsync.api.deps import get_runtime, verify_password
from ticketsync.cron import common_expressions
from ticketsync.runtime import SyncRuntime
from ticketsync.schemas import (
    MessageResponse,
    SchedulerStats,
    SyncJob,
    SyncJobDescriptor,
    SyncJobUpdate,
    WorkerStatusResponse,
)
from ticketsync.tasks.scheduler import JobNotFoundError

router = APIRouter(
    prefix="/scheduler",
    tags=["scheduler"],
    dependencies=[Depends(verify_password)]
)


def _job_or_404(runtime: SyncRuntime, job_id: str) -> SyncJob:
    job = runtime.scheduler.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/jobs", response_model=List[SyncJob])
async def list_jobs(runtime: SyncRuntime = Depends(get_runtime)):
    return runtime.scheduler.list_jobs()


@router.post("/jobs", response_model=SyncJob, status_code=201)
async def create_job(
    descriptor: SyncJobDescriptor,
    runtime: SyncRuntime = Depends(get_runtime)
):
    """
    Schedule a new sync job.

    The cron expression must be a standard 5-field crontab entry and the
    tables must be synchronized tables; invalid payloads get a 422.
    """
    job_id = await runtime.scheduler.schedule(descriptor)
    return runtime.scheduler.get_job(job_id)


@router.get("/jobs/{job_id}", response_model=SyncJob)
async def get_job(job_id: str, runtime: SyncRuntime = Depends(get_runtime)):
    return _job_or_404(runtime, job_id)


@router.patch("/jobs/{job_id}", response_model=SyncJob)
async def update_job(
    job_id: str,
    changes: SyncJobUpdate,
    runtime: SyncRuntime = Depends(get_runtime)
):
    """Apply a partial update; next_run moves when the cron expression changes."""
    try:
        return await runtime.scheduler.update_job(job_id, changes)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.delete("/jobs/{job_id}", response_model=MessageResponse)
async def delete_job(job_id: str, runtime: SyncRuntime = Depends(get_runtime)):
    try:
        await runtime.scheduler.unschedule(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return MessageResponse(message=f"Job {job_id} removed")


@router.post("/jobs/{job_id}/enable", response_model=SyncJob)
async def enable_job(job_id: str, runtime: SyncRuntime = Depends(get_runtime)):
    try:
        return await runtime.scheduler.set_enabled(job_id, True)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("/jobs/{job_id}/disable", response_model=SyncJob)
async def disable_job(job_id: str, runtime: SyncRuntime = Depends(get_runtime)):
    try:
        return await runtime.scheduler.set_enabled(job_id, False)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("/jobs/{job_id}/trigger", response_model=SyncJob, status_code=202)
async def trigger_job(job_id: str, runtime: SyncRuntime = Depends(get_runtime)):
    """
    Dispatch a job immediately.

    Raises:
        404: If the job does not exist
        409: If another process holds the scheduler lock
    """
    _job_or_404(runtime, job_id)
    try:
        triggered = await runtime.scheduler.trigger_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    if not triggered:
        raise HTTPException(
            status_code=409,
            detail="Scheduler lock is held by another process, try again shortly"
        )
    return _job_or_404(runtime, job_id)


@router.get("/stats", response_model=SchedulerStats)
async def get_scheduler_stats(runtime: SyncRuntime = Depends(get_runtime)):
    return runtime.scheduler.get_stats()


@router.get("/worker", response_model=WorkerStatusResponse)
async def get_worker_status(runtime: SyncRuntime = Depends(get_runtime)):
    """
    Get current status of the sync worker.

    Returns status (idle, running, completed, failed), running job ids,
    timestamps of the current or last task, and its result or error.
    """
    return runtime.worker.get_status()


@router.get("/cron/presets", response_model=Dict[str, str])
async def get_cron_presets():
    return common_expressions()
