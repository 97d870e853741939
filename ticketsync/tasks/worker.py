"""
Background worker for sync job execution.

Runs job payloads handed over by the scheduler, plus on-demand syncs
triggered through the API, as asyncio tasks with status tracking.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from ticketsync.schemas.sync import JobOutcome, SyncJob
from ticketsync.services.sync import SyncOrchestrator
from ticketsync.timeutils import utcnow

logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[str, bool, Optional[str]], Awaitable[None]]

MANUAL_TASK = "manual"


class SyncWorker:
    """
    Handles background sync execution with status tracking.

    One invocation per job id may run at a time; dispatching a job that
    is still running is refused.

    Attributes:
        status: Last task status (idle, running, completed, failed)
        is_running: Whether any task is currently executing
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        on_complete: Optional[OutcomeCallback] = None
    ):
        """
        Initialize worker in idle state.

        Args:
            orchestrator: Orchestrator executing the sync passes
            on_complete: Called with (job_id, success, error) after each job
        """
        self.orchestrator = orchestrator
        self.on_complete = on_complete
        self._tasks: Dict[str, asyncio.Task] = {}
        self._status = "idle"
        self._last_result: Optional[Dict[str, Any]] = None
        self._last_error: Optional[str] = None
        self._started_at: Optional[datetime] = None
        self._completed_at: Optional[datetime] = None

    @property
    def status(self) -> str:
        """Get current worker status."""
        return self._status

    @property
    def is_running(self) -> bool:
        """Check if any task is currently running."""
        return any(not task.done() for task in self._tasks.values())

    @property
    def running_jobs(self) -> list[str]:
        return [key for key, task in self._tasks.items() if not task.done()]

    @property
    def last_result(self) -> Optional[Dict[str, Any]]:
        """Get result from last completed task."""
        return self._last_result

    @property
    def last_error(self) -> Optional[str]:
        """Get error from last failed task."""
        return self._last_error

    def get_status(self) -> Dict[str, Any]:
        """
        Get complete worker status.

        Returns:
            Dictionary with status, running jobs, timestamps, and results
        """
        return {
            "status": self._status,
            "running_jobs": self.running_jobs,
            "is_running": self.is_running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "completed_at": self._completed_at.isoformat() if self._completed_at else None,
            "last_result": self._last_result,
            "last_error": self._last_error
        }

    def _start(self, key: str, coro: Awaitable) -> asyncio.Task:
        task = self._tasks.get(key)
        if task is not None and not task.done():
            coro.close()
            raise RuntimeError(f"Task {key} is already running")

        self._status = "running"
        self._started_at = utcnow()
        task = asyncio.create_task(coro, name=f"sync-worker:{key}")
        self._tasks[key] = task
        return task

    async def submit(self, job: SyncJob) -> None:
        """
        Accept a scheduled job for background execution.

        Raises:
            RuntimeError: If the same job is still running
        """
        self._start(job.job_id, self._run_job(job))
        logger.info(f"Accepted job {job.name} ({job.job_id})")

    async def _run_job(self, job: SyncJob) -> JobOutcome:
        try:
            outcome = await self.orchestrator.run_job(job, job.job_id)
        except Exception as e:
            logger.error(f"Job {job.job_id} crashed: {e}", exc_info=True)
            outcome = JobOutcome(job_id=job.job_id, success=False, error=str(e))

        self._finish(outcome.model_dump(mode="json"), outcome.error if not outcome.success else None)

        if self.on_complete is not None:
            try:
                await self.on_complete(job.job_id, outcome.success, outcome.error)
            except Exception as e:
                logger.error(f"Failed to report outcome of job {job.job_id}: {e}", exc_info=True)
        return outcome

    def _finish(self, result: Optional[Dict[str, Any]], error: Optional[str]) -> None:
        self._status = "failed" if error else "completed"
        self._completed_at = utcnow()
        self._last_result = result
        self._last_error = error

    def run_sync(self, mode: str = "incremental") -> asyncio.Task:
        """
        Start an on-demand full or incremental sync in the background.

        Raises:
            RuntimeError: If an on-demand sync is already running
            ValueError: If mode is not 'full' or 'incremental'
        """
        if mode not in ("full", "incremental"):
            raise ValueError(f"Unknown sync mode: {mode}")
        return self._start(MANUAL_TASK, self._run_manual(mode))

    async def _run_manual(self, mode: str):
        try:
            if mode == "full":
                results = await self.orchestrator.full_sync()
            else:
                results = await self.orchestrator.incremental_sync()
        except Exception as e:
            logger.error(f"{mode.capitalize()} sync failed: {e}", exc_info=True)
            self._finish(None, str(e))
            return []

        failed = [r.table for r in results if not r.success]
        self._finish(
            {"mode": mode, "results": [r.model_dump(mode="json") for r in results]},
            f"Failed tables: {', '.join(failed)}" if failed else None
        )
        logger.info(f"{mode.capitalize()} sync completed: {len(results)} tables")
        return results

    async def wait_idle(self) -> None:
        """Wait for every running task to finish."""
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
