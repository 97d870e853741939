"""
Cron-driven scheduler for sync jobs.

Jobs are durable (SyncJobRecord rows) and dispatched by a periodic tick
that APScheduler runs on the event loop. Every tick and every manual
trigger first takes the scheduler lock, so with several processes only
one of them dispatches a given due job.

Runtime state follows these rules:
- run_count grows by one each time the dispatcher accepts a job
- fail_count grows when dispatch raises or a job reports failure
- next_run is recomputed after every dispatch attempt and every cron change
"""

import asyncio
import logging
import secrets
import time
from datetime import timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ticketsync.cron import next_run_after
from ticketsync.schemas.sync import (
    SchedulerStats,
    SyncJob,
    SyncJobDescriptor,
    SyncJobUpdate,
)
from ticketsync.tasks.lock import DistributedLock
from ticketsync.tasks.repository import JobRepository
from ticketsync.timeutils import utcnow

logger = logging.getLogger(__name__)

JobDispatcher = Callable[[SyncJob], Awaitable[Any]]

TICK_JOB_ID = "scheduler_tick"


class JobNotFoundError(KeyError):
    """Raised when a job id is not registered."""


def generate_job_id() -> str:
    return f"scheduled_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class SyncScheduler:
    """
    Owns scheduled sync jobs and dispatches them when due.

    Mutations write through to the repository before the in-memory copy
    changes, so a failed write leaves the scheduler unchanged.
    """

    def __init__(
        self,
        repository: JobRepository,
        lock: DistributedLock,
        dispatcher: JobDispatcher,
        tick_seconds: int = 60
    ):
        """
        Initialize scheduler.

        Args:
            repository: Durable job storage
            lock: Lock deciding which process dispatches
            dispatcher: Coroutine accepting a due job (e.g. SyncWorker.submit)
            tick_seconds: Interval between due-job checks
        """
        self.repository = repository
        self.lock = lock
        self.dispatcher = dispatcher
        self.tick_seconds = tick_seconds
        self._jobs: Dict[str, SyncJob] = {}
        self._running: set[str] = set()
        self._mutation_lock = asyncio.Lock()
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_started(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # Lifecycle

    async def load(self) -> int:
        """
        Rebuild in-memory jobs from storage.

        Persisted next_run values in the past are recomputed from now.
        """
        now = utcnow()
        jobs = await self.repository.load_all()
        async with self._mutation_lock:
            self._jobs = {}
            for job in jobs:
                if job.next_run is None or job.next_run <= now:
                    job = job.model_copy(
                        update={"next_run": next_run_after(job.cron_expression, now)}
                    )
                    await self.repository.save(job)
                self._jobs[job.job_id] = job
        return len(self._jobs)

    async def start(self, default_jobs: Iterable[SyncJobDescriptor] = ()) -> None:
        """
        Load jobs, register missing defaults (matched by name) and start ticking.

        The first tick runs immediately.
        """
        if self.is_started:
            logger.warning("Scheduler is already running")
            return

        await self.load()

        names = {job.name for job in self._jobs.values()}
        for descriptor in default_jobs:
            if descriptor.name not in names:
                await self.schedule(descriptor)

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self.tick_seconds, timezone=timezone.utc),
            id=TICK_JOB_ID,
            name="Sync scheduler tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=utcnow()
        )
        self._scheduler.start()
        logger.info(
            f"Sync scheduler started with {len(self._jobs)} jobs "
            f"(tick every {self.tick_seconds}s)"
        )

    async def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Sync scheduler stopped")
        else:
            logger.info("Sync scheduler was not running")
        self._scheduler = None

    # Job management

    async def schedule(self, descriptor: Union[SyncJobDescriptor, dict]) -> str:
        """
        Register a new job.

        Raises:
            pydantic.ValidationError: If the descriptor is invalid
        """
        if not isinstance(descriptor, SyncJobDescriptor):
            descriptor = SyncJobDescriptor(**descriptor)

        now = utcnow()
        job = SyncJob(
            **descriptor.model_dump(),
            job_id=generate_job_id(),
            next_run=next_run_after(descriptor.cron_expression, now),
            created_at=now,
            updated_at=now,
        )
        async with self._mutation_lock:
            await self.repository.save(job)
            self._jobs[job.job_id] = job

        logger.info(f"Scheduled job {job.name} ({job.job_id}): {job.cron_expression}")
        return job.job_id

    async def unschedule(self, job_id: str) -> None:
        async with self._mutation_lock:
            self._get(job_id)
            await self.repository.delete(job_id)
            del self._jobs[job_id]
            self._running.discard(job_id)
        logger.info(f"Unscheduled job {job_id}")

    async def set_enabled(self, job_id: str, enabled: bool) -> SyncJob:
        return await self.update_job(job_id, SyncJobUpdate(enabled=enabled))

    async def update_job(self, job_id: str, changes: Union[SyncJobUpdate, dict]) -> SyncJob:
        """
        Apply a partial update.

        next_run is recomputed when the cron expression is given, and when a
        job is enabled with a next_run already in the past.

        Raises:
            JobNotFoundError: If the job does not exist
            pydantic.ValidationError: If a changed field is invalid
        """
        if not isinstance(changes, SyncJobUpdate):
            changes = SyncJobUpdate(**changes)
        fields = changes.model_dump(exclude_unset=True)

        async with self._mutation_lock:
            current = self._get(job_id)
            now = utcnow()
            updated = SyncJob.model_validate({**current.model_dump(), **fields, "updated_at": now})

            stale = updated.next_run is None or updated.next_run <= now
            if "cron_expression" in fields or (fields.get("enabled") and stale):
                updated.next_run = next_run_after(updated.cron_expression, now)

            await self.repository.save(updated)
            self._jobs[job_id] = updated

        logger.info(f"Updated job {job_id}: {sorted(fields)}")
        return updated

    async def trigger_job(self, job_id: str) -> bool:
        """
        Dispatch a job now, regardless of its schedule or enabled flag.

        Returns:
            False when another process holds the scheduler lock
        """
        job = self._get(job_id)
        token = await self.lock.acquire()
        if token is None:
            logger.info(f"Manual trigger of {job_id} skipped: scheduler lock held elsewhere")
            return False
        try:
            await self._dispatch(job)
        finally:
            await self._release_lock(token)
        return True

    def list_jobs(self) -> List[SyncJob]:
        return sorted(self._jobs.values(), key=lambda job: job.created_at)

    def get_job(self, job_id: str) -> Optional[SyncJob]:
        return self._jobs.get(job_id)

    def get_stats(self) -> SchedulerStats:
        jobs = list(self._jobs.values())
        enabled = [job for job in jobs if job.enabled]
        upcoming = [job.next_run for job in enabled if job.next_run is not None]
        return SchedulerStats(
            total_jobs=len(jobs),
            enabled_jobs=len(enabled),
            disabled_jobs=len(jobs) - len(enabled),
            total_runs=sum(job.run_count for job in jobs),
            total_fails=sum(job.fail_count for job in jobs),
            next_run=min(upcoming) if upcoming else None,
            running_jobs=len(self._running),
        )

    # Dispatch

    async def tick(self) -> int:
        """
        Dispatch every enabled job whose next_run has passed.

        Skips the whole tick when the lock is held elsewhere.

        Returns:
            Number of due jobs handled
        """
        try:
            token = await self.lock.acquire()
        except Exception as e:
            logger.error(f"Scheduler lock unavailable: {e}")
            return 0
        if token is None:
            logger.debug("Scheduler tick skipped: lock held by another process")
            return 0

        started = time.monotonic()
        try:
            now = utcnow()
            due = [
                job for job in self._jobs.values()
                if job.enabled and job.next_run is not None and job.next_run <= now
            ]
            for job in due:
                await self._dispatch(job)
            if due:
                logger.info(f"Scheduler tick dispatched {len(due)} due jobs")
            return len(due)
        except Exception as e:
            logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            return 0
        finally:
            elapsed = time.monotonic() - started
            if elapsed > self.lock.ttl_seconds:
                logger.warning(
                    f"Scheduler tick took {elapsed:.1f}s, longer than the "
                    f"{self.lock.ttl_seconds}s lock expiry"
                )
            await self._release_lock(token)

    async def _dispatch(self, job: SyncJob) -> bool:
        error: Optional[str] = None
        try:
            await self.dispatcher(job)
        except Exception as e:
            error = str(e)
            logger.error(f"Dispatch of job {job.name} ({job.job_id}) failed: {e}")

        async with self._mutation_lock:
            current = self._jobs.get(job.job_id)
            if current is None:
                return error is None

            now = utcnow()
            # A manual trigger consumes the upcoming slot
            base = max(now, current.next_run) if current.next_run else now
            changes = {
                "next_run": next_run_after(current.cron_expression, base),
                "updated_at": now,
            }
            if error is None:
                changes.update(
                    run_count=current.run_count + 1,
                    last_run=now,
                    last_status="dispatched",
                )
                self._running.add(job.job_id)
            else:
                changes.update(
                    fail_count=current.fail_count + 1,
                    last_status="dispatch_failed",
                    last_error=error,
                )

            updated = current.model_copy(update=changes)
            await self.repository.save(updated)
            self._jobs[job.job_id] = updated

        return error is None

    async def record_outcome(
        self,
        job_id: str,
        success: bool,
        error: Optional[str] = None
    ) -> None:
        """Store the result reported for a dispatched job."""
        async with self._mutation_lock:
            self._running.discard(job_id)
            current = self._jobs.get(job_id)
            if current is None:
                logger.info(f"Outcome for removed job {job_id} discarded")
                return

            changes = {
                "last_status": "succeeded" if success else "failed",
                "last_error": None if success else error,
                "updated_at": utcnow(),
            }
            if not success:
                changes["fail_count"] = current.fail_count + 1

            updated = current.model_copy(update=changes)
            await self.repository.save(updated)
            self._jobs[job_id] = updated

    async def _release_lock(self, token: str) -> None:
        try:
            await self.lock.release(token)
        except Exception as e:
            logger.error(f"Failed to release scheduler lock: {e}")

    def _get(self, job_id: str) -> SyncJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job
