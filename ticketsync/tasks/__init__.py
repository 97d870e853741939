"""
Background tasks and scheduling module.

Provides:
- Scheduler: Cron-driven sync jobs dispatched under a shared lock
- Worker: Background execution of scheduled and on-demand syncs
"""

from ticketsync.tasks.lock import (
    DistributedLock,
    InProcessLock,
    RedisLock
)
from ticketsync.tasks.repository import JobRepository
from ticketsync.tasks.scheduler import (
    JobNotFoundError,
    SyncScheduler,
    generate_job_id
)
from ticketsync.tasks.worker import SyncWorker

__all__ = [
    # Lock
    "DistributedLock",
    "InProcessLock",
    "RedisLock",
    # Scheduler
    "JobRepository",
    "JobNotFoundError",
    "SyncScheduler",
    "generate_job_id",
    # Worker
    "SyncWorker"
]
