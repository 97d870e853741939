"""
Composition root: builds every sync component from settings.

Redis backs the scheduler lock and the change stream when REDIS_URL is
set; otherwise an in-process lock and a logging broadcaster are used.
"""

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketsync.config import Settings
from ticketsync.schemas.sync import ConflictStrategy, SyncJobDescriptor
from ticketsync.services.broadcaster import (
    ChangeBroadcaster,
    LoggingBroadcaster,
    RedisStreamBroadcaster,
)
from ticketsync.services.hybrid import HybridTicketService
from ticketsync.services.servicenow import ServiceNowClient
from ticketsync.services.store import TicketStore
from ticketsync.services.sync import SyncOptions, SyncOrchestrator
from ticketsync.tasks.lock import DistributedLock, InProcessLock, RedisLock
from ticketsync.tasks.repository import JobRepository
from ticketsync.tasks.scheduler import SyncScheduler
from ticketsync.tasks.worker import SyncWorker

logger = logging.getLogger(__name__)


def default_jobs(settings: Settings) -> List[SyncJobDescriptor]:
    """Incremental and full sync jobs registered on first start."""
    return [
        SyncJobDescriptor(
            name="Incremental sync",
            description="Tickets updated within the delta window",
            cron_expression=settings.INCREMENTAL_SYNC_CRON,
            tables=settings.sync_tables_list,
            batch_size=settings.SYNC_BATCH_SIZE,
            delta_sync=True,
            delta_hours=settings.SYNC_DELTA_HOURS,
            created_by="system",
            tags=["default"],
        ),
        SyncJobDescriptor(
            name="Full sync",
            description="Unfiltered pass over every synchronized table",
            cron_expression=settings.FULL_SYNC_CRON,
            tables=settings.sync_tables_list,
            batch_size=settings.SYNC_BATCH_SIZE,
            delta_sync=False,
            created_by="system",
            tags=["default"],
            timeout_seconds=3600,
        ),
    ]


class SyncRuntime:
    """Holds the wired components of one process."""

    def __init__(
        self,
        settings: Settings,
        store: TicketStore,
        servicenow: ServiceNowClient,
        broadcaster: ChangeBroadcaster,
        lock: DistributedLock,
        session_factory: async_sessionmaker[AsyncSession]
    ):
        self.settings = settings
        self.store = store
        self.servicenow = servicenow
        self.broadcaster = broadcaster
        self.lock = lock

        self.hybrid = HybridTicketService(
            store,
            servicenow,
            broadcaster,
            concurrency=settings.HYBRID_READ_CONCURRENCY,
        )
        self.orchestrator = SyncOrchestrator(
            store,
            servicenow,
            broadcaster,
            options=SyncOptions.from_settings(settings),
            stats_error_limit=settings.SYNC_STATS_ERROR_LIMIT,
        )
        self.worker = SyncWorker(self.orchestrator)
        self.scheduler = SyncScheduler(
            JobRepository(session_factory),
            lock,
            dispatcher=self.worker.submit,
            tick_seconds=settings.SCHEDULER_TICK_SECONDS,
        )
        self.worker.on_complete = self.scheduler.record_outcome

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        servicenow: Optional[ServiceNowClient] = None
    ) -> "SyncRuntime":
        store = TicketStore(
            session_factory,
            ConflictStrategy(settings.SYNC_CONFLICT_STRATEGY),
        )
        if servicenow is None:
            servicenow = ServiceNowClient(
                instance_url=settings.SERVICENOW_INSTANCE_URL,
                username=settings.SERVICENOW_USERNAME,
                password=settings.SERVICENOW_PASSWORD,
                timeout=settings.SERVICENOW_TIMEOUT,
                rate_limit=settings.SERVICENOW_RATE_LIMIT,
            )

        if settings.REDIS_URL:
            broadcaster: ChangeBroadcaster = RedisStreamBroadcaster.from_url(
                settings.REDIS_URL,
                settings.CHANGE_STREAM_KEY,
                settings.CHANGE_STREAM_MAXLEN,
            )
            lock: DistributedLock = RedisLock.from_url(
                settings.REDIS_URL,
                settings.SCHEDULER_LOCK_KEY,
                settings.SCHEDULER_LOCK_TTL_SECONDS,
            )
        else:
            logger.warning("REDIS_URL not set: using in-process lock and log-only change events")
            broadcaster = LoggingBroadcaster()
            lock = InProcessLock(settings.SCHEDULER_LOCK_KEY, settings.SCHEDULER_LOCK_TTL_SECONDS)

        return cls(settings, store, servicenow, broadcaster, lock, session_factory)

    async def start(self, run_scheduler: bool = True) -> None:
        if not run_scheduler:
            await self.scheduler.load()
            return
        defaults = default_jobs(self.settings) if self.settings.SCHEDULER_DEFAULT_JOBS else []
        await self.scheduler.start(defaults)

    async def shutdown(self) -> None:
        """Stop ticking, let in-flight work finish, then close connections."""
        await self.scheduler.shutdown()
        await self.worker.wait_idle()
        await self.hybrid.drain()
        await self.servicenow.close()
        await self.broadcaster.close()
        await self.lock.close()
