"""
Durable storage of scheduled sync jobs.
"""

import logging
from typing import List

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketsync.models import SyncJobRecord
from ticketsync.schemas.sync import SyncJob
from ticketsync.timeutils import as_utc

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = ("last_run", "next_run", "created_at", "updated_at")


class JobRepository:
    """Reads and writes SyncJobRecord rows, one per job id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def load_all(self) -> List[SyncJob]:
        """
        Load every persisted job.

        Rows that no longer validate (e.g. a table removed from the
        supported set) are logged and skipped.
        """
        async with self.session_factory() as session:
            result = await session.execute(select(SyncJobRecord))
            rows = result.scalars().all()

        jobs = []
        for row in rows:
            try:
                job = SyncJob.model_validate(row)
            except ValidationError as e:
                logger.error(f"Failed to load scheduled job {row.job_id}: {e}")
                continue
            for field in _DATETIME_FIELDS:
                setattr(job, field, as_utc(getattr(job, field)))
            jobs.append(job)

        logger.info(f"Loaded {len(jobs)} scheduled jobs")
        return jobs

    async def save(self, job: SyncJob) -> None:
        """Insert or replace the row for a job."""
        values = job.model_dump()
        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(SyncJobRecord, job.job_id)
                if row is None:
                    session.add(SyncJobRecord(**values))
                    return
                for key, value in values.items():
                    setattr(row, key, value)

    async def delete(self, job_id: str) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(SyncJobRecord).where(SyncJobRecord.job_id == job_id)
                )
                return result.rowcount > 0
