"""
SyncJobRecord model for persisted scheduler jobs.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from ticketsync.database import Base
from ticketsync.models.ticket import JSONType


class SyncJobRecord(Base):
    """
    Durable state of a scheduled synchronization job.

    Holds the job descriptor (cron expression, tables, batch options)
    together with its runtime counters. The scheduler writes this row
    before updating its in-memory registry.
    """

    __tablename__ = "sync_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Descriptor
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    cron_expression: Mapped[str] = mapped_column(String(100), nullable=False)
    tables: Mapped[list] = mapped_column(JSONType, default=list)
    batch_size: Mapped[int] = mapped_column(Integer, default=50)
    delta_sync: Mapped[bool] = mapped_column(Boolean, default=True)
    delta_hours: Mapped[int] = mapped_column(Integer, default=1)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100))
    tags: Mapped[list] = mapped_column(JSONType, default=list)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    timeout_seconds: Mapped[int] = mapped_column(Integer, default=300)

    # Runtime state
    run_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    fail_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_run: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    next_run: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_status: Mapped[Optional[str]] = mapped_column(String(20))
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<SyncJobRecord(job_id={self.job_id}, "
            f"name='{self.name}', "
            f"cron='{self.cron_expression}', "
            f"enabled={self.enabled})>"
        )
