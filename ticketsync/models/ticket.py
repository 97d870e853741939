"""
Ticket model for cached ServiceNow records.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ticketsync.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class TicketRecord(Base):
    """
    Represents a cached ServiceNow ticket.

    One row per (table, sys_id). Invariant-bearing fields are columns;
    every other upstream field is preserved verbatim in ``extra``.
    SLA timers and journal notes are stored alongside the ticket.
    """

    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("table_name", "sys_id", name="uq_tickets_table_sys_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity
    table_name: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    sys_id: Mapped[str] = mapped_column(String(32), nullable=False)

    # Core ticket fields
    number: Mapped[Optional[str]] = mapped_column(String(40), index=True)
    state: Mapped[str] = mapped_column(String(10), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    short_description: Mapped[Optional[str]] = mapped_column(Text)
    assignment_group: Mapped[Optional[dict]] = mapped_column(JSONType)

    # Timestamp fields
    sys_created_on: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sys_updated_on: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True
    )
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    # Passthrough upstream fields and sub-resources
    extra: Mapped[dict] = mapped_column(JSONType, default=dict)
    sla: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    notes: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    def __repr__(self) -> str:
        return f"<TicketRecord(table={self.table_name}, sys_id={self.sys_id}, number='{self.number}')>"
