"""
Ticket store: the persistent cache of ServiceNow tickets.

Each operation opens its own session from the factory, so the hybrid
read path can run many lookups concurrently while the sync path writes.
Correctness under concurrent writers relies on the timestamp check in
:meth:`TicketStore.upsert`: a cached ticket never moves backwards in
``sys_updated_on``.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketsync.models import SUPPORTED_TABLES, TicketRecord
from ticketsync.schemas.sync import ConflictStrategy
from ticketsync.schemas.ticket import Ticket
from ticketsync.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

# Columns a store_wins update keeps when the cached value is present
_PRESERVED_COLUMNS = ("number", "short_description", "assignment_group", "sys_created_on")
_ADVANCED_COLUMNS = ("state", "priority", "sys_updated_on")


class UnsupportedTableError(ValueError):
    """Raised for a table outside the closed set of cached ticket tables."""
    pass


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CONFLICT = "conflict"


def check_table(table: str) -> str:
    if table not in SUPPORTED_TABLES:
        raise UnsupportedTableError(f"Unsupported table: {table}")
    return table


class TicketStore:
    """Handles reads and writes of cached tickets."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        conflict_strategy: ConflictStrategy = ConflictStrategy.SERVICENOW_WINS
    ):
        """
        Initialize ticket store.

        Args:
            session_factory: Factory producing async database sessions
            conflict_strategy: How a newer upstream record is applied
        """
        self.session_factory = session_factory
        self.conflict_strategy = ConflictStrategy(conflict_strategy)

    async def _get_row(self, session: AsyncSession, table: str, sys_id: str) -> Optional[TicketRecord]:
        result = await session.execute(
            select(TicketRecord)
            .where(TicketRecord.table_name == table, TicketRecord.sys_id == sys_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def find_by_id(self, table: str, sys_id: str) -> Optional[Ticket]:
        """
        Look up a cached ticket.

        Returns:
            The cached ticket (``source="cache"``), or None if absent
        """
        check_table(table)
        async with self.session_factory() as session:
            result = await session.execute(
                select(TicketRecord).where(
                    TicketRecord.table_name == table,
                    TicketRecord.sys_id == sys_id
                )
            )
            row = result.scalar_one_or_none()
            return Ticket.from_record(row) if row else None

    async def upsert(self, ticket: Ticket, allow_equal: bool = False) -> UpsertOutcome:
        """
        Insert or update a ticket without ever regressing its timestamp.

        An incoming ticket whose ``sys_updated_on`` is older than the
        cached copy is a conflict. An equal timestamp is a conflict too,
        unless ``allow_equal`` is set (read-path write-back), in which case
        only the sync time and any supplied sub-resources are refreshed.

        Args:
            ticket: Normalized ticket to store
            allow_equal: Accept an incoming timestamp equal to the cached one

        Returns:
            UpsertOutcome describing what happened
        """
        check_table(ticket.table)
        try:
            return await self._upsert(ticket, allow_equal)
        except IntegrityError:
            # Another writer inserted the same key first; retry as an update
            logger.debug(f"Concurrent insert for {ticket.table}/{ticket.sys_id}, retrying")
            return await self._upsert(ticket, allow_equal)

    async def _upsert(self, ticket: Ticket, allow_equal: bool) -> UpsertOutcome:
        async with self.session_factory() as session:
            async with session.begin():
                row = await self._get_row(session, ticket.table, ticket.sys_id)

                if row is None:
                    session.add(TicketRecord(
                        **ticket.to_columns(),
                        sla=ticket.sla,
                        notes=ticket.notes,
                        synced_at=utcnow()
                    ))
                    return UpsertOutcome.CREATED

                cached_at = as_utc(row.sys_updated_on)
                incoming_at = as_utc(ticket.sys_updated_on)

                if incoming_at < cached_at or (incoming_at == cached_at and not allow_equal):
                    logger.debug(
                        f"Skipping {ticket.table}/{ticket.sys_id}: incoming {incoming_at} "
                        f"is not newer than cached {cached_at}"
                    )
                    return UpsertOutcome.CONFLICT

                if incoming_at > cached_at:
                    self._apply(row, ticket)

                if ticket.sla is not None:
                    row.sla = ticket.sla
                if ticket.notes is not None:
                    row.notes = ticket.notes
                row.synced_at = utcnow()
                return UpsertOutcome.UPDATED

    def _apply(self, row: TicketRecord, ticket: Ticket) -> None:
        """Apply a strictly newer ticket to a row according to the strategy."""
        columns = ticket.to_columns()

        if self.conflict_strategy == ConflictStrategy.STORE_WINS:
            for column in _PRESERVED_COLUMNS:
                if getattr(row, column) in (None, ""):
                    setattr(row, column, columns[column])
            advanced = {}
            for column in _ADVANCED_COLUMNS:
                setattr(row, column, columns[column])
                if column in ticket.extra:
                    advanced[column] = ticket.extra[column]
            row.extra = {**ticket.extra, **(row.extra or {}), **advanced}
            return

        for column, value in columns.items():
            if column == "extra":
                continue
            setattr(row, column, value)

        if self.conflict_strategy == ConflictStrategy.MERGE:
            row.extra = {**(row.extra or {}), **ticket.extra}
        else:
            row.extra = dict(ticket.extra)

    async def delete(self, table: str, sys_id: str) -> bool:
        """Remove a cached ticket. Returns True if a row was deleted."""
        check_table(table)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(TicketRecord).where(
                        TicketRecord.table_name == table,
                        TicketRecord.sys_id == sys_id
                    )
                )
                return result.rowcount > 0

    async def count_by_table(self, table: str) -> int:
        check_table(table)
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(TicketRecord).where(TicketRecord.table_name == table)
            )
            return result.scalar_one()

    async def _save_sub_resource(
        self,
        table: str,
        sys_id: str,
        column: str,
        items: List[Dict[str, Any]]
    ) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                row = await self._get_row(session, table, sys_id)
                if row is None:
                    logger.warning(f"Cannot attach {column} to missing ticket {table}/{sys_id}")
                    return False
                setattr(row, column, items)
                return True

    async def save_sla(self, table: str, sys_id: str, sla: List[Dict[str, Any]]) -> bool:
        """Attach SLA timer records to a cached ticket."""
        return await self._save_sub_resource(check_table(table), sys_id, "sla", sla)

    async def save_notes(self, table: str, sys_id: str, notes: List[Dict[str, Any]]) -> bool:
        """Attach journal notes to a cached ticket."""
        return await self._save_sub_resource(check_table(table), sys_id, "notes", notes)
