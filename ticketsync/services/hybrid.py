"""
Hybrid ticket reads: serve from the store when fresh, otherwise from ServiceNow.

Every successful upstream read schedules exactly one background task
that writes the ticket back to the store and then publishes a change
event. Callers get their result without waiting for either step.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional, Set, Tuple

from ticketsync.schemas.events import ChangeEvent
from ticketsync.schemas.ticket import Ticket
from ticketsync.services.broadcaster import ChangeBroadcaster
from ticketsync.services.freshness import FreshnessPolicy
from ticketsync.services.servicenow import ServiceNowClient
from ticketsync.services.store import TicketStore, UpsertOutcome, check_table

logger = logging.getLogger(__name__)

TicketKey = Tuple[str, str]


class HybridTicketService:
    """Orchestrates per-ticket reads across the store and ServiceNow."""

    def __init__(
        self,
        store: TicketStore,
        servicenow: ServiceNowClient,
        broadcaster: ChangeBroadcaster,
        policy: Optional[FreshnessPolicy] = None,
        concurrency: int = 5
    ):
        self.store = store
        self.servicenow = servicenow
        self.broadcaster = broadcaster
        self.policy = policy or FreshnessPolicy()
        self.concurrency = concurrency
        self._background: Set[asyncio.Task] = set()
        self._stats = {
            "cache_hits": 0,
            "upstream_reads": 0,
            "stale_fallbacks": 0,
            "misses": 0,
            "write_back_failures": 0,
            "broadcast_failures": 0,
        }

    @property
    def pending_side_effects(self) -> int:
        return len(self._background)

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    async def get_ticket(
        self,
        table: str,
        sys_id: str,
        force_upstream: bool = False,
        force_cache: bool = False,
        include_sla: bool = False,
        include_notes: bool = False
    ) -> Optional[Ticket]:
        """
        Read a ticket, preferring a fresh cached copy.

        Args:
            table: ServiceNow table name
            sys_id: Record sys_id
            force_upstream: Skip the store and read from ServiceNow
            force_cache: Return the store's copy verbatim, never calling ServiceNow
            include_sla: Also fetch SLA timers on an upstream read
            include_notes: Also fetch journal notes on an upstream read

        Returns:
            The ticket, or None when it is not available anywhere. A cached
            copy served because ServiceNow failed is marked ``stale=True``.
        """
        check_table(table)

        if force_upstream:
            try:
                return await self._read_upstream(table, sys_id, include_sla, include_notes)
            except Exception as e:
                logger.error(f"ServiceNow fetch failed for {table}/{sys_id}: {e}")
                self._stats["misses"] += 1
                return None

        cached = await self._read_cache(table, sys_id)

        if force_cache:
            return cached

        if cached is not None and not self.policy.should_refresh(cached):
            self._stats["cache_hits"] += 1
            return cached

        try:
            return await self._read_upstream(table, sys_id, include_sla, include_notes)
        except Exception as e:
            logger.error(f"ServiceNow fetch failed for {table}/{sys_id}: {e}")
            if cached is not None:
                logger.warning(f"Serving stale cached copy of {table}/{sys_id}")
                self._stats["stale_fallbacks"] += 1
                return cached.model_copy(update={"stale": True})
            self._stats["misses"] += 1
            return None

    async def get_tickets(
        self,
        keys: Iterable[TicketKey],
        **options
    ) -> Dict[TicketKey, Optional[Ticket]]:
        """
        Read many tickets with at most ``concurrency`` reads in flight.

        Failed keys map to None; the batch itself never fails.
        """
        semaphore = asyncio.Semaphore(self.concurrency)
        unique_keys = list(dict.fromkeys(keys))

        async def read(key: TicketKey) -> Optional[Ticket]:
            async with semaphore:
                try:
                    return await self.get_ticket(key[0], key[1], **options)
                except Exception as e:
                    logger.error(f"Batch read failed for {key[0]}/{key[1]}: {e}")
                    return None

        tickets = await asyncio.gather(*(read(key) for key in unique_keys))
        return dict(zip(unique_keys, tickets))

    async def drain(self) -> None:
        """Wait for all scheduled write-backs and broadcasts to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _read_cache(self, table: str, sys_id: str) -> Optional[Ticket]:
        try:
            return await self.store.find_by_id(table, sys_id)
        except Exception as e:
            logger.error(f"Store lookup failed for {table}/{sys_id}: {e}")
            return None

    async def _read_upstream(
        self,
        table: str,
        sys_id: str,
        include_sla: bool,
        include_notes: bool
    ) -> Optional[Ticket]:
        record = await self.servicenow.fetch_by_id(table, sys_id)
        if record is None:
            self._stats["misses"] += 1
            return None

        ticket = Ticket.from_servicenow(table, record)
        self._stats["upstream_reads"] += 1

        if include_sla:
            try:
                ticket.sla = await self.servicenow.fetch_sla(sys_id)
            except Exception as e:
                logger.error(f"Error collecting SLA for {table}/{sys_id}: {e}")
        if include_notes:
            try:
                ticket.notes = await self.servicenow.fetch_notes(sys_id)
            except Exception as e:
                logger.error(f"Error collecting notes for {table}/{sys_id}: {e}")

        self._schedule_side_effects(ticket)
        return ticket

    def _schedule_side_effects(self, ticket: Ticket) -> None:
        task = asyncio.create_task(
            self._write_back_and_broadcast(ticket),
            name=f"write-back:{ticket.table}:{ticket.sys_id}"
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write_back_and_broadcast(self, ticket: Ticket) -> None:
        action = "update"
        try:
            outcome = await self.store.upsert(ticket, allow_equal=True)
            if outcome == UpsertOutcome.CREATED:
                action = "create"
        except Exception as e:
            self._stats["write_back_failures"] += 1
            logger.error(
                f"Write-back failed for {ticket.table}/{ticket.sys_id}: {e}",
                exc_info=True
            )

        try:
            await self.broadcaster.publish(ChangeEvent.from_ticket(ticket, action))
        except Exception as e:
            self._stats["broadcast_failures"] += 1
            logger.error(f"Broadcast failed for {ticket.table}/{ticket.sys_id}: {e}")
