"""
Sync orchestrator for pulling ServiceNow tickets into the store.

This module provides the SyncOrchestrator class that:
1. Runs full (unfiltered) and incremental (delta window) syncs
2. Processes tables one at a time, records in upstream order
3. Decides create / update / conflict per record against the store
4. Collects SLA timers and notes, and broadcasts changes
5. Aggregates per-table results into process-wide statistics
"""

import asyncio
import logging
import time
from typing import List, Optional

from pydantic import BaseModel, Field

from ticketsync.models import SUPPORTED_TABLES
from ticketsync.schemas.events import ChangeEvent
from ticketsync.schemas.sync import (
    HealthStatus,
    JobOutcome,
    SyncJobDescriptor,
    SyncResult,
    SyncStatistics,
)
from ticketsync.schemas.ticket import Ticket, field_value
from ticketsync.services.broadcaster import ChangeBroadcaster
from ticketsync.services.servicenow import ServiceNowClient, build_delta_query
from ticketsync.services.store import TicketStore, UpsertOutcome, check_table
from ticketsync.timeutils import utcnow

logger = logging.getLogger(__name__)

TABLE_ERROR_ID = "TABLE_SYNC_ERROR"


class SyncOptions(BaseModel):
    """Tunable behaviour of sync passes."""
    tables: List[str] = Field(default_factory=lambda: list(SUPPORTED_TABLES))
    batch_size: int = 50
    delta_sync: bool = True
    delta_hours: int = 1
    collect_sla: bool = True
    collect_notes: bool = True
    broadcast_changes: bool = True
    error_detail_limit: int = 50

    @classmethod
    def from_settings(cls, settings) -> "SyncOptions":
        return cls(
            tables=settings.sync_tables_list,
            batch_size=settings.SYNC_BATCH_SIZE,
            delta_sync=settings.SYNC_ENABLE_DELTA,
            delta_hours=settings.SYNC_DELTA_HOURS,
            collect_sla=settings.SYNC_COLLECT_SLA,
            collect_notes=settings.SYNC_COLLECT_NOTES,
            broadcast_changes=settings.SYNC_BROADCAST_CHANGES,
            error_detail_limit=settings.SYNC_ERROR_DETAIL_LIMIT,
        )


class SyncOrchestrator:
    """Handles syncing tickets from ServiceNow to the store."""

    def __init__(
        self,
        store: TicketStore,
        servicenow: ServiceNowClient,
        broadcaster: ChangeBroadcaster,
        options: Optional[SyncOptions] = None,
        stats_error_limit: int = 100
    ):
        """
        Initialize sync orchestrator.

        Args:
            store: Ticket store receiving synced records
            servicenow: Configured ServiceNow API client
            broadcaster: Destination of per-record change events
            options: Sync behaviour (tables, batch size, collection flags)
            stats_error_limit: Maximum error messages kept in statistics
        """
        self.store = store
        self.servicenow = servicenow
        self.broadcaster = broadcaster
        self.options = options or SyncOptions()
        self.statistics = SyncStatistics(error_limit=stats_error_limit)
        self._active_passes = 0
        self._current_progress: Optional[str] = None

    @property
    def is_running(self) -> bool:
        """Check if a table pass is currently running."""
        return self._active_passes > 0

    @property
    def current_progress(self) -> Optional[str]:
        """Get current sync progress message."""
        return self._current_progress

    async def full_sync(self) -> List[SyncResult]:
        """Sync every configured table without a time filter."""
        logger.info("Starting full sync")
        return await self._sync_tables(self.options.tables, delta_hours=None)

    async def incremental_sync(self) -> List[SyncResult]:
        """
        Sync records updated within the delta window.

        Falls back to a full sync when delta sync is disabled.
        """
        if not self.options.delta_sync:
            return await self.full_sync()

        logger.info(f"Starting incremental sync (last {self.options.delta_hours}h)")
        return await self._sync_tables(self.options.tables, delta_hours=self.options.delta_hours)

    async def manual_sync(self, table: str) -> SyncResult:
        """Full pass over a single table."""
        logger.info(f"Manual sync triggered for table: {table}")
        return await self.sync_table(table)

    async def _sync_tables(
        self,
        tables: List[str],
        delta_hours: Optional[int],
        batch_size: Optional[int] = None
    ) -> List[SyncResult]:
        started = time.monotonic()
        results = []
        for table in tables:
            results.append(await self.sync_table(table, delta_hours, batch_size))

        logger.info(
            f"Sync of {len(tables)} tables completed in {time.monotonic() - started:.2f}s"
        )
        return results

    async def sync_table(
        self,
        table: str,
        delta_hours: Optional[int] = None,
        batch_size: Optional[int] = None
    ) -> SyncResult:
        """
        Sync one batch of a table.

        Per-record errors are recorded and the pass continues; a table-level
        error (e.g. ServiceNow unreachable) ends the pass with a single
        synthetic error entry. Never raises.

        Args:
            table: ServiceNow table name
            delta_hours: Only fetch records updated in the last N hours (None for full)
            batch_size: Maximum records to fetch (defaults to the configured size)

        Returns:
            SyncResult with per-table counts
        """
        started = time.monotonic()
        limit = batch_size or self.options.batch_size
        result = SyncResult(table=table)
        self._active_passes += 1
        self._current_progress = f"Syncing {table}..."

        try:
            check_table(table)
            query = build_delta_query(delta_hours) if delta_hours else ""
            records = await self.servicenow.fetch_by_filter(table, query, limit)
            result.processed = len(records)
            logger.info(f"Fetched {len(records)} records from {table} (delta: {delta_hours})")

            for record in records:
                await self._sync_record(table, record, result)

        except Exception as e:
            logger.error(f"Error syncing table {table}: {e}")
            result.success = False
            result.failed += 1
            result.add_error(TABLE_ERROR_ID, str(e), self.options.error_detail_limit)

        finally:
            self._active_passes -= 1
            if not self._active_passes:
                self._current_progress = None

        result.duration = time.monotonic() - started
        result.last_sync_time = utcnow()
        self.statistics.record(result)

        logger.info(
            f"Table sync completed: {table} - {result.created} created, "
            f"{result.updated} updated, {result.conflicts} conflicts, "
            f"{result.failed} errors ({result.duration:.2f}s)"
        )
        return result

    async def _sync_record(self, table: str, record: dict, result: SyncResult) -> None:
        sys_id = str(field_value(record.get("sys_id")) or "UNKNOWN")
        try:
            self._current_progress = f"Processing {table}/{sys_id}"
            ticket = Ticket.from_servicenow(table, record)
            outcome = await self.store.upsert(ticket)

            if outcome == UpsertOutcome.CONFLICT:
                result.conflicts += 1
                return
            if outcome == UpsertOutcome.CREATED:
                result.created += 1
            else:
                result.updated += 1

            if self.options.collect_sla:
                result.sla_collected += await self._collect_sla(table, sys_id)
            if self.options.collect_notes:
                result.notes_collected += await self._collect_notes(table, sys_id)

            if self.options.broadcast_changes:
                action = "create" if outcome == UpsertOutcome.CREATED else "update"
                await self._broadcast(ticket, action)

        except Exception as e:
            logger.error(f"Error syncing ticket {table}/{sys_id}: {e}")
            result.failed += 1
            result.add_error(sys_id, str(e), self.options.error_detail_limit)

    async def _collect_sla(self, table: str, sys_id: str) -> int:
        try:
            sla = await self.servicenow.fetch_sla(sys_id)
            if sla:
                await self.store.save_sla(table, sys_id, sla)
            return len(sla)
        except Exception as e:
            logger.error(f"Error collecting SLA for {table}/{sys_id}: {e}")
            return 0

    async def _collect_notes(self, table: str, sys_id: str) -> int:
        try:
            notes = await self.servicenow.fetch_notes(sys_id)
            if notes:
                await self.store.save_notes(table, sys_id, notes)
            return len(notes)
        except Exception as e:
            logger.error(f"Error collecting notes for {table}/{sys_id}: {e}")
            return 0

    async def _broadcast(self, ticket: Ticket, action: str) -> None:
        try:
            await self.broadcaster.publish(ChangeEvent.from_ticket(ticket, action))
        except Exception as e:
            logger.error(f"Error broadcasting change for {ticket.table}/{ticket.sys_id}: {e}")

    async def run_job(self, job: SyncJobDescriptor, job_id: Optional[str] = None) -> JobOutcome:
        """
        Run a scheduled job payload within its timeout budget.

        Tables are synced in order. When the budget runs out the remaining
        tables are skipped, finished results are kept and the outcome is a
        failure.

        Args:
            job: Descriptor carrying tables, batch size, delta flag and timeout
            job_id: Scheduler id of the job, echoed in the outcome

        Returns:
            JobOutcome with the per-table results
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + job.timeout_seconds
        delta_hours = job.delta_hours if job.delta_sync else None
        results: List[SyncResult] = []
        timed_out = False

        logger.info(f"Running job {job.name} ({job_id}) on tables {job.tables}")

        for table in job.tables:
            remaining = deadline - loop.time()
            if remaining <= 0:
                timed_out = True
                break
            try:
                results.append(
                    await asyncio.wait_for(
                        self.sync_table(table, delta_hours, job.batch_size),
                        timeout=remaining
                    )
                )
            except asyncio.TimeoutError:
                timed_out = True
                aborted = SyncResult(table=table, success=False, failed=1)
                aborted.add_error(TABLE_ERROR_ID, f"Job timed out after {job.timeout_seconds}s")
                self.statistics.record(aborted)
                results.append(aborted)
                break

        failed_tables = [r.table for r in results if not r.success]
        error = None
        if timed_out:
            error = f"Timed out after {job.timeout_seconds}s ({len(results)}/{len(job.tables)} tables)"
        elif failed_tables:
            error = f"Failed tables: {', '.join(failed_tables)}"

        outcome = JobOutcome(
            job_id=job_id,
            success=error is None,
            timed_out=timed_out,
            results=results,
            error=error,
            duration=loop.time() - started,
        )
        if outcome.success:
            logger.info(f"Job {job.name} completed in {outcome.duration:.2f}s")
        else:
            logger.warning(f"Job {job.name} failed: {error}")
        return outcome

    def get_statistics(self) -> SyncStatistics:
        return self.statistics.model_copy(deep=True)

    def get_health_status(self) -> HealthStatus:
        """
        Classify sync health from the rolling statistics.

        error: more than 10 recent errors or failure rate above 50%
        degraded: more than 5 recent errors or failure rate above 20%
        """
        stats = self.statistics
        recent_errors = len(stats.errors)
        failure_rate = stats.failed_syncs / stats.total_syncs if stats.total_syncs else 0.0

        status = "healthy"
        if recent_errors > 10 or failure_rate > 0.5:
            status = "error"
        elif recent_errors > 5 or failure_rate > 0.2:
            status = "degraded"

        return HealthStatus(
            status=status,
            last_sync=stats.last_sync_time,
            statistics=self.get_statistics(),
        )

    def update_options(self, **changes) -> SyncOptions:
        """Replace selected sync options; unknown keys raise ValueError."""
        unknown = set(changes) - set(SyncOptions.model_fields)
        if unknown:
            raise ValueError(f"Unknown sync options: {', '.join(sorted(unknown))}")
        self.options = SyncOptions(**{**self.options.model_dump(), **changes})
        logger.info(f"Sync options updated: {changes}")
        return self.options
