"""
Tests for the sync scheduler, its lock and cron helpers.

Tests cover:
- Cron validation and next-run computation
- Job registration, updates and removal with write-through persistence
- Manual triggers and periodic ticks under the scheduler lock
- Runtime counters (run_count, fail_count, next_run)
- Reloading jobs from storage
"""

import asyncio
import re
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from pydantic import ValidationError

from ticketsync.cron import common_expressions, is_valid_cron, next_run_after
from ticketsync.schemas import SyncJob, SyncJobDescriptor
from ticketsync.tasks.lock import InProcessLock, RedisLock
from ticketsync.tasks.repository import JobRepository
from ticketsync.tasks.scheduler import JobNotFoundError, SyncScheduler
from ticketsync.timeutils import utcnow


def descriptor(**overrides) -> SyncJobDescriptor:
    values = {
        "name": "Incremental",
        "cron_expression": "*/5 * * * *",
        "tables": ["incident"],
    }
    values.update(overrides)
    return SyncJobDescriptor(**values)


@pytest.fixture
def repository(session_factory) -> JobRepository:
    return JobRepository(session_factory)


@pytest.fixture
def lock() -> InProcessLock:
    return InProcessLock("scheduler:lock", ttl_seconds=30)


@pytest.fixture
def dispatcher() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def scheduler(repository, lock, dispatcher) -> SyncScheduler:
    return SyncScheduler(repository, lock, dispatcher, tick_seconds=60)


@pytest.mark.scheduler
class TestCron:
    """Test suite for cron helpers."""

    def test_four_fields_rejected(self):
        assert is_valid_cron("* * * *") is False

    def test_step_expression_accepted(self):
        assert is_valid_cron("*/15 * * * *") is True

    def test_next_run_within_interval(self):
        now = utcnow()
        next_run = next_run_after("*/5 * * * *", now)

        assert now < next_run <= now + timedelta(minutes=5)
        assert next_run.minute % 5 == 0
        assert next_run.second == 0

    def test_next_run_strictly_after_slot(self):
        slot = utcnow().replace(minute=10, second=0, microsecond=0)
        assert next_run_after("*/5 * * * *", slot) == slot + timedelta(minutes=5)

    def test_common_expressions_are_valid(self):
        presets = common_expressions()
        assert presets["Every 5 minutes"] == "*/5 * * * *"
        assert all(is_valid_cron(expr) for expr in presets.values())


@pytest.mark.asyncio
@pytest.mark.scheduler
class TestSyncScheduler:
    """Test suite for SyncScheduler."""

    async def test_schedule_assigns_id_and_next_run(self, scheduler):
        before = utcnow()
        job_id = await scheduler.schedule(descriptor())

        job = scheduler.get_job(job_id)
        assert re.match(r"^scheduled_\d+_[0-9a-f]+$", job_id)
        assert job.run_count == 0
        assert before < job.next_run <= before + timedelta(minutes=5)

    async def test_schedule_accepts_dict(self, scheduler):
        job_id = await scheduler.schedule({"name": "Every 15", "cron_expression": "*/15 * * * *"})
        assert scheduler.get_job(job_id).tables == ["incident", "change_task", "sc_task"]

    async def test_schedule_rejects_invalid_cron(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.schedule({"name": "Bad", "cron_expression": "* * * *"})
        assert scheduler.list_jobs() == []

    async def test_failed_write_leaves_memory_unchanged(self, lock, dispatcher):
        repository = MagicMock(spec=JobRepository)
        repository.save = AsyncMock(side_effect=RuntimeError("database down"))
        scheduler = SyncScheduler(repository, lock, dispatcher)

        with pytest.raises(RuntimeError):
            await scheduler.schedule(descriptor())
        assert scheduler.list_jobs() == []

    async def test_manual_trigger_counts_and_advances(self, scheduler, dispatcher):
        job_id = await scheduler.schedule(descriptor())
        previous = scheduler.get_job(job_id).next_run

        assert await scheduler.trigger_job(job_id) is True

        job = scheduler.get_job(job_id)
        assert job.run_count == 1
        assert job.last_run is not None
        assert job.next_run > previous
        dispatcher.assert_awaited_once()
        assert dispatcher.await_args.args[0].job_id == job_id

    async def test_trigger_skipped_when_lock_held(self, scheduler, lock, dispatcher):
        job_id = await scheduler.schedule(descriptor())
        assert await lock.acquire() is not None

        assert await scheduler.trigger_job(job_id) is False

        dispatcher.assert_not_awaited()
        assert scheduler.get_job(job_id).run_count == 0

    async def test_trigger_releases_lock(self, scheduler, lock):
        job_id = await scheduler.schedule(descriptor())

        await scheduler.trigger_job(job_id)

        assert lock.locked is False

    async def test_trigger_unknown_job(self, scheduler):
        with pytest.raises(JobNotFoundError):
            await scheduler.trigger_job("scheduled_0_missing")

    async def test_dispatch_failure_counts_and_advances(self, scheduler, dispatcher):
        dispatcher.side_effect = RuntimeError("Task scheduled_x is already running")
        job_id = await scheduler.schedule(descriptor())
        previous = scheduler.get_job(job_id).next_run

        await scheduler.trigger_job(job_id)

        job = scheduler.get_job(job_id)
        assert job.run_count == 0
        assert job.fail_count == 1
        assert "already running" in job.last_error
        assert job.next_run > previous

    async def test_tick_dispatches_due_enabled_jobs(self, scheduler, dispatcher):
        due_id = await scheduler.schedule(descriptor(name="Due"))
        await scheduler.schedule(descriptor(name="Disabled", enabled=False))
        later = utcnow() + timedelta(minutes=10)

        with patch("ticketsync.tasks.scheduler.utcnow", return_value=later):
            dispatched = await scheduler.tick()

        assert dispatched == 1
        assert dispatcher.await_args.args[0].job_id == due_id
        job = scheduler.get_job(due_id)
        assert job.run_count == 1
        assert job.next_run > later

    async def test_tick_ignores_jobs_not_due(self, scheduler, dispatcher):
        await scheduler.schedule(descriptor(cron_expression="0 0 1 1 *"))

        assert await scheduler.tick() == 0
        dispatcher.assert_not_awaited()

    async def test_tick_skipped_when_lock_held(self, scheduler, lock, dispatcher):
        await scheduler.schedule(descriptor())
        await lock.acquire()

        with patch("ticketsync.tasks.scheduler.utcnow", return_value=utcnow() + timedelta(minutes=10)):
            assert await scheduler.tick() == 0

        dispatcher.assert_not_awaited()

    async def test_only_one_scheduler_dispatches(self, repository, lock):
        """Two processes sharing the lock: a due job is dispatched once."""
        async def slow_dispatch(job):
            await asyncio.sleep(0.01)

        first_dispatch = AsyncMock(side_effect=slow_dispatch)
        second_dispatch = AsyncMock(side_effect=slow_dispatch)
        first = SyncScheduler(repository, lock, first_dispatch)
        second = SyncScheduler(repository, lock, second_dispatch)

        await first.schedule(descriptor())
        await second.load()

        with patch("ticketsync.tasks.scheduler.utcnow", return_value=utcnow() + timedelta(minutes=10)):
            counts = await asyncio.gather(first.tick(), second.tick())

        assert sorted(counts) == [0, 1]
        assert first_dispatch.await_count + second_dispatch.await_count == 1

    async def test_update_cron_recomputes_next_run(self, scheduler):
        job_id = await scheduler.schedule(descriptor())

        job = await scheduler.update_job(job_id, {"cron_expression": "0 3 * * *"})

        assert job.cron_expression == "0 3 * * *"
        assert job.next_run > utcnow()
        assert (job.next_run.hour, job.next_run.minute) == (3, 0)

    async def test_update_other_fields_keeps_next_run(self, scheduler):
        job_id = await scheduler.schedule(descriptor())
        previous = scheduler.get_job(job_id).next_run

        job = await scheduler.update_job(job_id, {"batch_size": 200, "tags": ["ops"]})

        assert job.batch_size == 200
        assert job.tags == ["ops"]
        assert job.next_run == previous

    async def test_update_rejects_invalid_values(self, scheduler):
        job_id = await scheduler.schedule(descriptor())

        with pytest.raises(ValidationError):
            await scheduler.update_job(job_id, {"cron_expression": "* * * *"})
        with pytest.raises(ValidationError):
            await scheduler.update_job(job_id, {"tables": ["problem"]})
        for field in ("name", "enabled", "batch_size", "delta_sync", "delta_hours",
                      "tags", "max_retries", "timeout_seconds"):
            with pytest.raises(ValidationError):
                await scheduler.update_job(job_id, {field: None})

        job = scheduler.get_job(job_id)
        assert job.cron_expression == "*/5 * * * *"
        assert job.enabled is True

    async def test_update_clears_optional_fields(self, scheduler, repository):
        job_id = await scheduler.schedule(descriptor(description="Hourly pass"))

        job = await scheduler.update_job(job_id, {"description": None})

        assert job.description is None
        assert (await repository.load_all())[0].description is None

    async def test_update_unknown_job(self, scheduler):
        with pytest.raises(JobNotFoundError):
            await scheduler.update_job("missing", {"enabled": False})

    async def test_set_enabled(self, scheduler):
        job_id = await scheduler.schedule(descriptor())

        assert (await scheduler.set_enabled(job_id, False)).enabled is False
        assert scheduler.get_stats().disabled_jobs == 1
        assert (await scheduler.set_enabled(job_id, True)).enabled is True

    async def test_unschedule(self, scheduler, repository):
        job_id = await scheduler.schedule(descriptor())

        await scheduler.unschedule(job_id)

        assert scheduler.get_job(job_id) is None
        assert await repository.load_all() == []
        with pytest.raises(JobNotFoundError):
            await scheduler.unschedule(job_id)

    async def test_record_outcome(self, scheduler):
        job_id = await scheduler.schedule(descriptor())

        await scheduler.record_outcome(job_id, False, "Failed tables: incident")
        job = scheduler.get_job(job_id)
        assert job.fail_count == 1
        assert job.last_status == "failed"
        assert job.last_error == "Failed tables: incident"

        await scheduler.record_outcome(job_id, True)
        job = scheduler.get_job(job_id)
        assert job.fail_count == 1
        assert job.last_status == "succeeded"
        assert job.last_error is None

    async def test_record_outcome_for_removed_job(self, scheduler):
        await scheduler.record_outcome("scheduled_0_gone", True)

    async def test_reload_from_storage(self, scheduler, repository, lock, dispatcher):
        job_id = await scheduler.schedule(descriptor(tags=["ops"], batch_size=25))
        await scheduler.trigger_job(job_id)
        original = scheduler.get_job(job_id)

        restarted = SyncScheduler(repository, lock, dispatcher)
        assert await restarted.load() == 1

        job = restarted.get_job(job_id)
        assert job.name == original.name
        assert job.tables == ["incident"]
        assert job.tags == ["ops"]
        assert job.batch_size == 25
        assert job.run_count == 1
        assert job.next_run == original.next_run

    async def test_reload_recomputes_stale_next_run(self, repository, lock, dispatcher):
        stale = SyncJob(
            **descriptor().model_dump(),
            job_id="scheduled_1_abcd",
            next_run=utcnow() - timedelta(hours=3),
        )
        await repository.save(stale)

        scheduler = SyncScheduler(repository, lock, dispatcher)
        await scheduler.load()

        assert scheduler.get_job("scheduled_1_abcd").next_run > utcnow()

    async def test_stats(self, scheduler):
        first = await scheduler.schedule(descriptor(name="A"))
        await scheduler.schedule(descriptor(name="B", enabled=False))
        await scheduler.trigger_job(first)
        await scheduler.record_outcome(first, False, "boom")

        stats = scheduler.get_stats()
        assert stats.total_jobs == 2
        assert stats.enabled_jobs == 1
        assert stats.disabled_jobs == 1
        assert stats.total_runs == 1
        assert stats.total_fails == 1
        assert stats.next_run == scheduler.get_job(first).next_run
        assert stats.running_jobs == 0

    async def test_start_registers_default_jobs_once(self, scheduler, repository, lock, dispatcher):
        defaults = [descriptor(name="Incremental sync"), descriptor(name="Full sync", cron_expression="0 2 * * *")]

        await scheduler.start(defaults)
        assert scheduler.is_started
        await scheduler.shutdown()
        assert not scheduler.is_started

        restarted = SyncScheduler(repository, lock, dispatcher)
        await restarted.start(defaults)
        await restarted.shutdown()

        assert sorted(job.name for job in restarted.list_jobs()) == ["Full sync", "Incremental sync"]


@pytest.mark.asyncio
@pytest.mark.scheduler
class TestLocks:
    """Test suite for scheduler locks."""

    async def test_in_process_lock_is_exclusive(self):
        lock = InProcessLock(ttl_seconds=30)

        token = await lock.acquire()
        assert token is not None
        assert await lock.acquire() is None
        assert await lock.release(token) is True
        assert await lock.acquire() is not None

    async def test_in_process_lock_expires(self):
        lock = InProcessLock(ttl_seconds=0)

        assert await lock.acquire() is not None
        await asyncio.sleep(0.01)
        assert await lock.acquire() is not None

    async def test_late_release_keeps_new_holder(self):
        """A holder whose lock expired cannot clear the next holder's lock."""
        lock = InProcessLock(ttl_seconds=0)
        stale = await lock.acquire()
        await asyncio.sleep(0.01)

        lock.ttl_seconds = 30
        current = await lock.acquire()
        assert current is not None and current != stale

        assert await lock.release(stale) is False
        assert lock.locked is True
        assert await lock.acquire() is None
        assert await lock.release(current) is True

    async def test_overrunning_tick_keeps_trigger_lock(self, repository, dispatcher):
        lock = InProcessLock(ttl_seconds=0)
        scheduler = SyncScheduler(repository, lock, dispatcher)
        job_id = await scheduler.schedule(descriptor())
        trigger_token = None

        async def dispatch_while_expired(job):
            nonlocal trigger_token
            await asyncio.sleep(0.01)
            lock.ttl_seconds = 30
            trigger_token = await lock.acquire()

        dispatcher.side_effect = dispatch_while_expired
        with patch("ticketsync.tasks.scheduler.utcnow", return_value=utcnow() + timedelta(minutes=10)):
            assert await scheduler.tick() == 1

        assert scheduler.get_job(job_id).run_count == 1
        assert trigger_token is not None
        assert lock.locked is True
        assert await lock.release(trigger_token) is True

    async def test_redis_lock_uses_set_nx_ex(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=True)
        client.eval = AsyncMock(return_value=1)
        lock = RedisLock(client, "scheduler:lock", ttl_seconds=30)

        token = await lock.acquire()
        assert token is not None

        args, kwargs = client.set.await_args
        assert args[0] == "scheduler:lock"
        assert kwargs == {"nx": True, "ex": 30}

        assert await lock.release(token) is True
        eval_args = client.eval.await_args.args
        assert eval_args[1:] == (1, "scheduler:lock", token)
        assert args[1] == token

    async def test_redis_lock_contended(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=None)
        client.eval = AsyncMock()
        lock = RedisLock(client, "scheduler:lock")

        assert await lock.acquire() is None
        client.eval.assert_not_awaited()

    async def test_redis_release_after_expiry(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=True)
        client.eval = AsyncMock(return_value=0)
        lock = RedisLock(client, "scheduler:lock")

        token = await lock.acquire()

        assert await lock.release(token) is False
