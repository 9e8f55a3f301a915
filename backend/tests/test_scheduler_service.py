"""Tests for the recurring task scheduler."""

import pytest

from slotkeeper.services.job_scheduler import JobType
from slotkeeper.services.scheduler_service import TaskScheduler, register_recurring_jobs


class TestTaskScheduler:
    @pytest.mark.asyncio
    async def test_runs_on_interval(self, clock):
        scheduler = TaskScheduler(clock=clock)
        calls = []
        scheduler.add_task("tick", lambda: calls.append(clock.now()), interval_seconds=60)

        assert await scheduler.run_due() == 0
        clock.advance(seconds=60)
        assert await scheduler.run_due() == 1
        clock.advance(seconds=30)
        assert await scheduler.run_due() == 0
        clock.advance(seconds=30)
        assert await scheduler.run_due() == 1
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_rescheduled(self, clock):
        scheduler = TaskScheduler(clock=clock)

        async def broken():
            raise RuntimeError("queue unavailable")

        scheduler.add_task("broken", broken, interval_seconds=10, run_immediately=True)
        await scheduler.run_due()

        status = scheduler.get_status()["broken"]
        assert status["last_error"] == "queue unavailable"
        assert status["run_count"] == 0
        assert status["interval_seconds"] == 10

    def test_remove_task(self, clock):
        scheduler = TaskScheduler(clock=clock)
        scheduler.add_task("tick", lambda: None, interval_seconds=5)
        scheduler.remove_task("tick")
        assert scheduler.get_status() == {}


class TestRecurringJobs:
    @pytest.mark.asyncio
    async def test_sweep_enqueued_immediately_then_on_interval(self, clock, manager, test_settings):
        scheduler = TaskScheduler(clock=clock)
        register_recurring_jobs(scheduler, manager=manager, settings=test_settings)

        await scheduler.run_due()
        sweeps = manager.list_tasks(task_type=JobType.PROCESS_EXPIRED_HOLDS.value)
        assert len(sweeps) == 1
        assert manager.list_tasks(task_type=JobType.CLEANUP_OLD_RECORDS.value) == []

        clock.advance(seconds=test_settings.expired_hold_sweep_interval_seconds)
        await scheduler.run_due()
        assert len(manager.list_tasks(task_type=JobType.PROCESS_EXPIRED_HOLDS.value)) == 2

    @pytest.mark.asyncio
    async def test_cleanup_and_recalculation_enqueued(self, clock, manager, test_settings):
        scheduler = TaskScheduler(clock=clock)
        register_recurring_jobs(scheduler, manager=manager, settings=test_settings)

        clock.advance(seconds=test_settings.cleanup_interval_seconds)
        await scheduler.run_due()

        [cleanup] = manager.list_tasks(task_type=JobType.CLEANUP_OLD_RECORDS.value)
        assert cleanup.payload == {"retention_days": test_settings.retention_days}
        assert len(manager.list_tasks(task_type=JobType.RECALCULATE_PRIORITY_SCORES.value)) == 1
