"""Recurring job scheduler (expired-hold sweep, score refresh, cleanup)."""

import asyncio
import inspect
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from slotkeeper.core.clock import Clock, system_clock
from slotkeeper.core.config import Settings, settings as default_settings
from slotkeeper.services import job_scheduler
from slotkeeper.services.background_workers import BackgroundWorkerManager

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Lightweight asyncio-based task scheduler.

    Runs registered callables at fixed intervals. State is ephemeral; the
    jobs it enqueues are idempotent, so a restart only shifts the next run.
    """

    def __init__(self, clock: Clock = system_clock, tick_seconds: float = 1.0):
        self.clock = clock
        self.tick_seconds = tick_seconds
        self._tasks: Dict[str, Dict[str, Any]] = {}
        self._running = False

    async def start(self):
        """Run the scheduler loop until ``stop()`` is called."""
        self._running = True
        logger.info("Task scheduler started")

        while self._running:
            await self.run_due()
            await asyncio.sleep(self.tick_seconds)

        logger.info("Task scheduler stopped")

    def stop(self):
        self._running = False

    async def run_due(self) -> int:
        """Run every task whose next run time has arrived. Returns how many ran."""
        now = self.clock.now()
        ran = 0
        for name, task in list(self._tasks.items()):
            if now < task["next_run"]:
                continue
            try:
                if inspect.iscoroutinefunction(task["func"]):
                    await task["func"]()
                else:
                    task["func"]()
                task["last_run"] = now
                task["run_count"] = task.get("run_count", 0) + 1
                task["last_error"] = None
                logger.debug(f"Scheduled task '{name}' completed")
            except Exception as e:
                task["last_error"] = str(e)
                logger.error(f"Scheduled task '{name}' failed: {e}")
            task["next_run"] = now + task["interval"]
            ran += 1
        return ran

    def add_task(self, name: str, func: Callable, interval_seconds: int, run_immediately: bool = False):
        now = self.clock.now()
        self._tasks[name] = {
            "func": func,
            "interval": timedelta(seconds=interval_seconds),
            "next_run": now if run_immediately else now + timedelta(seconds=interval_seconds),
            "last_run": None,
            "run_count": 0,
            "last_error": None,
        }
        logger.info(f"Scheduled task '{name}' every {interval_seconds}s")

    def remove_task(self, name: str):
        self._tasks.pop(name, None)

    def get_status(self) -> Dict[str, Any]:
        return {
            name: {
                "last_run": t["last_run"].isoformat() if t["last_run"] else None,
                "next_run": t["next_run"].isoformat(),
                "interval_seconds": int(t["interval"].total_seconds()),
                "run_count": t.get("run_count", 0),
                "last_error": t.get("last_error"),
            }
            for name, t in self._tasks.items()
        }


def register_recurring_jobs(
    scheduler: "TaskScheduler",
    manager: Optional[BackgroundWorkerManager] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Enqueue the sweep every minute, score refresh hourly and cleanup daily (configurable)."""
    settings = settings or default_settings

    async def enqueue_sweep():
        await job_scheduler.schedule_expired_hold_sweep(manager=manager)

    async def enqueue_recalculation():
        await job_scheduler.schedule_score_recalculation(manager=manager)

    async def enqueue_cleanup():
        await job_scheduler.schedule_cleanup(settings.retention_days, manager=manager)

    scheduler.add_task(
        job_scheduler.JobType.PROCESS_EXPIRED_HOLDS.value,
        enqueue_sweep,
        settings.expired_hold_sweep_interval_seconds,
        run_immediately=True,
    )
    scheduler.add_task(
        job_scheduler.JobType.RECALCULATE_PRIORITY_SCORES.value,
        enqueue_recalculation,
        settings.score_recalculation_interval_seconds,
    )
    scheduler.add_task(
        job_scheduler.JobType.CLEANUP_OLD_RECORDS.value,
        enqueue_cleanup,
        settings.cleanup_interval_seconds,
    )


scheduler = TaskScheduler()
