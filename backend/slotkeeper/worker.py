"""Standalone worker process: job pool plus recurring scheduler.

Run with ``slotkeeper-worker`` or ``python -m slotkeeper.worker``. Pass
``--once`` to run every due job a single time and exit (cron style).
"""

import argparse
import asyncio
import logging
import signal

from slotkeeper.core.config import settings
from slotkeeper.core.observability import configure_logging
from slotkeeper.db.session import SessionLocal, init_db
from slotkeeper.services import job_scheduler
from slotkeeper.services.background_jobs import WaitlistJobHandlers
from slotkeeper.services.background_workers import worker_manager
from slotkeeper.services.notification_service import get_notification_service
from slotkeeper.services.scheduler_service import register_recurring_jobs, scheduler

logger = logging.getLogger("slotkeeper.worker")


async def run_once() -> int:
    """Sweep, then drain every due job."""
    await job_scheduler.schedule_expired_hold_sweep()
    processed = await worker_manager.run_pending(SessionLocal)
    logger.info(f"Processed {processed} jobs")
    return processed


async def run_forever() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: stop_event.set())

    worker_manager.max_workers = settings.worker_count
    await worker_manager.start(SessionLocal)
    register_recurring_jobs(scheduler)
    scheduler_task = asyncio.create_task(scheduler.start())
    logger.info(f"Worker running with {settings.worker_count} workers")

    await stop_event.wait()

    logger.info("Shutdown requested, stopping worker")
    scheduler.stop()
    scheduler_task.cancel()
    try:
        await scheduler_task
    except asyncio.CancelledError:
        pass
    await worker_manager.stop()


async def _main(once: bool) -> None:
    try:
        if once:
            await run_once()
        else:
            await run_forever()
    finally:
        await get_notification_service().close()


def main() -> None:
    parser = argparse.ArgumentParser(description="slotkeeper background worker")
    parser.add_argument("--once", action="store_true", help="run due jobs once and exit")
    args = parser.parse_args()

    configure_logging()
    init_db()

    WaitlistJobHandlers(get_notification_service()).register()
    asyncio.run(_main(args.once))


if __name__ == "__main__":
    main()
