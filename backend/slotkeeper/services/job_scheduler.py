"""Job types, per-type queue options and scheduling helpers."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from slotkeeper.models.waitlist import CascadeReason
from slotkeeper.services.background_workers import (
    BackgroundWorkerManager,
    BackoffPolicy,
    TaskPriority,
    worker_manager,
)

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    """Job type names. Kept stable for queue inspection."""
    PROCESS_EXPIRED_HOLDS = "process_expired_holds"
    NOTIFICATION_CASCADE = "notification_cascade"
    RETRY_FAILED_NOTIFICATION = "retry_failed_notification"
    CLEANUP_OLD_RECORDS = "cleanup_old_records"
    RECALCULATE_PRIORITY_SCORES = "recalculate_priority_scores"


@dataclass(frozen=True)
class JobOptions:
    max_attempts: int
    backoff: BackoffPolicy
    priority: TaskPriority


JOB_OPTIONS: Dict[JobType, JobOptions] = {
    JobType.PROCESS_EXPIRED_HOLDS: JobOptions(3, BackoffPolicy("exponential", 2.0), TaskPriority.HIGH),
    JobType.NOTIFICATION_CASCADE: JobOptions(5, BackoffPolicy("exponential", 1.0), TaskPriority.CRITICAL),
    # The retry job schedules its own next attempt
    JobType.RETRY_FAILED_NOTIFICATION: JobOptions(1, BackoffPolicy("fixed", 0.0), TaskPriority.HIGH),
    JobType.CLEANUP_OLD_RECORDS: JobOptions(2, BackoffPolicy("fixed", 5.0), TaskPriority.LOW),
    JobType.RECALCULATE_PRIORITY_SCORES: JobOptions(2, BackoffPolicy("fixed", 5.0), TaskPriority.LOW),
}


async def schedule_job(
    job_type: JobType,
    name: str,
    payload: Optional[Dict[str, Any]] = None,
    tenant_id: Optional[int] = None,
    delay_seconds: float = 0,
    priority: Optional[TaskPriority] = None,
    manager: Optional[BackgroundWorkerManager] = None,
) -> str:
    """Enqueue a job with the retry policy registered for its type."""
    options = JOB_OPTIONS[job_type]
    return await (manager or worker_manager).schedule(
        task_type=job_type.value,
        name=name,
        payload=payload,
        tenant_id=tenant_id,
        delay_seconds=delay_seconds,
        priority=priority or options.priority,
        max_attempts=options.max_attempts,
        backoff=options.backoff,
    )


async def schedule_expired_hold_sweep(
    tenant_id: Optional[int] = None,
    manager: Optional[BackgroundWorkerManager] = None,
) -> str:
    """Sweep one tenant, or every active tenant when ``tenant_id`` is None."""
    return await schedule_job(
        JobType.PROCESS_EXPIRED_HOLDS,
        f"Process expired holds ({'tenant ' + str(tenant_id) if tenant_id else 'all tenants'})",
        payload={"tenant_id": tenant_id},
        tenant_id=tenant_id,
        manager=manager,
    )


async def schedule_cascade(
    tenant_id: int,
    slot_id: int,
    previous_entry_id: int,
    reason: CascadeReason,
    delay_seconds: float = 0,
    manager: Optional[BackgroundWorkerManager] = None,
) -> str:
    """Schedule the offer of a slot to the next candidate."""
    logger.info(
        f"Cascade scheduled for slot {slot_id} ({reason.value})",
        extra={"tenant_id": tenant_id, "slot_id": slot_id, "entry_id": previous_entry_id},
    )
    return await schedule_job(
        JobType.NOTIFICATION_CASCADE,
        f"Cascade slot {slot_id} after {reason.value}",
        payload={
            "tenant_id": tenant_id,
            "slot_id": slot_id,
            "previous_entry_id": previous_entry_id,
            "reason": reason.value,
        },
        tenant_id=tenant_id,
        delay_seconds=delay_seconds,
        manager=manager,
    )


async def schedule_notification_retry(
    tenant_id: int,
    notification_id: int,
    attempt: int,
    delay_seconds: float,
    manager: Optional[BackgroundWorkerManager] = None,
) -> str:
    return await schedule_job(
        JobType.RETRY_FAILED_NOTIFICATION,
        f"Retry notification {notification_id} (attempt {attempt})",
        payload={"tenant_id": tenant_id, "notification_id": notification_id, "attempt": attempt},
        tenant_id=tenant_id,
        delay_seconds=delay_seconds,
        manager=manager,
    )


async def schedule_cleanup(
    retention_days: Optional[int] = None,
    manager: Optional[BackgroundWorkerManager] = None,
) -> str:
    return await schedule_job(
        JobType.CLEANUP_OLD_RECORDS,
        "Cleanup old records",
        payload={"retention_days": retention_days},
        manager=manager,
    )


async def schedule_score_recalculation(
    tenant_id: Optional[int] = None,
    manager: Optional[BackgroundWorkerManager] = None,
) -> str:
    return await schedule_job(
        JobType.RECALCULATE_PRIORITY_SCORES,
        "Recalculate priority scores",
        payload={"tenant_id": tenant_id},
        tenant_id=tenant_id,
        manager=manager,
    )


def get_queue_health(manager: Optional[BackgroundWorkerManager] = None) -> Dict[str, Any]:
    """Per-job-type depth counts plus totals."""
    manager = manager or worker_manager
    queues = {job_type.value: manager.get_queue_counts(job_type.value) for job_type in JobType}
    totals: Dict[str, int] = {}
    for counts in queues.values():
        for key, value in counts.items():
            totals[key] = totals.get(key, 0) + value
    return {
        "queues": queues,
        "totals": totals,
        "paused": {job_type.value: manager.is_paused(job_type.value) for job_type in JobType},
        "workers": manager.get_stats()["active_workers"],
    }
