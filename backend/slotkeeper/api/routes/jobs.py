"""Job queue routes - queue health, pause/resume, manual triggers and alerts."""

from typing import Optional

from fastapi import APIRouter, HTTPException

from slotkeeper.api.deps import WorkerManagerDep
from slotkeeper.core.alerting import alert_manager
from slotkeeper.schemas.jobs import (
    CleanupRequest,
    JobResponse,
    JobScheduledResponse,
    QueueControlRequest,
    SweepRequest,
)
from slotkeeper.services import job_scheduler
from slotkeeper.services.job_scheduler import JobType
from slotkeeper.services.scheduler_service import scheduler

router = APIRouter()


@router.get("/status")
def queue_status(manager: WorkerManagerDep):
    """Per-job-type queue depth (waiting, active, completed, failed, delayed, paused)."""
    return {
        **job_scheduler.get_queue_health(manager),
        "recurring": scheduler.get_status(),
    }


@router.post("/pause")
def pause_queue(request: QueueControlRequest, manager: WorkerManagerDep):
    job_type = request.job_type.value if request.job_type else None
    manager.pause(job_type)
    return {"paused": job_type or "all"}


@router.post("/resume")
def resume_queue(request: QueueControlRequest, manager: WorkerManagerDep):
    job_type = request.job_type.value if request.job_type else None
    manager.resume(job_type)
    return {"resumed": job_type or "all"}


@router.post("/sweep", response_model=JobScheduledResponse, status_code=202)
async def trigger_sweep(request: SweepRequest, manager: WorkerManagerDep):
    """Run the expired-hold sweep now instead of waiting for the next interval."""
    job_id = await job_scheduler.schedule_expired_hold_sweep(request.tenant_id, manager=manager)
    return JobScheduledResponse(job_id=job_id, job_type=JobType.PROCESS_EXPIRED_HOLDS)


@router.post("/cleanup", response_model=JobScheduledResponse, status_code=202)
async def trigger_cleanup(request: CleanupRequest, manager: WorkerManagerDep):
    job_id = await job_scheduler.schedule_cleanup(request.retention_days, manager=manager)
    return JobScheduledResponse(job_id=job_id, job_type=JobType.CLEANUP_OLD_RECORDS)


@router.post("/recalculate-scores", response_model=JobScheduledResponse, status_code=202)
async def trigger_score_recalculation(manager: WorkerManagerDep, tenant_id: Optional[int] = None):
    job_id = await job_scheduler.schedule_score_recalculation(tenant_id, manager=manager)
    return JobScheduledResponse(job_id=job_id, job_type=JobType.RECALCULATE_PRIORITY_SCORES)


@router.get("/alerts")
def get_alerts(level: Optional[str] = None, tenant_id: Optional[int] = None, limit: int = 20):
    """Recent administrative alerts (abandoned notifications and similar)."""
    return {"alerts": alert_manager.get_recent(limit=limit, level=level, tenant_id=tenant_id)}


@router.delete("/failed")
def clear_failed_jobs(manager: WorkerManagerDep, job_type: Optional[JobType] = None):
    cleared = manager.clear_failed(job_type.value if job_type else None)
    return {"cleared": cleared}


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, manager: WorkerManagerDep):
    task = manager.get_task_status(job_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return task.to_dict()


@router.post("/{job_id}/retry", response_model=JobResponse)
async def retry_job(job_id: str, manager: WorkerManagerDep):
    """Re-queue a failed job."""
    task = manager.get_task_status(job_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    if not await manager.retry_task(job_id):
        raise HTTPException(status_code=409, detail=f"Job {job_id} is {task.status.value}, only failed jobs can be retried")
    return task.to_dict()
