"""Job queue schemas."""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from slotkeeper.services.job_scheduler import JobType


class QueueControlRequest(BaseModel):
    """Pause or resume one job type, or every type when omitted."""
    job_type: Optional[JobType] = None


class SweepRequest(BaseModel):
    tenant_id: Optional[int] = None


class CleanupRequest(BaseModel):
    retention_days: Optional[int] = Field(default=None, ge=1)


class JobScheduledResponse(BaseModel):
    job_id: str
    job_type: JobType


class JobResponse(BaseModel):
    id: str
    name: str
    task_type: str
    tenant_id: Optional[int] = None
    payload: Dict[str, Any] = {}
    status: str
    priority: str
    scheduled_at: str
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    attempts_made: int
    max_attempts: int
    result: Optional[Dict[str, Any]] = None
