"""Waitlist routes."""

from typing import Optional

from fastapi import APIRouter, Query

from slotkeeper.api.deps import ClockDep
from slotkeeper.core.responses import page_of
from slotkeeper.db.session import DbSession
from slotkeeper.models.waitlist import WaitlistEntry, WaitlistStatus
from slotkeeper.repositories.waitlist_repository import WaitlistRepository
from slotkeeper.schemas.waitlist import (
    WaitlistEntryCreate,
    WaitlistEntryResponse,
    WaitlistEntryUpdate,
)
from slotkeeper.services.waitlist_service import WaitlistService

router = APIRouter()


@router.post("", response_model=WaitlistEntryResponse, status_code=201)
def create_entry(tenant_id: int, request: WaitlistEntryCreate, db: DbSession, clock: ClockDep):
    """Add a customer to the waitlist (at most 3 active entries per phone)."""
    return WaitlistService(db, clock=clock).create_entry(
        tenant_id,
        customer_name=request.customer_name,
        phone=request.phone,
        email=request.email,
        service_id=request.service_id,
        staff_id=request.staff_id,
        earliest_time=request.earliest_time,
        latest_time=request.latest_time,
        vip_status=request.vip_status,
        notification_channels=request.notification_channels,
        preferred_channel=request.preferred_channel,
    )


@router.get("")
def list_entries(
    tenant_id: int,
    db: DbSession,
    status: Optional[WaitlistStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    query = db.query(WaitlistEntry).filter(WaitlistEntry.tenant_id == tenant_id)
    if status is not None:
        query = query.filter(WaitlistEntry.status == status.value)
    query = query.order_by(WaitlistEntry.priority_score.desc(), WaitlistEntry.created_at, WaitlistEntry.id)
    return page_of(query, WaitlistEntryResponse, skip, limit)


@router.get("/stats")
def waitlist_stats(tenant_id: int, db: DbSession):
    """Entry counts per status for the tenant."""
    by_status = WaitlistRepository(db).count_by_status(tenant_id)
    return {"tenant_id": tenant_id, "total": sum(by_status.values()), "by_status": by_status}


@router.get("/{entry_id}", response_model=WaitlistEntryResponse)
def get_entry(tenant_id: int, entry_id: int, db: DbSession, clock: ClockDep):
    return WaitlistService(db, clock=clock).get_entry(tenant_id, entry_id)


@router.patch("/{entry_id}", response_model=WaitlistEntryResponse)
def update_entry(
    tenant_id: int,
    entry_id: int,
    request: WaitlistEntryUpdate,
    db: DbSession,
    clock: ClockDep,
):
    return WaitlistService(db, clock=clock).update_entry(
        tenant_id,
        entry_id,
        earliest_time=request.earliest_time,
        latest_time=request.latest_time,
        staff_id=request.staff_id,
        vip_status=request.vip_status,
    )


@router.delete("/{entry_id}", response_model=WaitlistEntryResponse)
def remove_entry(tenant_id: int, entry_id: int, db: DbSession, clock: ClockDep):
    """Withdraw an active entry."""
    return WaitlistService(db, clock=clock).remove_entry(tenant_id, entry_id)
