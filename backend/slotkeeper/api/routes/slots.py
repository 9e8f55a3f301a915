"""Slot routes - create, inspect and drive slots through their lifecycle."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from slotkeeper.api.deps import ClockDep, DispatcherDep, WorkerManagerDep
from slotkeeper.core.responses import page_of
from slotkeeper.db.session import DbSession
from slotkeeper.models.slot import SlotStatus
from slotkeeper.repositories.slot_repository import SlotRepository
from slotkeeper.schemas.slots import (
    DeclineResponse,
    OfferResponse,
    OpenSlotRequest,
    SlotCreate,
    SlotEntryAction,
    SlotResponse,
    TransitionResponse,
)
from slotkeeper.services.cascade_service import CascadeService
from slotkeeper.services.slot_state_machine import SLOT_STATE_CONFLICT, SlotStateMachine, TransitionResult

router = APIRouter()


def _raise_conflict(result: TransitionResult) -> None:
    raise HTTPException(
        status_code=409,
        detail={
            "message": f"Slot {result.slot_id} cannot move to {result.to_status.value}",
            "reason": result.reason,
            "current_status": result.from_status.value if result.from_status else None,
        },
    )


@router.post("", response_model=SlotResponse, status_code=201)
def create_slot(tenant_id: int, request: SlotCreate, db: DbSession, clock: ClockDep):
    """Create an open (or directly booked) slot."""
    slot = SlotStateMachine(db, clock=clock).create_slot(
        tenant_id,
        staff_id=request.staff_id,
        service_id=request.service_id,
        start_time=request.start_time,
        end_time=request.end_time,
        status=request.status,
        actor_type="user",
    )
    return slot


@router.get("")
def list_slots(
    tenant_id: int,
    db: DbSession,
    status: Optional[SlotStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    query = SlotRepository(db).query_for_tenant(tenant_id, status)
    return page_of(query, SlotResponse, skip, limit)


@router.get("/stats")
def slot_stats(tenant_id: int, db: DbSession):
    """Slot counts per status for the tenant."""
    by_status = SlotRepository(db).count_by_status(tenant_id)
    return {"tenant_id": tenant_id, "total": sum(by_status.values()), "by_status": by_status}


@router.get("/{slot_id}", response_model=SlotResponse)
def get_slot(tenant_id: int, slot_id: int, db: DbSession, clock: ClockDep):
    return SlotStateMachine(db, clock=clock).get_slot(tenant_id, slot_id)


@router.post("/{slot_id}/open", response_model=OfferResponse)
async def open_slot(
    tenant_id: int,
    slot_id: int,
    db: DbSession,
    clock: ClockDep,
    dispatcher: DispatcherDep,
    manager: WorkerManagerDep,
    request: Optional[OpenSlotRequest] = None,
):
    """Offer an open slot to the best waiting candidate."""
    service = CascadeService(db, dispatcher, clock=clock, manager=manager)
    slot = service.state_machine.get_slot(tenant_id, slot_id)
    if slot.status != SlotStatus.OPEN.value:
        _raise_conflict(service.state_machine.conflict(slot, SlotStatus.HELD, SLOT_STATE_CONFLICT))
    duration = request.hold_duration_minutes if request else None
    return await service.offer_slot(tenant_id, slot_id, duration)


@router.post("/{slot_id}/confirm", response_model=TransitionResponse)
async def confirm_slot(
    tenant_id: int,
    slot_id: int,
    request: SlotEntryAction,
    db: DbSession,
    clock: ClockDep,
    dispatcher: DispatcherDep,
    manager: WorkerManagerDep,
):
    """Confirm a held slot. Late confirmations are rejected and the slot cascades."""
    service = CascadeService(db, dispatcher, clock=clock, manager=manager)
    result = await service.confirm_offer(tenant_id, slot_id, request.entry_id)
    if not result.success:
        _raise_conflict(result)
    return result


@router.post("/{slot_id}/decline", response_model=DeclineResponse, status_code=202)
async def decline_slot(
    tenant_id: int,
    slot_id: int,
    request: SlotEntryAction,
    db: DbSession,
    clock: ClockDep,
    dispatcher: DispatcherDep,
    manager: WorkerManagerDep,
):
    """Decline an offer. The slot moves to the next candidate in the background."""
    service = CascadeService(db, dispatcher, clock=clock, manager=manager)
    result = await service.decline_offer(tenant_id, slot_id, request.entry_id)
    if not result.accepted:
        _raise_conflict(result.transition)
    return DeclineResponse(accepted=True, job_id=result.job_id)


@router.post("/{slot_id}/cancel", response_model=TransitionResponse)
def cancel_slot(tenant_id: int, slot_id: int, db: DbSession, clock: ClockDep):
    result = SlotStateMachine(db, clock=clock).cancel(tenant_id, slot_id, actor_type="user")
    if not result.success:
        _raise_conflict(result)
    return result
