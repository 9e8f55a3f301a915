"""Slot schemas - Pydantic models for slot creation, transitions and responses."""

from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field, model_validator

from slotkeeper.models.slot import SlotStatus


class SlotCreate(BaseModel):
    """Schema for creating a slot."""
    staff_id: int
    service_id: int
    start_time: datetime
    end_time: datetime
    status: SlotStatus = SlotStatus.OPEN

    @model_validator(mode="after")
    def validate_range(self) -> "SlotCreate":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if self.status not in (SlotStatus.OPEN, SlotStatus.BOOKED):
            raise ValueError("slots can only be created open or booked")
        return self


class SlotResponse(BaseModel):
    """Schema for slot response."""
    id: int
    tenant_id: int
    staff_id: int
    service_id: int
    start_time: datetime
    end_time: datetime
    status: SlotStatus
    hold_expires_at: Optional[datetime] = None
    held_entry_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SlotEntryAction(BaseModel):
    """Confirm or decline body: the waitlist entry responding to the offer."""
    entry_id: int


class OpenSlotRequest(BaseModel):
    hold_duration_minutes: Optional[int] = Field(default=None, ge=1, le=60)


class TransitionResponse(BaseModel):
    success: bool
    slot_id: int
    to_status: SlotStatus
    from_status: Optional[SlotStatus] = None
    entry_id: Optional[int] = None
    conflict: bool = False
    reason: Optional[str] = None
    hold_expires_at: Optional[datetime] = None
    booking_id: Optional[int] = None

    model_config = {"from_attributes": True}


class OfferResponse(BaseModel):
    """Result of opening a slot or cascading it."""
    next_candidate_found: bool
    notified: bool
    candidate_name: Optional[str] = None
    entry_id: Optional[int] = None
    notification_id: Optional[int] = None
    error: Optional[str] = None

    model_config = {"from_attributes": True}


class DeclineResponse(BaseModel):
    accepted: bool
    job_id: Optional[str] = None
