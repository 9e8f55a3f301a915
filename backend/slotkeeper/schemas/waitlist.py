"""Waitlist schemas."""

from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, model_validator

from slotkeeper.models.waitlist import NotificationChannel, WaitlistStatus


class WaitlistEntryCreate(BaseModel):
    """Schema for adding a customer to the waitlist."""
    customer_name: str = Field(..., min_length=1, max_length=200)
    phone: str = Field(..., min_length=5, max_length=50)
    email: Optional[str] = Field(default=None, max_length=255)
    service_id: int
    staff_id: Optional[int] = None
    earliest_time: datetime
    latest_time: datetime
    vip_status: bool = False
    notification_channels: List[NotificationChannel] = Field(default_factory=list)
    preferred_channel: NotificationChannel = NotificationChannel.SMS

    @model_validator(mode="after")
    def validate_window(self) -> "WaitlistEntryCreate":
        if self.earliest_time >= self.latest_time:
            raise ValueError("earliest_time must be before latest_time")
        return self


class WaitlistEntryUpdate(BaseModel):
    earliest_time: Optional[datetime] = None
    latest_time: Optional[datetime] = None
    staff_id: Optional[int] = None
    vip_status: Optional[bool] = None


class WaitlistEntryResponse(BaseModel):
    """Schema for waitlist entry response."""
    id: int
    tenant_id: int
    customer_name: str
    phone: str
    email: Optional[str] = None
    service_id: int
    staff_id: Optional[int] = None
    earliest_time: datetime
    latest_time: datetime
    priority_score: int
    vip_status: bool
    status: WaitlistStatus
    notification_channels: List[NotificationChannel] = []
    preferred_channel: NotificationChannel
    removal_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
