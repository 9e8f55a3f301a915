"""Waitlist entry model."""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import Boolean, String, Integer, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, validates

from slotkeeper.db.base import Base, TimestampMixin


class WaitlistStatus(str, Enum):
    """Waitlist entry status.

    active -> notified -> confirmed | removed, or active -> removed.
    A notified entry never goes back to active.
    """
    ACTIVE = "active"
    NOTIFIED = "notified"
    CONFIRMED = "confirmed"
    REMOVED = "removed"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class CascadeReason(str, Enum):
    """Why a slot went back to the candidate pool."""
    DECLINED = "declined"
    EXPIRED = "expired"


class WaitlistEntry(Base, TimestampMixin):
    """A customer's request to be offered a matching slot when one frees up."""

    __tablename__ = "waitlist_entries"
    __table_args__ = (
        Index("idx_waitlist_tenant_status_service", "tenant_id", "status", "service_id"),
        Index("idx_waitlist_tenant_phone", "tenant_id", "phone"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False)
    staff_id: Mapped[Optional[int]] = mapped_column(ForeignKey("staff.id"), nullable=True)
    earliest_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    latest_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    priority_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    vip_status: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=WaitlistStatus.ACTIVE.value, nullable=False)
    notification_channels: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    preferred_channel: Mapped[str] = mapped_column(String(20), default=NotificationChannel.SMS.value, nullable=False)
    removal_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    @validates("earliest_time", "latest_time")
    def _validate_window(self, key, value):
        other = self.latest_time if key == "earliest_time" else self.earliest_time
        if value is not None and other is not None:
            earliest, latest = (value, other) if key == "earliest_time" else (other, value)
            if earliest >= latest:
                raise ValueError("Earliest time must be before latest time")
        return value

    @property
    def waitlist_status(self) -> WaitlistStatus:
        return WaitlistStatus(self.status)

    def channels_in_order(self) -> List[NotificationChannel]:
        """Preferred channel first, then the remaining configured channels."""
        ordered = [self.preferred_channel] + [
            c for c in (self.notification_channels or []) if c != self.preferred_channel
        ]
        return [NotificationChannel(c) for c in ordered]
