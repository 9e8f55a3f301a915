"""SQLAlchemy models."""

from slotkeeper.models.tenant import Tenant, Staff, Service
from slotkeeper.models.slot import Slot, SlotStatus, SLOT_TRANSITIONS, can_transition
from slotkeeper.models.waitlist import (
    WaitlistEntry,
    WaitlistStatus,
    NotificationChannel,
    CascadeReason,
)
from slotkeeper.models.notification import (
    Notification,
    NotificationStatus,
    TERMINAL_NOTIFICATION_STATUSES,
)
from slotkeeper.models.booking import Booking, BookingSource, AuditLogEntry

__all__ = [
    "Tenant",
    "Staff",
    "Service",
    "Slot",
    "SlotStatus",
    "SLOT_TRANSITIONS",
    "can_transition",
    "WaitlistEntry",
    "WaitlistStatus",
    "NotificationChannel",
    "CascadeReason",
    "Notification",
    "NotificationStatus",
    "TERMINAL_NOTIFICATION_STATUSES",
    "Booking",
    "BookingSource",
    "AuditLogEntry",
]
