"""Slot model and status transitions."""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy import String, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, validates

from slotkeeper.db.base import Base, TimestampMixin


class SlotStatus(str, Enum):
    """Slot lifecycle status."""
    OPEN = "open"
    HELD = "held"
    BOOKED = "booked"
    CANCELED = "canceled"


# Legal slot transitions. Booked and canceled are terminal.
SLOT_TRANSITIONS: Dict[SlotStatus, FrozenSet[SlotStatus]] = {
    SlotStatus.OPEN: frozenset({SlotStatus.HELD, SlotStatus.CANCELED}),
    SlotStatus.HELD: frozenset({SlotStatus.OPEN, SlotStatus.BOOKED, SlotStatus.CANCELED}),
    SlotStatus.BOOKED: frozenset(),
    SlotStatus.CANCELED: frozenset(),
}


def can_transition(current: SlotStatus, target: SlotStatus) -> bool:
    return target in SLOT_TRANSITIONS[SlotStatus(current)]


class Slot(Base, TimestampMixin):
    """A bookable time range for one staff member and one service.

    ``hold_expires_at`` and ``held_entry_id`` are set if and only if the
    slot is held. Status changes go through conditional updates in
    ``SlotRepository``; never assign ``status`` directly on a loaded row.
    """

    __tablename__ = "slots"
    __table_args__ = (
        Index("idx_slots_tenant_status", "tenant_id", "status"),
        Index("idx_slots_tenant_hold_expiry", "tenant_id", "status", "hold_expires_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    staff_id: Mapped[int] = mapped_column(ForeignKey("staff.id"), nullable=False)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=SlotStatus.OPEN.value, nullable=False)
    hold_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    held_entry_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("waitlist_entries.id", ondelete="SET NULL"), nullable=True
    )

    @validates("start_time", "end_time")
    def _validate_time_range(self, key, value):
        other = self.end_time if key == "start_time" else self.start_time
        if value is not None and other is not None:
            start, end = (value, other) if key == "start_time" else (other, value)
            if end <= start:
                raise ValueError("Slot end time must be after start time")
        return value

    @property
    def slot_status(self) -> SlotStatus:
        return SlotStatus(self.status)

    def is_held_for(self, entry_id: int) -> bool:
        return self.status == SlotStatus.HELD.value and self.held_entry_id == entry_id
