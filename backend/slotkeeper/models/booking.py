"""Booking and audit models."""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column

from slotkeeper.db.base import Base, TimestampMixin


class BookingSource(str, Enum):
    WAITLIST = "waitlist"
    DIRECT = "direct"
    WALK_IN = "walk_in"


class Booking(Base, TimestampMixin):
    """A confirmed booking created when a held slot is accepted."""

    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    slot_id: Mapped[int] = mapped_column(ForeignKey("slots.id"), nullable=False, unique=True)
    waitlist_entry_id: Mapped[Optional[int]] = mapped_column(ForeignKey("waitlist_entries.id"), nullable=True)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(20), default=BookingSource.WAITLIST.value, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="confirmed", nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class AuditLogEntry(Base):
    """Append-only record of state changes made by users or the system."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_type: Mapped[str] = mapped_column(String(20), default="system", nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
