"""
Slot State Machine

Owns every slot status change:

    open -> held -> open          (release: decline, expiry)
    open | held -> canceled
    held -> booked                (confirm before expiry)

Each change is a conditional update on the slot row keyed on the current
status (and the holding entry where relevant), committed in the same
transaction as the matching waitlist entry change. A lost race is returned
as a ``TransitionResult`` with ``conflict=True`` and is never raised;
callers stop without retrying. Missing rows raise ``NotFoundError``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from slotkeeper.core.clock import Clock, system_clock
from slotkeeper.core.config import MAX_HOLD_MINUTES, MIN_HOLD_MINUTES, Settings, settings as default_settings
from slotkeeper.core.errors import BusinessRuleError, NotFoundError
from slotkeeper.models.booking import Booking, BookingSource
from slotkeeper.models.slot import Slot, SlotStatus, can_transition
from slotkeeper.models.tenant import Service, Staff
from slotkeeper.models.waitlist import WaitlistEntry, WaitlistStatus
from slotkeeper.repositories.slot_repository import SlotRepository
from slotkeeper.repositories.waitlist_repository import WaitlistRepository
from slotkeeper.services import audit_service
from slotkeeper.services.matcher_service import MatcherService

logger = logging.getLogger(__name__)

# Conflict reasons
SLOT_STATE_CONFLICT = "slot_state_conflict"
ENTRY_STATE_CONFLICT = "entry_state_conflict"
NOT_HELD_FOR_ENTRY = "not_held_for_entry"
HOLD_EXPIRED = "expired"


@dataclass
class TransitionResult:
    """Outcome of one attempted slot transition."""
    success: bool
    slot_id: int
    to_status: SlotStatus
    from_status: Optional[SlotStatus] = None
    entry_id: Optional[int] = None
    conflict: bool = False
    reason: Optional[str] = None
    hold_expires_at: Optional[datetime] = None
    booking_id: Optional[int] = None

    @property
    def expired(self) -> bool:
        return self.reason == HOLD_EXPIRED


@dataclass
class Offer:
    """A slot held for a candidate, ready to be dispatched."""
    slot: Slot
    entry: WaitlistEntry
    score: int
    hold_expires_at: datetime


class SlotStateMachine:
    """Transitions slots for one session. Tenant id is passed on every call."""

    def __init__(
        self,
        db: Session,
        clock: Clock = system_clock,
        settings: Optional[Settings] = None,
        matcher: Optional[MatcherService] = None,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings or default_settings
        self.slots = SlotRepository(db)
        self.entries = WaitlistRepository(db)
        self.matcher = matcher or MatcherService(db, self.settings.scoring_weights, clock)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_slot(self, tenant_id: int, slot_id: int) -> Slot:
        slot = self.slots.get(tenant_id, slot_id, fresh=True)
        if slot is None:
            raise NotFoundError("Slot", slot_id, tenant_id)
        return slot

    def _get_entry(self, tenant_id: int, entry_id: int) -> WaitlistEntry:
        entry = self.entries.get(tenant_id, entry_id, fresh=True)
        if entry is None:
            raise NotFoundError("Waitlist entry", entry_id, tenant_id)
        return entry

    def conflict(
        self,
        slot: Slot,
        target: SlotStatus,
        reason: str,
        entry_id: Optional[int] = None,
    ) -> TransitionResult:
        logger.debug(
            f"Slot {slot.id} {slot.status}->{target.value} rejected: {reason}",
            extra={"tenant_id": slot.tenant_id, "slot_id": slot.id, "entry_id": entry_id},
        )
        return TransitionResult(
            success=False,
            slot_id=slot.id,
            to_status=target,
            from_status=SlotStatus(slot.status),
            entry_id=entry_id,
            conflict=True,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_slot(
        self,
        tenant_id: int,
        staff_id: int,
        service_id: int,
        start_time: datetime,
        end_time: datetime,
        status: SlotStatus = SlotStatus.OPEN,
        actor_type: str = "system",
    ) -> Slot:
        """Create a slot. New slots start open, or booked when taken directly."""
        if status not in (SlotStatus.OPEN, SlotStatus.BOOKED):
            raise BusinessRuleError("Slots can only be created open or booked")
        if end_time <= start_time:
            raise BusinessRuleError("Slot end time must be after start time")

        staff = self.db.get(Staff, staff_id)
        if staff is None or staff.tenant_id != tenant_id:
            raise NotFoundError("Staff", staff_id, tenant_id)
        service = self.db.get(Service, service_id)
        if service is None or service.tenant_id != tenant_id:
            raise NotFoundError("Service", service_id, tenant_id)
        if not staff.active or not service.active:
            raise BusinessRuleError("Cannot create a slot for inactive staff or service")

        now = self.clock.now()
        slot = self.slots.add(Slot(
            tenant_id=tenant_id,
            staff_id=staff_id,
            service_id=service_id,
            start_time=start_time,
            end_time=end_time,
            status=status.value,
            created_at=now,
            updated_at=now,
        ))
        audit_service.log_action(
            self.db, tenant_id, "slot.created", "slot", slot.id,
            details={"status": status.value}, actor_type=actor_type, now=now,
        )
        self.db.commit()
        self.db.refresh(slot)
        return slot

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def hold(
        self,
        tenant_id: int,
        slot_id: int,
        entry_id: int,
        duration_minutes: Optional[int] = None,
    ) -> TransitionResult:
        """Hold an open slot for an active entry and mark the entry notified.

        Both rows change in one transaction. If the entry is no longer active
        the slot change is rolled back too.
        """
        duration = self.settings.hold_duration_minutes if duration_minutes is None else duration_minutes
        if not MIN_HOLD_MINUTES <= duration <= MAX_HOLD_MINUTES:
            raise BusinessRuleError(
                f"Hold duration must be between {MIN_HOLD_MINUTES} and {MAX_HOLD_MINUTES} minutes"
            )

        slot = self.get_slot(tenant_id, slot_id)
        self._get_entry(tenant_id, entry_id)

        now = self.clock.now()
        expires_at = now + timedelta(minutes=duration)

        held = self.slots.conditional_update_status(
            tenant_id, slot_id, SlotStatus.OPEN, SlotStatus.HELD,
            now=now,
            hold_expires_at=expires_at,
            held_entry_id=entry_id,
        )
        if not held:
            self.db.rollback()
            return self.conflict(slot, SlotStatus.HELD, SLOT_STATE_CONFLICT, entry_id)

        notified = self.entries.update_status(
            tenant_id, entry_id, WaitlistStatus.ACTIVE, WaitlistStatus.NOTIFIED, now=now
        )
        if not notified:
            self.db.rollback()
            return TransitionResult(
                success=False,
                slot_id=slot_id,
                to_status=SlotStatus.HELD,
                from_status=SlotStatus.OPEN,
                entry_id=entry_id,
                conflict=True,
                reason=ENTRY_STATE_CONFLICT,
            )

        audit_service.log_action(
            self.db, tenant_id, "slot.held", "slot", slot_id,
            details={"entry_id": entry_id, "hold_expires_at": expires_at.isoformat()},
            now=now,
        )
        self.db.commit()

        logger.info(
            f"Slot {slot_id} held for entry {entry_id} until {expires_at.isoformat()}",
            extra={"tenant_id": tenant_id, "slot_id": slot_id, "entry_id": entry_id},
        )
        return TransitionResult(
            success=True,
            slot_id=slot_id,
            to_status=SlotStatus.HELD,
            from_status=SlotStatus.OPEN,
            entry_id=entry_id,
            hold_expires_at=expires_at,
        )

    def release(
        self,
        tenant_id: int,
        slot_id: int,
        expected_entry_id: int,
        expired_only: bool = False,
        commit: bool = True,
    ) -> TransitionResult:
        """Return a held slot to open if it is still held for ``expected_entry_id``.

        With ``expired_only`` the hold must also have reached its expiry.
        Pass ``commit=False`` to join a larger transaction.
        """
        now = self.clock.now()
        released = self.slots.conditional_update_status(
            tenant_id, slot_id, SlotStatus.HELD, SlotStatus.OPEN,
            now=now,
            expected_entry_id=expected_entry_id,
            expires_at_or_before=now if expired_only else None,
            hold_expires_at=None,
            held_entry_id=None,
        )
        if not released:
            slot = self.get_slot(tenant_id, slot_id)
            return self.conflict(slot, SlotStatus.OPEN, NOT_HELD_FOR_ENTRY, expected_entry_id)

        audit_service.log_action(
            self.db, tenant_id, "slot.released", "slot", slot_id,
            details={"entry_id": expected_entry_id, "expired": expired_only},
            now=now,
        )
        if commit:
            self.db.commit()

        logger.info(
            f"Slot {slot_id} released from entry {expected_entry_id}",
            extra={"tenant_id": tenant_id, "slot_id": slot_id, "entry_id": expected_entry_id},
        )
        return TransitionResult(
            success=True,
            slot_id=slot_id,
            to_status=SlotStatus.OPEN,
            from_status=SlotStatus.HELD,
            entry_id=expected_entry_id,
        )

    def confirm(self, tenant_id: int, slot_id: int, entry_id: int) -> TransitionResult:
        """Book a held slot for the entry holding it.

        Succeeds only while ``now < hold_expires_at``. A late confirmation
        returns ``reason="expired"`` and leaves the rows untouched so the
        caller can cascade.
        """
        slot = self.get_slot(tenant_id, slot_id)
        entry = self._get_entry(tenant_id, entry_id)
        now = self.clock.now()

        if not slot.is_held_for(entry_id):
            return self.conflict(slot, SlotStatus.BOOKED, NOT_HELD_FOR_ENTRY, entry_id)
        if now >= slot.hold_expires_at:
            return self.conflict(slot, SlotStatus.BOOKED, HOLD_EXPIRED, entry_id)

        booked = self.slots.conditional_update_status(
            tenant_id, slot_id, SlotStatus.HELD, SlotStatus.BOOKED,
            now=now,
            expected_entry_id=entry_id,
            expires_after=now,
            hold_expires_at=None,
            held_entry_id=None,
        )
        if not booked:
            self.db.rollback()
            return self.conflict(self.get_slot(tenant_id, slot_id), SlotStatus.BOOKED, SLOT_STATE_CONFLICT, entry_id)

        confirmed = self.entries.update_status(
            tenant_id, entry_id, WaitlistStatus.NOTIFIED, WaitlistStatus.CONFIRMED, now=now
        )
        if not confirmed:
            self.db.rollback()
            return self.conflict(self.get_slot(tenant_id, slot_id), SlotStatus.BOOKED, ENTRY_STATE_CONFLICT, entry_id)

        booking = Booking(
            tenant_id=tenant_id,
            slot_id=slot_id,
            waitlist_entry_id=entry_id,
            customer_name=entry.customer_name,
            customer_phone=entry.phone,
            customer_email=entry.email,
            source=BookingSource.WAITLIST.value,
            confirmed_at=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(booking)
        self.db.flush()
        audit_service.log_action(
            self.db, tenant_id, "slot.booked", "slot", slot_id,
            details={"entry_id": entry_id, "booking_id": booking.id},
            now=now,
        )
        self.db.commit()

        logger.info(
            f"Slot {slot_id} booked by entry {entry_id}",
            extra={"tenant_id": tenant_id, "slot_id": slot_id, "entry_id": entry_id},
        )
        return TransitionResult(
            success=True,
            slot_id=slot_id,
            to_status=SlotStatus.BOOKED,
            from_status=SlotStatus.HELD,
            entry_id=entry_id,
            booking_id=booking.id,
        )

    def cancel(self, tenant_id: int, slot_id: int, actor_type: str = "system") -> TransitionResult:
        """Cancel an open or held slot. A holding entry is removed with reason ``slot_canceled``."""
        slot = self.get_slot(tenant_id, slot_id)
        current = SlotStatus(slot.status)
        if not can_transition(current, SlotStatus.CANCELED):
            return self.conflict(slot, SlotStatus.CANCELED, SLOT_STATE_CONFLICT)

        now = self.clock.now()
        holder = slot.held_entry_id if current == SlotStatus.HELD else None
        guard = {"expected_entry_id": holder} if current == SlotStatus.HELD else {}
        canceled = self.slots.conditional_update_status(
            tenant_id, slot_id, current, SlotStatus.CANCELED,
            now=now,
            hold_expires_at=None,
            held_entry_id=None,
            **guard,
        )
        if not canceled:
            self.db.rollback()
            return self.conflict(self.get_slot(tenant_id, slot_id), SlotStatus.CANCELED, SLOT_STATE_CONFLICT)

        if holder is not None:
            self.entries.update_status(
                tenant_id, holder, WaitlistStatus.NOTIFIED, WaitlistStatus.REMOVED,
                now=now, removal_reason="slot_canceled",
            )
        audit_service.log_action(
            self.db, tenant_id, "slot.canceled", "slot", slot_id,
            details={"previous_status": current.value, "entry_id": holder},
            actor_type=actor_type, now=now,
        )
        self.db.commit()

        logger.info(f"Slot {slot_id} canceled", extra={"tenant_id": tenant_id, "slot_id": slot_id})
        return TransitionResult(
            success=True,
            slot_id=slot_id,
            to_status=SlotStatus.CANCELED,
            from_status=current,
            entry_id=holder,
        )

    def open_slot(
        self,
        tenant_id: int,
        slot_id: int,
        duration_minutes: Optional[int] = None,
    ) -> Optional[Offer]:
        """Hold an open slot for the best eligible candidate.

        Candidates that stopped being active are skipped; a slot-level
        conflict ends the attempt. Returns None when the slot is not open,
        has already started, or nobody is eligible. Dispatch is left to the
        caller.
        """
        slot = self.get_slot(tenant_id, slot_id)
        if slot.status != SlotStatus.OPEN.value:
            self.conflict(slot, SlotStatus.HELD, SLOT_STATE_CONFLICT)
            return None
        if slot.start_time <= self.clock.now():
            logger.debug(
                f"Slot {slot_id} has already started; not offering",
                extra={"tenant_id": tenant_id, "slot_id": slot_id},
            )
            return None

        for candidate in self.matcher.find_candidates(slot):
            result = self.hold(tenant_id, slot_id, candidate.entry.id, duration_minutes)
            if result.success:
                return Offer(
                    slot=self.get_slot(tenant_id, slot_id),
                    entry=self._get_entry(tenant_id, candidate.entry.id),
                    score=candidate.score,
                    hold_expires_at=result.hold_expires_at,
                )
            if result.reason != ENTRY_STATE_CONFLICT:
                return None

        logger.info(
            f"No eligible candidates for slot {slot_id}",
            extra={"tenant_id": tenant_id, "slot_id": slot_id},
        )
        return None
