"""
Cascade Orchestrator

Moves a slot from one candidate to the next after a decline or an expired
hold, and dispatches the resulting offers.

Re-running a cascade for the same (slot, previous entry) pair is a no-op:
the first run consumes the previous entry's offer (notified -> removed), so
later runs find nothing to consume and stop unless they are recovering a
hold that was left in place by a crashed run.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional

from sqlalchemy.orm import Session

from slotkeeper.core.clock import Clock, system_clock
from slotkeeper.core.config import Settings, settings as default_settings
from slotkeeper.core.errors import NotFoundError
from slotkeeper.models.slot import SlotStatus
from slotkeeper.models.waitlist import CascadeReason, WaitlistStatus
from slotkeeper.repositories.waitlist_repository import WaitlistRepository
from slotkeeper.services import audit_service, job_scheduler
from slotkeeper.services.background_workers import BackgroundWorkerManager
from slotkeeper.services.notification_service import NotificationDispatcher, dispatch_offer
from slotkeeper.services.slot_state_machine import NOT_HELD_FOR_ENTRY, Offer, SlotStateMachine, TransitionResult

logger = logging.getLogger(__name__)


@dataclass
class CascadeResult:
    next_candidate_found: bool
    notified: bool
    candidate_name: Optional[str] = None
    entry_id: Optional[int] = None
    notification_id: Optional[int] = None
    error: Optional[str] = None
    released: bool = False


@dataclass
class DeclineResult:
    accepted: bool
    job_id: Optional[str] = None
    transition: Optional[TransitionResult] = None


class CascadeService:
    """Offers slots to candidates and reacts to their responses."""

    def __init__(
        self,
        db: Session,
        dispatcher: NotificationDispatcher,
        clock: Clock = system_clock,
        settings: Optional[Settings] = None,
        manager: Optional[BackgroundWorkerManager] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock
        self.settings = settings or default_settings
        self.manager = manager
        self.state_machine = SlotStateMachine(db, clock=clock, settings=self.settings)
        self.entries = WaitlistRepository(db)

    async def _dispatch(self, offer: Offer) -> CascadeResult:
        """Notify the held candidate. A failed send keeps the hold and schedules retry attempt 1."""
        result = await dispatch_offer(self.db, self.dispatcher, offer.entry, offer.slot)
        context = {"tenant_id": offer.slot.tenant_id, "slot_id": offer.slot.id, "entry_id": offer.entry.id}

        if not result.success:
            logger.warning(f"Offer dispatch failed: {result.error}", extra=context)
            if result.notification_id is not None:
                await job_scheduler.schedule_notification_retry(
                    offer.slot.tenant_id,
                    result.notification_id,
                    attempt=1,
                    delay_seconds=self.settings.notification_retry_base_delay_seconds,
                    manager=self.manager,
                )
        else:
            logger.info(f"Offer sent to entry {offer.entry.id}", extra=context)

        return CascadeResult(
            next_candidate_found=True,
            notified=result.success,
            candidate_name=offer.entry.customer_name,
            entry_id=offer.entry.id,
            notification_id=result.notification_id,
            error=result.error,
        )

    async def offer_slot(
        self,
        tenant_id: int,
        slot_id: int,
        duration_minutes: Optional[int] = None,
    ) -> CascadeResult:
        """Hold an open slot for the best candidate and notify them."""
        offer = self.state_machine.open_slot(tenant_id, slot_id, duration_minutes)
        if offer is None:
            return CascadeResult(next_candidate_found=False, notified=False)
        return await self._dispatch(offer)

    async def handle_cascade(
        self,
        tenant_id: int,
        slot_id: int,
        previous_entry_id: int,
        reason: CascadeReason,
        expired_only: bool = False,
    ) -> CascadeResult:
        """Retire the previous offer and offer the slot to the next candidate.

        The entry update and the release of its hold commit together. With
        ``expired_only`` (the sweep) the release also requires the hold to
        have reached its expiry. ``released`` on the result tells whether
        this call returned the slot to open.
        """
        context = {"tenant_id": tenant_id, "slot_id": slot_id, "entry_id": previous_entry_id}
        slot = self.state_machine.get_slot(tenant_id, slot_id)
        if self.entries.get(tenant_id, previous_entry_id) is None:
            raise NotFoundError("Waitlist entry", previous_entry_id, tenant_id)

        now = self.clock.now()
        was_open = slot.status == SlotStatus.OPEN.value
        was_held_for_previous = slot.is_held_for(previous_entry_id)

        entry_resolved = self.entries.update_status(
            tenant_id, previous_entry_id, WaitlistStatus.NOTIFIED, WaitlistStatus.REMOVED,
            now=now, removal_reason=reason.value,
        )
        released = False
        if was_held_for_previous:
            released = self.state_machine.release(
                tenant_id, slot_id, previous_entry_id, expired_only=expired_only, commit=False
            ).success

        if not (released or (entry_resolved and was_open)):
            self.db.rollback()
            logger.info(
                f"Cascade for slot {slot_id} skipped: offer already resolved",
                extra=context,
            )
            return CascadeResult(next_candidate_found=False, notified=False)

        if entry_resolved:
            audit_service.log_action(
                self.db, tenant_id, "entry.removed", "waitlist_entry", previous_entry_id,
                details={"reason": reason.value, "slot_id": slot_id}, now=now,
            )
        self.db.commit()
        logger.info(f"Cascading slot {slot_id} after {reason.value}", extra=context)

        result = await self.offer_slot(tenant_id, slot_id)
        return replace(result, released=released)

    async def confirm_offer(self, tenant_id: int, slot_id: int, entry_id: int) -> TransitionResult:
        """Confirm a held slot. A late confirmation is treated as a miss and cascades."""
        result = self.state_machine.confirm(tenant_id, slot_id, entry_id)
        if result.expired:
            await job_scheduler.schedule_cascade(
                tenant_id, slot_id, entry_id, CascadeReason.EXPIRED, manager=self.manager
            )
        return result

    async def decline_offer(self, tenant_id: int, slot_id: int, entry_id: int) -> DeclineResult:
        """Schedule a cascade for a declined offer if the slot is still held for the entry."""
        slot = self.state_machine.get_slot(tenant_id, slot_id)
        if not slot.is_held_for(entry_id):
            return DeclineResult(
                accepted=False,
                transition=self.state_machine.conflict(slot, SlotStatus.OPEN, NOT_HELD_FOR_ENTRY, entry_id),
            )
        job_id = await job_scheduler.schedule_cascade(
            tenant_id, slot_id, entry_id, CascadeReason.DECLINED, manager=self.manager
        )
        return DeclineResult(accepted=True, job_id=job_id)
