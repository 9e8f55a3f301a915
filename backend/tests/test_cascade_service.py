"""Tests for the cascade orchestrator."""

from datetime import timedelta

import pytest

from slotkeeper.core.errors import NotFoundError
from slotkeeper.models.slot import Slot, SlotStatus
from slotkeeper.models.waitlist import CascadeReason, WaitlistEntry, WaitlistStatus
from slotkeeper.services.background_workers import TaskStatus
from slotkeeper.services.cascade_service import CascadeService
from slotkeeper.services.job_scheduler import JobType
from slotkeeper.services.slot_state_machine import NOT_HELD_FOR_ENTRY


def _reload(db, model, pk):
    db.expire_all()
    return db.get(model, pk)


@pytest.fixture
def cascades(db_session, dispatcher, clock, test_settings, manager):
    return CascadeService(db_session, dispatcher, clock=clock, settings=test_settings, manager=manager)


class TestOfferSlot:
    """Tests for offering an open slot."""

    @pytest.mark.asyncio
    async def test_offer_holds_and_notifies_best_candidate(self, cascades, dispatcher, make_slot, make_entry):
        slot = make_slot()
        make_entry("Regular")
        vip = make_entry("VIP", vip=True)

        result = await cascades.offer_slot(slot.tenant_id, slot.id)

        assert result.next_candidate_found
        assert result.notified
        assert result.entry_id == vip.id
        assert result.candidate_name == "VIP"
        assert dispatcher.sent == [(vip.id, slot.id)]

    @pytest.mark.asyncio
    async def test_no_candidates(self, cascades, dispatcher, make_slot):
        slot = make_slot()

        result = await cascades.offer_slot(slot.tenant_id, slot.id)

        assert not result.next_candidate_found
        assert dispatcher.sent == []

    @pytest.mark.asyncio
    async def test_failed_dispatch_keeps_hold_and_schedules_retry(
        self, cascades, db_session, dispatcher, manager, clock, make_slot, make_entry
    ):
        slot, entry = make_slot(), make_entry()
        dispatcher.fail_sends = True

        result = await cascades.offer_slot(slot.tenant_id, slot.id)

        assert result.next_candidate_found
        assert not result.notified
        assert _reload(db_session, Slot, slot.id).is_held_for(entry.id)

        [retry] = manager.list_tasks(task_type=JobType.RETRY_FAILED_NOTIFICATION.value)
        assert retry.payload["attempt"] == 1
        assert retry.payload["notification_id"] == result.notification_id
        assert retry.scheduled_at == clock.now() + timedelta(seconds=1)


class TestHandleCascade:
    """Tests for moving a slot to the next candidate."""

    @pytest.mark.asyncio
    async def test_decline_moves_slot_to_next_candidate(
        self, cascades, db_session, dispatcher, make_slot, make_entry
    ):
        slot = make_slot()
        first = make_entry("First", vip=True)
        second = make_entry("Second")
        await cascades.offer_slot(slot.tenant_id, slot.id)

        result = await cascades.handle_cascade(slot.tenant_id, slot.id, first.id, CascadeReason.DECLINED)

        assert result.entry_id == second.id
        assert result.notified
        first = _reload(db_session, WaitlistEntry, first.id)
        assert first.status == WaitlistStatus.REMOVED.value
        assert first.removal_reason == "declined"
        assert _reload(db_session, Slot, slot.id).is_held_for(second.id)
        assert dispatcher.notified_entry_ids == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_repeated_cascade_is_a_no_op(self, cascades, db_session, dispatcher, make_slot, make_entry):
        slot = make_slot()
        first = make_entry("First", vip=True)
        second = make_entry("Second")
        make_entry("Third")
        await cascades.offer_slot(slot.tenant_id, slot.id)
        await cascades.handle_cascade(slot.tenant_id, slot.id, first.id, CascadeReason.DECLINED)

        again = await cascades.handle_cascade(slot.tenant_id, slot.id, first.id, CascadeReason.DECLINED)

        assert not again.next_candidate_found
        assert len(dispatcher.sent) == 2
        assert _reload(db_session, Slot, slot.id).is_held_for(second.id)

    @pytest.mark.asyncio
    async def test_last_candidate_leaves_slot_open(self, cascades, db_session, make_slot, make_entry):
        slot, only = make_slot(), make_entry()
        await cascades.offer_slot(slot.tenant_id, slot.id)

        result = await cascades.handle_cascade(slot.tenant_id, slot.id, only.id, CascadeReason.DECLINED)

        assert not result.next_candidate_found
        slot = _reload(db_session, Slot, slot.id)
        assert slot.status == SlotStatus.OPEN.value
        assert slot.held_entry_id is None

    @pytest.mark.asyncio
    async def test_cascade_for_booked_slot_does_nothing(
        self, cascades, db_session, dispatcher, make_slot, make_entry
    ):
        slot = make_slot()
        holder = make_entry("Holder", vip=True)
        make_entry("Next")
        await cascades.offer_slot(slot.tenant_id, slot.id)
        assert (await cascades.confirm_offer(slot.tenant_id, slot.id, holder.id)).success

        result = await cascades.handle_cascade(slot.tenant_id, slot.id, holder.id, CascadeReason.DECLINED)

        assert not result.next_candidate_found
        assert _reload(db_session, Slot, slot.id).status == SlotStatus.BOOKED.value
        assert _reload(db_session, WaitlistEntry, holder.id).status == WaitlistStatus.CONFIRMED.value

    @pytest.mark.asyncio
    async def test_unknown_entry(self, cascades, make_slot):
        slot = make_slot()
        with pytest.raises(NotFoundError):
            await cascades.handle_cascade(slot.tenant_id, slot.id, 9999, CascadeReason.EXPIRED)


class TestResponses:
    """Tests for confirm and decline entry points."""

    @pytest.mark.asyncio
    async def test_decline_schedules_cascade(self, cascades, manager, make_slot, make_entry):
        slot, entry = make_slot(), make_entry()
        await cascades.offer_slot(slot.tenant_id, slot.id)

        result = await cascades.decline_offer(slot.tenant_id, slot.id, entry.id)

        assert result.accepted
        task = manager.get_task_status(result.job_id)
        assert task.task_type == JobType.NOTIFICATION_CASCADE.value
        assert task.payload == {
            "tenant_id": slot.tenant_id,
            "slot_id": slot.id,
            "previous_entry_id": entry.id,
            "reason": "declined",
        }
        assert task.status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_decline_by_non_holder_rejected(self, cascades, manager, make_slot, make_entry):
        slot, holder, other = make_slot(), make_entry(vip=True), make_entry()
        await cascades.offer_slot(slot.tenant_id, slot.id)

        result = await cascades.decline_offer(slot.tenant_id, slot.id, other.id)

        assert not result.accepted
        assert result.transition.reason == NOT_HELD_FOR_ENTRY
        assert manager.list_tasks() == []

    @pytest.mark.asyncio
    async def test_late_confirm_schedules_expiry_cascade(self, cascades, manager, clock, make_slot, make_entry):
        slot, entry = make_slot(), make_entry()
        await cascades.offer_slot(slot.tenant_id, slot.id)
        clock.advance(minutes=10)

        result = await cascades.confirm_offer(slot.tenant_id, slot.id, entry.id)

        assert result.expired
        [task] = manager.list_tasks(task_type=JobType.NOTIFICATION_CASCADE.value)
        assert task.payload["reason"] == "expired"
