"""Tests for the waitlist job handlers run through the worker manager."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from slotkeeper.models.booking import AuditLogEntry
from slotkeeper.models.notification import Notification, NotificationStatus
from slotkeeper.models.slot import Slot, SlotStatus
from slotkeeper.models.tenant import Service, Staff, Tenant
from slotkeeper.models.waitlist import CascadeReason, WaitlistEntry, WaitlistStatus
from slotkeeper.repositories.waitlist_repository import WaitlistRepository
from slotkeeper.services import job_scheduler
from slotkeeper.services.background_workers import TaskStatus
from slotkeeper.services.cascade_service import CascadeService
from slotkeeper.services.job_scheduler import JobType
from slotkeeper.services.slot_state_machine import SlotStateMachine


def _reload(db, model, pk):
    db.expire_all()
    return db.get(model, pk)


@pytest.fixture
def cascades(db_session, dispatcher, clock, test_settings, manager):
    return CascadeService(db_session, dispatcher, clock=clock, settings=test_settings, manager=manager)


class TestExpiredHoldSweep:
    """Tests for the process_expired_holds job."""

    @pytest.mark.asyncio
    async def test_expired_hold_cascades_to_next_candidate(
        self, handlers, manager, session_factory, cascades, db_session, dispatcher, clock,
        make_slot, make_entry,
    ):
        """Hold at T for 10 minutes, no response, sweep at T+11 re-holds for the next candidate."""
        slot = make_slot()
        first = make_entry("First", vip=True)
        second = make_entry("Second")
        await cascades.offer_slot(slot.tenant_id, slot.id)
        clock.advance(minutes=11)

        job_id = await job_scheduler.schedule_expired_hold_sweep(manager=manager)
        await manager.run_pending(session_factory)

        task = manager.get_task_status(job_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.result["processed_tenants"] == 1
        assert task.result["released_slots"] == 1
        assert task.result["cascade_notifications"] == 1
        assert task.result["errors"] == []

        first = _reload(db_session, WaitlistEntry, first.id)
        assert first.status == WaitlistStatus.REMOVED.value
        assert first.removal_reason == CascadeReason.EXPIRED.value
        slot = _reload(db_session, Slot, slot.id)
        assert slot.is_held_for(second.id)
        assert slot.hold_expires_at == clock.now() + timedelta(minutes=10)
        assert dispatcher.notified_entry_ids == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_transient_error_keeps_hold_and_entry_together(
        self, handlers, manager, session_factory, cascades, db_session, dispatcher, clock,
        make_slot, make_entry, monkeypatch,
    ):
        """A failed entry update leaves the expired hold in place for the next sweep."""
        slot = make_slot()
        first = make_entry("First", vip=True)
        second = make_entry("Second")
        await cascades.offer_slot(slot.tenant_id, slot.id)
        clock.advance(minutes=11)

        update_status = WaitlistRepository.update_status
        calls = []

        def flaky_update_status(self, *args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError("UPDATE waitlist_entries", {}, Exception("database is locked"))
            return update_status(self, *args, **kwargs)

        monkeypatch.setattr(WaitlistRepository, "update_status", flaky_update_status)

        job_id = await job_scheduler.schedule_expired_hold_sweep(manager=manager)
        await manager.run_pending(session_factory)

        task = manager.get_task_status(job_id)
        assert task.result["released_slots"] == 0
        assert len(task.result["errors"]) == 1
        assert _reload(db_session, WaitlistEntry, first.id).status == WaitlistStatus.NOTIFIED.value
        assert _reload(db_session, Slot, slot.id).is_held_for(first.id)

        job_id = await job_scheduler.schedule_expired_hold_sweep(manager=manager)
        await manager.run_pending(session_factory)

        assert manager.get_task_status(job_id).result["released_slots"] == 1
        assert _reload(db_session, WaitlistEntry, first.id).status == WaitlistStatus.REMOVED.value
        assert _reload(db_session, Slot, slot.id).is_held_for(second.id)
        assert dispatcher.notified_entry_ids == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_unexpired_hold_is_left_alone(
        self, handlers, db_session, cascades, clock, make_slot, make_entry
    ):
        slot, entry = make_slot(), make_entry()
        await cascades.offer_slot(slot.tenant_id, slot.id)
        clock.advance(minutes=9)

        result = await handlers.sweep_expired_holds(db_session)

        assert result.released_slots == 0
        assert _reload(db_session, Slot, slot.id).is_held_for(entry.id)

    @pytest.mark.asyncio
    async def test_expired_hold_without_next_candidate_reopens_slot(
        self, handlers, db_session, cascades, clock, make_slot, make_entry
    ):
        slot, entry = make_slot(), make_entry()
        await cascades.offer_slot(slot.tenant_id, slot.id)
        clock.advance(minutes=11)

        result = await handlers.sweep_expired_holds(db_session)

        assert result.released_slots == 1
        assert result.cascade_notifications == 0
        assert _reload(db_session, Slot, slot.id).status == SlotStatus.OPEN.value
        assert _reload(db_session, WaitlistEntry, entry.id).status == WaitlistStatus.REMOVED.value

    @pytest.mark.asyncio
    async def test_sweep_twice_notifies_once(
        self, handlers, db_session, cascades, dispatcher, clock, make_slot, make_entry
    ):
        slot = make_slot()
        make_entry("First", vip=True)
        make_entry("Second")
        await cascades.offer_slot(slot.tenant_id, slot.id)
        clock.advance(minutes=11)

        await handlers.sweep_expired_holds(db_session)
        second_run = await handlers.sweep_expired_holds(db_session)

        assert second_run.released_slots == 0
        assert second_run.reoffered_slots == 0
        assert len(dispatcher.sent) == 2

    @pytest.mark.asyncio
    async def test_open_future_slots_are_offered(self, handlers, db_session, dispatcher, make_slot, make_entry):
        slot, entry = make_slot(), make_entry()
        make_slot(hours=-1)  # already started, never offered

        result = await handlers.sweep_expired_holds(db_session)

        assert result.reoffered_slots == 1
        assert dispatcher.sent == [(entry.id, slot.id)]

    @pytest.mark.asyncio
    async def test_failing_tenant_does_not_stop_the_sweep(
        self, handlers, db_session, dispatcher, tenant, make_slot, make_entry
    ):
        other = Tenant(name="Second Studio")
        db_session.add(other)
        db_session.commit()
        other_staff = Staff(tenant_id=other.id, name="Kim")
        other_service = Service(tenant_id=other.id, name="Massage", duration_minutes=60)
        db_session.add_all([other_staff, other_service])
        db_session.commit()

        make_slot()
        make_entry()
        healthy_slot = make_slot(tenant_id=other.id, staff_id=other_staff.id, service_id=other_service.id)
        healthy_entry = make_entry(tenant_id=other.id, service_id=other_service.id)

        original_send = dispatcher.send

        async def send(db, candidate, slot, service, staff, tenant_name):
            if slot.tenant_id == tenant.id:
                raise RuntimeError("database connection lost")
            return await original_send(db, candidate, slot, service, staff, tenant_name)

        dispatcher.send = send

        result = await handlers.sweep_expired_holds(db_session)

        assert result.processed_tenants == 1
        assert result.errors == [f"Tenant {tenant.id}: database connection lost"]
        assert dispatcher.sent == [(healthy_entry.id, healthy_slot.id)]

    @pytest.mark.asyncio
    async def test_inactive_tenants_are_skipped(self, handlers, db_session, tenant, make_slot, make_entry):
        make_slot()
        make_entry()
        tenant.active = False
        db_session.commit()

        result = await handlers.sweep_expired_holds(db_session)

        assert result.processed_tenants == 0
        assert result.reoffered_slots == 0


class TestNotificationCascadeJob:
    @pytest.mark.asyncio
    async def test_declined_offer_cascades_through_queue(
        self, handlers, manager, session_factory, cascades, db_session, make_slot, make_entry
    ):
        slot = make_slot()
        first = make_entry("First", vip=True)
        second = make_entry("Second")
        await cascades.offer_slot(slot.tenant_id, slot.id)
        decline = await cascades.decline_offer(slot.tenant_id, slot.id, first.id)

        processed = await manager.run_pending(session_factory)

        assert processed == 1
        task = manager.get_task_status(decline.job_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.result["entry_id"] == second.id
        assert _reload(db_session, Slot, slot.id).is_held_for(second.id)

    @pytest.mark.asyncio
    async def test_duplicate_cascade_jobs_notify_once(
        self, handlers, manager, session_factory, cascades, dispatcher, make_slot, make_entry
    ):
        slot = make_slot()
        first = make_entry("First", vip=True)
        make_entry("Second")
        make_entry("Third")
        await cascades.offer_slot(slot.tenant_id, slot.id)
        for _ in range(2):
            await job_scheduler.schedule_cascade(
                slot.tenant_id, slot.id, first.id, CascadeReason.DECLINED, manager=manager
            )

        await manager.run_pending(session_factory)

        assert len(dispatcher.sent) == 2

    @pytest.mark.asyncio
    async def test_missing_entry_fails_without_retry(self, handlers, manager, session_factory, clock, make_slot):
        slot = make_slot()
        job_id = await job_scheduler.schedule_cascade(
            slot.tenant_id, slot.id, 9999, CascadeReason.DECLINED, manager=manager
        )

        for _ in range(5):
            await manager.run_pending(session_factory)
            clock.advance(seconds=60)

        task = manager.get_task_status(job_id)
        assert task.status == TaskStatus.FAILED
        assert task.attempts_made == 1
        assert "not found" in task.error_message


class TestNotificationRetry:
    """Tests for the retry_failed_notification job."""

    @pytest.mark.asyncio
    async def test_three_retries_then_abandoned_without_cascade(
        self, handlers, manager, session_factory, cascades, db_session, dispatcher, alerts, clock,
        make_slot, make_entry,
    ):
        slot = make_slot()
        entry = make_entry("Unreachable", vip=True)
        make_entry("Next in line")
        dispatcher.fail_sends = True
        dispatcher.fail_retries = True
        start = clock.now()

        offer = await cascades.offer_slot(slot.tenant_id, slot.id)
        assert not offer.notified

        # Nothing is due before the first delay
        assert await manager.run_pending(session_factory) == 0
        for delay in (1, 2, 4):
            clock.advance(seconds=delay)
            assert await manager.run_pending(session_factory) == 1

        assert [(attempt, at - start) for _, attempt, at in dispatcher.retries] == [
            (1, timedelta(seconds=1)),
            (2, timedelta(seconds=3)),
            (3, timedelta(seconds=7)),
        ]
        record = _reload(db_session, Notification, offer.notification_id)
        assert record.status == NotificationStatus.ABANDONED.value
        assert record.retry_count == 3

        # The hold stays until it expires naturally; nothing else was queued
        assert _reload(db_session, Slot, slot.id).is_held_for(entry.id)
        assert manager.list_tasks(task_type=JobType.NOTIFICATION_CASCADE.value) == []
        assert len(dispatcher.sent) == 1
        clock.advance(minutes=5)
        assert await manager.run_pending(session_factory) == 0

        [alert] = alerts.get_recent()
        assert alert["level"] == "warning"
        assert alert["title"] == "Notification abandoned"
        assert alert["tenant_id"] == slot.tenant_id
        assert db_session.query(AuditLogEntry).filter_by(action="notification.abandoned").count() == 1

    @pytest.mark.asyncio
    async def test_successful_retry_stops_the_chain(
        self, handlers, manager, session_factory, cascades, db_session, dispatcher, alerts, clock,
        make_slot, make_entry,
    ):
        slot, _ = make_slot(), make_entry()
        dispatcher.fail_sends = True

        offer = await cascades.offer_slot(slot.tenant_id, slot.id)
        clock.advance(seconds=1)
        await manager.run_pending(session_factory)
        clock.advance(minutes=1)

        assert await manager.run_pending(session_factory) == 0
        assert len(dispatcher.retries) == 1
        assert _reload(db_session, Notification, offer.notification_id).status == NotificationStatus.SENT.value
        assert alerts.get_recent() == []

    @pytest.mark.asyncio
    async def test_retry_skipped_when_hold_is_gone(
        self, handlers, manager, session_factory, cascades, db_session, dispatcher, clock,
        make_slot, make_entry,
    ):
        slot, _ = make_slot(), make_entry()
        dispatcher.fail_sends = True
        await cascades.offer_slot(slot.tenant_id, slot.id)
        SlotStateMachine(db_session, clock=clock).cancel(slot.tenant_id, slot.id)

        clock.advance(seconds=1)
        await manager.run_pending(session_factory)

        [task] = manager.list_tasks(task_type=JobType.RETRY_FAILED_NOTIFICATION.value)
        assert task.result == {"skipped": True, "reason": "slot no longer held for this entry"}
        assert dispatcher.retries == []

    @pytest.mark.asyncio
    async def test_duplicate_attempt_is_skipped(
        self, handlers, manager, session_factory, cascades, dispatcher, clock, make_slot, make_entry
    ):
        slot, _ = make_slot(), make_entry()
        dispatcher.fail_sends = True
        dispatcher.fail_retries = True
        offer = await cascades.offer_slot(slot.tenant_id, slot.id)
        await job_scheduler.schedule_notification_retry(
            slot.tenant_id, offer.notification_id, attempt=1, delay_seconds=1, manager=manager
        )

        clock.advance(seconds=1)
        await manager.run_pending(session_factory)

        assert [attempt for _, attempt, _ in dispatcher.retries] == [1]


class TestMaintenanceJobs:
    def _notification(self, db, slot, entry, status, created_at):
        record = Notification(
            tenant_id=slot.tenant_id,
            waitlist_entry_id=entry.id,
            slot_id=slot.id,
            channel="sms",
            recipient=entry.phone,
            message="offer",
            status=status.value,
            created_at=created_at,
            updated_at=created_at,
        )
        db.add(record)
        db.commit()
        return record

    @pytest.mark.asyncio
    async def test_cleanup_removes_old_terminal_records(
        self, handlers, manager, session_factory, db_session, clock, tenant, make_slot, make_entry
    ):
        slot, entry = make_slot(), make_entry()
        old = clock.now() - timedelta(days=31)
        recent = clock.now() - timedelta(days=1)
        self._notification(db_session, slot, entry, NotificationStatus.SENT, old)
        self._notification(db_session, slot, entry, NotificationStatus.ABANDONED, old)
        kept_pending = self._notification(db_session, slot, entry, NotificationStatus.PENDING, old)
        kept_recent = self._notification(db_session, slot, entry, NotificationStatus.SENT, recent)
        db_session.add(AuditLogEntry(
            tenant_id=tenant.id, action="slot.held", resource_type="slot",
            resource_id=str(slot.id), created_at=old,
        ))
        db_session.commit()

        job_id = await job_scheduler.schedule_cleanup(30, manager=manager)
        await manager.run_pending(session_factory)

        result = manager.get_task_status(job_id).result
        assert result["deleted_notifications"] == 2
        assert result["deleted_audit_logs"] == 1
        db_session.expire_all()
        remaining = {n.id for n in db_session.query(Notification).all()}
        assert remaining == {kept_pending.id, kept_recent.id}

    @pytest.mark.asyncio
    async def test_recalculate_priority_scores_job(
        self, handlers, manager, session_factory, db_session, clock, make_entry
    ):
        entry = make_entry()
        clock.advance(days=14)

        job_id = await job_scheduler.schedule_score_recalculation(manager=manager)
        await manager.run_pending(session_factory)

        assert manager.get_task_status(job_id).result == {"updated_entries": 1}
        assert _reload(db_session, WaitlistEntry, entry.id).priority_score == 20 + 15 + 10 + 2
