"""Tests for candidate matching."""

from datetime import timedelta

from slotkeeper.models.waitlist import WaitlistStatus
from slotkeeper.services.matcher_service import MatcherService


class TestMatcherService:
    """Eligibility filtering and ranking."""

    def test_ranks_by_score_descending(self, db_session, clock, make_slot, make_entry):
        slot = make_slot()
        regular = make_entry("Regular")
        vip = make_entry("VIP", vip=True)

        ranked = MatcherService(db_session, clock=clock).find_candidates(slot)

        assert [c.entry.id for c in ranked] == [vip.id, regular.id]
        assert ranked[0].score == 60
        assert ranked[1].score == 45

    def test_ties_broken_by_oldest_entry_then_id(self, db_session, clock, make_slot, make_entry):
        slot = make_slot()
        first = make_entry("First", created_days_ago=2)
        second = make_entry("Second", created_days_ago=2)
        oldest = make_entry("Oldest", created_days_ago=3)

        ranked = MatcherService(db_session, clock=clock).find_candidates(slot)

        assert [c.entry.id for c in ranked] == [oldest.id, first.id, second.id]

    def test_excludes_non_active_entries(self, db_session, clock, make_slot, make_entry):
        slot = make_slot()
        make_entry("Notified", status=WaitlistStatus.NOTIFIED)
        make_entry("Removed", status=WaitlistStatus.REMOVED)
        make_entry("Confirmed", status=WaitlistStatus.CONFIRMED)
        active = make_entry("Active")

        ranked = MatcherService(db_session, clock=clock).find_candidates(slot)

        assert [c.entry.id for c in ranked] == [active.id]

    def test_excludes_other_staff_preference(self, db_session, clock, make_slot, make_entry, staff, other_staff):
        slot = make_slot(staff_id=staff.id)
        any_staff = make_entry("Any")
        same_staff = make_entry("Same", staff_id=staff.id)
        make_entry("Other", staff_id=other_staff.id)

        ranked = MatcherService(db_session, clock=clock).find_candidates(slot)

        assert {c.entry.id for c in ranked} == {any_staff.id, same_staff.id}
        # staff match bonus puts the matching preference first
        assert ranked[0].entry.id == same_staff.id

    def test_excludes_entries_outside_window(self, db_session, clock, make_slot, make_entry):
        now = clock.now()
        slot = make_slot(hours=48)
        make_entry("Too early", earliest=now, latest=now + timedelta(hours=24))
        make_entry("Too late", earliest=now + timedelta(hours=72), latest=now + timedelta(hours=96))
        inside = make_entry("Inside")

        ranked = MatcherService(db_session, clock=clock).find_candidates(slot)

        assert [c.entry.id for c in ranked] == [inside.id]

    def test_excludes_other_service_and_tenant(self, db_session, clock, make_slot, make_entry, tenant):
        from slotkeeper.models.tenant import Service, Tenant

        other_service = Service(tenant_id=tenant.id, name="Colour", duration_minutes=90)
        other_tenant = Tenant(name="Elsewhere")
        db_session.add_all([other_service, other_tenant])
        db_session.commit()
        foreign_service = Service(tenant_id=other_tenant.id, name="Haircut", duration_minutes=60)
        db_session.add(foreign_service)
        db_session.commit()

        slot = make_slot()
        make_entry("Wrong service", service_id=other_service.id)
        make_entry("Wrong tenant", tenant_id=other_tenant.id, service_id=foreign_service.id)
        match = make_entry("Match")

        ranked = MatcherService(db_session, clock=clock).find_candidates(slot)

        assert [c.entry.id for c in ranked] == [match.id]

    def test_no_candidates(self, db_session, clock, make_slot):
        assert MatcherService(db_session, clock=clock).find_candidates(make_slot()) == []
