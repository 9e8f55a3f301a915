"""Pytest configuration and fixtures."""

import os

# Must be set before slotkeeper imports its settings and engine
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("NOTIFICATION_PROVIDER", "log")

import pytest
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Generator, List, Optional, Tuple

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from slotkeeper.api.deps import get_clock, get_dispatcher, get_worker_manager
from slotkeeper.core.alerting import AlertManager
from slotkeeper.core.clock import ManualClock
from slotkeeper.core.config import Settings
from slotkeeper.db.base import Base
from slotkeeper.db.session import get_db
from slotkeeper.main import app
# Import all models to ensure they're registered with Base.metadata
from slotkeeper.models import *
from slotkeeper.services.background_jobs import WaitlistJobHandlers
from slotkeeper.services.background_workers import BackgroundWorkerManager
from slotkeeper.services.notification_service import DispatchResult

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

# Fixed "now" for every test: Monday 2026-03-02 09:00 UTC
NOW = datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory(db_session: Session):
    """Session factory for job handlers. Handlers share the test session."""
    return lambda: nullcontext(db_session)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(NOW)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        hold_duration_minutes=10,
        notification_provider="log",
        notification_max_retries=3,
        notification_retry_base_delay_seconds=1.0,
    )


class FakeDispatcher:
    """Dispatcher that records offers instead of sending them.

    Each send creates a ``Notification`` row like the real service does.
    Set ``fail_sends`` / ``fail_retries`` to simulate provider outages.
    """

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.sent: List[Tuple[int, int]] = []
        self.retries: List[Tuple[int, int, datetime]] = []
        self.fail_sends = False
        self.fail_retries = False

    async def send(self, db, candidate, slot, service, staff, tenant_name) -> DispatchResult:
        now = self.clock.now()
        record = Notification(
            tenant_id=slot.tenant_id,
            waitlist_entry_id=candidate.id,
            slot_id=slot.id,
            channel=candidate.preferred_channel,
            recipient=candidate.phone,
            subject=f"A {service.name} slot is available",
            message=f"{tenant_name}: {service.name} with {staff.name}",
            status=NotificationStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        db.add(record)
        db.flush()
        self.sent.append((candidate.id, slot.id))
        return self._finish(db, record, self.fail_sends)

    async def retry(self, db, notification_id: int, attempt: int) -> DispatchResult:
        record = db.get(Notification, notification_id)
        record.retry_count = attempt
        self.retries.append((notification_id, attempt, self.clock.now()))
        return self._finish(db, record, self.fail_retries)

    def _finish(self, db, record, fail: bool) -> DispatchResult:
        now = self.clock.now()
        if fail:
            record.status = NotificationStatus.FAILED.value
            record.error_message = "provider unavailable"
            db.commit()
            return DispatchResult(success=False, notification_id=record.id, error="provider unavailable")
        record.status = NotificationStatus.SENT.value
        record.sent_at = now
        db.commit()
        return DispatchResult(success=True, notification_id=record.id, channel=record.channel, sent_at=now)

    @property
    def notified_entry_ids(self) -> List[int]:
        return [entry_id for entry_id, _ in self.sent]


@pytest.fixture
def dispatcher(clock: ManualClock) -> FakeDispatcher:
    return FakeDispatcher(clock)


@pytest.fixture
def manager(clock: ManualClock) -> BackgroundWorkerManager:
    """A private job queue driven by the manual clock."""
    return BackgroundWorkerManager(max_workers=1, clock=clock)


@pytest.fixture
def alerts() -> AlertManager:
    return AlertManager()


@pytest.fixture
def handlers(dispatcher, manager, clock, test_settings, alerts) -> WaitlistJobHandlers:
    job_handlers = WaitlistJobHandlers(
        dispatcher, manager=manager, clock=clock, settings=test_settings, alerts=alerts
    )
    job_handlers.register()
    return job_handlers


@pytest.fixture(scope="function")
def client(
    db_session: Session,
    clock: ManualClock,
    dispatcher: FakeDispatcher,
    manager: BackgroundWorkerManager,
) -> Generator[TestClient, None, None]:
    """Create a test client with database, clock, dispatcher and queue overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_worker_manager] = lambda: manager
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# ============================================================================
# Catalog and waitlist factories (every factory commits)
# ============================================================================

@pytest.fixture
def tenant(db_session: Session) -> Tenant:
    tenant = Tenant(name="Studio North", timezone="UTC", active=True, created_at=NOW, updated_at=NOW)
    db_session.add(tenant)
    db_session.commit()
    db_session.refresh(tenant)
    return tenant


@pytest.fixture
def staff(db_session: Session, tenant: Tenant) -> Staff:
    member = Staff(tenant_id=tenant.id, name="Alex", role="stylist", active=True)
    db_session.add(member)
    db_session.commit()
    db_session.refresh(member)
    return member


@pytest.fixture
def other_staff(db_session: Session, tenant: Tenant) -> Staff:
    member = Staff(tenant_id=tenant.id, name="Sam", role="stylist", active=True)
    db_session.add(member)
    db_session.commit()
    db_session.refresh(member)
    return member


@pytest.fixture
def service(db_session: Session, tenant: Tenant) -> Service:
    svc = Service(tenant_id=tenant.id, name="Haircut", duration_minutes=60, active=True)
    db_session.add(svc)
    db_session.commit()
    db_session.refresh(svc)
    return svc


@pytest.fixture
def make_slot(db_session: Session, tenant: Tenant, staff: Staff, service: Service):
    """Create an open slot starting ``hours`` from NOW."""
    def _make(
        hours: int = 24,
        staff_id: Optional[int] = None,
        service_id: Optional[int] = None,
        tenant_id: Optional[int] = None,
    ) -> Slot:
        start = NOW + timedelta(hours=hours)
        slot = Slot(
            tenant_id=tenant_id or tenant.id,
            staff_id=staff_id or staff.id,
            service_id=service_id or service.id,
            start_time=start,
            end_time=start + timedelta(hours=1),
            status=SlotStatus.OPEN.value,
            created_at=NOW,
            updated_at=NOW,
        )
        db_session.add(slot)
        db_session.commit()
        db_session.refresh(slot)
        return slot
    return _make


@pytest.fixture
def make_entry(db_session: Session, tenant: Tenant, service: Service):
    """Create an active waitlist entry with a window around the next few days."""
    counter = {"n": 0}

    def _make(
        name: str = "Customer",
        staff_id: Optional[int] = None,
        vip: bool = False,
        created_days_ago: int = 0,
        phone: Optional[str] = None,
        earliest: Optional[datetime] = None,
        latest: Optional[datetime] = None,
        status: WaitlistStatus = WaitlistStatus.ACTIVE,
        service_id: Optional[int] = None,
        tenant_id: Optional[int] = None,
    ) -> WaitlistEntry:
        counter["n"] += 1
        created = NOW - timedelta(days=created_days_ago)
        entry = WaitlistEntry(
            tenant_id=tenant_id or tenant.id,
            customer_name=name,
            phone=phone or f"+1555000{counter['n']:04d}",
            email=f"customer{counter['n']}@example.com",
            service_id=service_id or service.id,
            staff_id=staff_id,
            earliest_time=earliest or NOW,
            latest_time=latest or NOW + timedelta(days=7),
            vip_status=vip,
            status=status.value,
            notification_channels=[NotificationChannel.SMS.value],
            preferred_channel=NotificationChannel.SMS.value,
            created_at=created,
            updated_at=created,
        )
        db_session.add(entry)
        db_session.commit()
        db_session.refresh(entry)
        return entry
    return _make
