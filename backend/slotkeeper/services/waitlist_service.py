"""Waitlist entry lifecycle: creation, updates, withdrawal and score refresh."""

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from slotkeeper.core.clock import Clock, system_clock
from slotkeeper.core.config import Settings, settings as default_settings
from slotkeeper.core.errors import BusinessRuleError, NotFoundError
from slotkeeper.models.tenant import Service, Staff, Tenant
from slotkeeper.models.waitlist import NotificationChannel, WaitlistEntry, WaitlistStatus
from slotkeeper.repositories.waitlist_repository import WaitlistRepository
from slotkeeper.services import audit_service
from slotkeeper.services.scoring_service import calculate_priority_score

logger = logging.getLogger(__name__)


class WaitlistService:
    def __init__(
        self,
        db: Session,
        clock: Clock = system_clock,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings or default_settings
        self.entries = WaitlistRepository(db)

    def get_entry(self, tenant_id: int, entry_id: int) -> WaitlistEntry:
        entry = self.entries.get(tenant_id, entry_id, fresh=True)
        if entry is None:
            raise NotFoundError("Waitlist entry", entry_id, tenant_id)
        return entry

    def _check_catalog(self, tenant_id: int, service_id: int, staff_id: Optional[int]) -> None:
        tenant = self.db.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant", tenant_id)
        service = self.db.get(Service, service_id)
        if service is None or service.tenant_id != tenant_id:
            raise NotFoundError("Service", service_id, tenant_id)
        if not service.active:
            raise BusinessRuleError(f"Service {service_id} is not active")
        if staff_id is not None:
            staff = self.db.get(Staff, staff_id)
            if staff is None or staff.tenant_id != tenant_id:
                raise NotFoundError("Staff", staff_id, tenant_id)
            if not staff.active:
                raise BusinessRuleError(f"Staff member {staff_id} is not active")

    @staticmethod
    def _normalize_channels(
        channels: Optional[Iterable[NotificationChannel]],
        preferred: NotificationChannel,
        email: Optional[str],
    ) -> list:
        values = [NotificationChannel(c).value for c in (channels or [])]
        if preferred.value not in values:
            values.insert(0, preferred.value)
        if NotificationChannel.EMAIL.value in values and not email:
            raise BusinessRuleError("An email address is required for the email channel")
        # de-duplicate, keep order
        return list(dict.fromkeys(values))

    def create_entry(
        self,
        tenant_id: int,
        customer_name: str,
        phone: str,
        service_id: int,
        earliest_time: datetime,
        latest_time: datetime,
        staff_id: Optional[int] = None,
        email: Optional[str] = None,
        vip_status: bool = False,
        notification_channels: Optional[Iterable[NotificationChannel]] = None,
        preferred_channel: NotificationChannel = NotificationChannel.SMS,
        actor_type: str = "user",
    ) -> WaitlistEntry:
        """Add a customer to the waitlist.

        Raises:
            BusinessRuleError: inverted time window, inactive service or staff,
                or the phone number already has the maximum number of active
                entries for this tenant.
            NotFoundError: unknown tenant, service or staff member.
        """
        if earliest_time >= latest_time:
            raise BusinessRuleError("Earliest time must be before latest time")
        self._check_catalog(tenant_id, service_id, staff_id)

        active = self.entries.count_active_by_phone(tenant_id, phone)
        if active >= self.settings.max_active_entries_per_phone:
            raise BusinessRuleError(
                f"Phone number already has {active} active waitlist entries "
                f"(maximum {self.settings.max_active_entries_per_phone})"
            )

        channels = self._normalize_channels(notification_channels, preferred_channel, email)
        now = self.clock.now()
        entry = WaitlistEntry(
            tenant_id=tenant_id,
            customer_name=customer_name,
            phone=phone,
            email=email,
            service_id=service_id,
            staff_id=staff_id,
            earliest_time=earliest_time,
            latest_time=latest_time,
            vip_status=vip_status,
            status=WaitlistStatus.ACTIVE.value,
            notification_channels=channels,
            preferred_channel=preferred_channel.value,
            created_at=now,
            updated_at=now,
        )
        entry.priority_score = calculate_priority_score(entry, self.settings.scoring_weights, now)
        self.entries.add(entry)
        audit_service.log_action(
            self.db, tenant_id, "entry.created", "waitlist_entry", entry.id,
            details={"service_id": service_id, "staff_id": staff_id, "priority_score": entry.priority_score},
            actor_type=actor_type, now=now,
        )
        self.db.commit()
        self.db.refresh(entry)

        logger.info(
            f"Waitlist entry {entry.id} created with score {entry.priority_score}",
            extra={"tenant_id": tenant_id, "entry_id": entry.id},
        )
        return entry

    def update_entry(
        self,
        tenant_id: int,
        entry_id: int,
        earliest_time: Optional[datetime] = None,
        latest_time: Optional[datetime] = None,
        staff_id: Optional[int] = None,
        vip_status: Optional[bool] = None,
    ) -> WaitlistEntry:
        """Change the preferences of an active entry and refresh its stored score."""
        entry = self.get_entry(tenant_id, entry_id)
        if entry.status != WaitlistStatus.ACTIVE.value:
            raise BusinessRuleError(f"Only active entries can be updated (entry is {entry.status})")

        earliest = earliest_time or entry.earliest_time
        latest = latest_time or entry.latest_time
        if earliest >= latest:
            raise BusinessRuleError("Earliest time must be before latest time")
        if staff_id is not None:
            self._check_catalog(tenant_id, entry.service_id, staff_id)

        # order the assignments so the window validator never sees an inverted pair
        if latest > entry.latest_time:
            entry.latest_time = latest
            entry.earliest_time = earliest
        else:
            entry.earliest_time = earliest
            entry.latest_time = latest
        if staff_id is not None:
            entry.staff_id = staff_id
        if vip_status is not None:
            entry.vip_status = vip_status

        now = self.clock.now()
        entry.priority_score = calculate_priority_score(entry, self.settings.scoring_weights, now)
        entry.updated_at = now
        audit_service.log_action(
            self.db, tenant_id, "entry.updated", "waitlist_entry", entry_id,
            details={"priority_score": entry.priority_score}, actor_type="user", now=now,
        )
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def remove_entry(
        self,
        tenant_id: int,
        entry_id: int,
        reason: str = "customer_request",
        actor_type: str = "user",
    ) -> WaitlistEntry:
        """Withdraw an active entry. Entries holding an offer must decline it instead."""
        entry = self.get_entry(tenant_id, entry_id)
        now = self.clock.now()
        removed = self.entries.update_status(
            tenant_id, entry_id, WaitlistStatus.ACTIVE, WaitlistStatus.REMOVED,
            now=now, removal_reason=reason,
        )
        if not removed:
            self.db.rollback()
            raise BusinessRuleError(f"Waitlist entry {entry_id} is {entry.status} and cannot be withdrawn")

        audit_service.log_action(
            self.db, tenant_id, "entry.removed", "waitlist_entry", entry_id,
            details={"reason": reason}, actor_type=actor_type, now=now,
        )
        self.db.commit()
        return self.get_entry(tenant_id, entry_id)

    def recalculate_priority_scores(self, tenant_id: Optional[int] = None) -> int:
        """Refresh the stored score of every active entry. Returns how many changed."""
        now = self.clock.now()
        weights = self.settings.scoring_weights
        changed = 0
        for entry in self.entries.list_active(tenant_id):
            score = calculate_priority_score(entry, weights, now)
            if score != entry.priority_score:
                entry.priority_score = score
                entry.updated_at = now
                changed += 1
        self.db.commit()

        logger.info(f"Recalculated priority scores: {changed} changed")
        return changed
