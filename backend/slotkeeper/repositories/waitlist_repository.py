"""Waitlist entry persistence."""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from slotkeeper.models.waitlist import WaitlistEntry, WaitlistStatus

logger = logging.getLogger(__name__)


class WaitlistRepository:
    """Data access for waitlist entries, scoped to one tenant per call."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, tenant_id: int, entry_id: int, fresh: bool = False) -> Optional[WaitlistEntry]:
        query = self.db.query(WaitlistEntry).filter(
            WaitlistEntry.id == entry_id,
            WaitlistEntry.tenant_id == tenant_id,
        )
        if fresh:
            query = query.populate_existing()
        return query.first()

    def add(self, entry: WaitlistEntry) -> WaitlistEntry:
        self.db.add(entry)
        self.db.flush()
        return entry

    def find_eligible(
        self,
        tenant_id: int,
        service_id: int,
        staff_id: int,
        start_time: datetime,
    ) -> List[WaitlistEntry]:
        """Active entries whose service, staff preference and window admit the slot.

        Ordering is left to the matcher, which scores at call time.
        """
        return (
            self.db.query(WaitlistEntry)
            .filter(
                WaitlistEntry.tenant_id == tenant_id,
                WaitlistEntry.status == WaitlistStatus.ACTIVE.value,
                WaitlistEntry.service_id == service_id,
                or_(WaitlistEntry.staff_id.is_(None), WaitlistEntry.staff_id == staff_id),
                WaitlistEntry.earliest_time <= start_time,
                WaitlistEntry.latest_time >= start_time,
            )
            .populate_existing()
            .all()
        )

    def update_status(
        self,
        tenant_id: int,
        entry_id: int,
        expected: WaitlistStatus,
        new: WaitlistStatus,
        *,
        now: datetime,
        removal_reason: Optional[str] = None,
    ) -> bool:
        """Conditional status change; returns False when the entry was not in ``expected``."""
        values = {"status": new.value, "updated_at": now}
        if removal_reason is not None:
            values["removal_reason"] = removal_reason
        updated = (
            self.db.query(WaitlistEntry)
            .filter(
                WaitlistEntry.id == entry_id,
                WaitlistEntry.tenant_id == tenant_id,
                WaitlistEntry.status == expected.value,
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            logger.debug(
                f"Entry {entry_id} CAS {expected.value}->{new.value} matched {updated} rows",
                extra={"tenant_id": tenant_id, "entry_id": entry_id},
            )
        return updated == 1

    def count_active_by_phone(self, tenant_id: int, phone: str) -> int:
        return (
            self.db.query(WaitlistEntry)
            .filter(
                WaitlistEntry.tenant_id == tenant_id,
                WaitlistEntry.phone == phone,
                WaitlistEntry.status == WaitlistStatus.ACTIVE.value,
            )
            .count()
        )

    def list_active(self, tenant_id: Optional[int] = None) -> List[WaitlistEntry]:
        query = self.db.query(WaitlistEntry).filter(
            WaitlistEntry.status == WaitlistStatus.ACTIVE.value
        )
        if tenant_id is not None:
            query = query.filter(WaitlistEntry.tenant_id == tenant_id)
        return query.order_by(WaitlistEntry.id).all()

    def count_by_status(self, tenant_id: int) -> Dict[str, int]:
        """Entry counts per status, with every status present."""
        rows = (
            self.db.query(WaitlistEntry.status, func.count(WaitlistEntry.id))
            .filter(WaitlistEntry.tenant_id == tenant_id)
            .group_by(WaitlistEntry.status)
            .all()
        )
        counts = {s.value: 0 for s in WaitlistStatus}
        counts.update({status: count for status, count in rows})
        return counts
