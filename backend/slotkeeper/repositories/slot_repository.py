"""Slot persistence with conditional (compare-and-swap) status updates."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Query, Session

from slotkeeper.models.slot import Slot, SlotStatus

logger = logging.getLogger(__name__)

_ANY = object()


class SlotRepository:
    """Data access for slots, always scoped to one tenant.

    Status changes are conditional updates keyed on the current status. A
    zero-row update means another writer got there first; it is reported as
    ``False`` and never raised.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, tenant_id: int, slot_id: int, fresh: bool = False) -> Optional[Slot]:
        query = self.db.query(Slot).filter(Slot.id == slot_id, Slot.tenant_id == tenant_id)
        if fresh:
            # Bypass the identity map so values written by conditional updates are seen
            query = query.populate_existing()
        return query.first()

    def add(self, slot: Slot) -> Slot:
        self.db.add(slot)
        self.db.flush()
        return slot

    def conditional_update_status(
        self,
        tenant_id: int,
        slot_id: int,
        expected: SlotStatus,
        new: SlotStatus,
        *,
        now: datetime,
        expected_entry_id: Any = _ANY,
        expires_at_or_before: Optional[datetime] = None,
        expires_after: Optional[datetime] = None,
        **values,
    ) -> bool:
        """Move a slot from ``expected`` to ``new`` if it is still in ``expected``.

        ``expected_entry_id`` additionally requires the hold to belong to that
        entry. ``expires_at_or_before`` / ``expires_after`` guard on the stored
        hold expiry. Extra keyword arguments are written alongside the status.
        Does not commit.
        """
        query = self.db.query(Slot).filter(
            Slot.id == slot_id,
            Slot.tenant_id == tenant_id,
            Slot.status == expected.value,
        )
        if expected_entry_id is not _ANY:
            query = query.filter(Slot.held_entry_id == expected_entry_id)
        if expires_at_or_before is not None:
            query = query.filter(Slot.hold_expires_at <= expires_at_or_before)
        if expires_after is not None:
            query = query.filter(Slot.hold_expires_at > expires_after)

        updated = query.update(
            {"status": new.value, "updated_at": now, **values},
            synchronize_session=False,
        )
        if updated != 1:
            logger.debug(
                f"Slot {slot_id} CAS {expected.value}->{new.value} matched {updated} rows",
                extra={"tenant_id": tenant_id, "slot_id": slot_id},
            )
        return updated == 1

    def find_expired_holds(self, tenant_id: int, now: datetime) -> List[Slot]:
        return (
            self.db.query(Slot)
            .filter(
                Slot.tenant_id == tenant_id,
                Slot.status == SlotStatus.HELD.value,
                Slot.hold_expires_at <= now,
            )
            .order_by(Slot.hold_expires_at, Slot.id)
            .populate_existing()
            .all()
        )

    def find_open_future(self, tenant_id: int, now: datetime) -> List[Slot]:
        return (
            self.db.query(Slot)
            .filter(
                Slot.tenant_id == tenant_id,
                Slot.status == SlotStatus.OPEN.value,
                Slot.start_time > now,
            )
            .order_by(Slot.start_time, Slot.id)
            .populate_existing()
            .all()
        )

    def query_for_tenant(self, tenant_id: int, status: Optional[SlotStatus] = None) -> Query:
        query = self.db.query(Slot).filter(Slot.tenant_id == tenant_id)
        if status is not None:
            query = query.filter(Slot.status == status.value)
        return query.order_by(Slot.start_time, Slot.id)

    def count_by_status(self, tenant_id: int) -> Dict[str, int]:
        rows = (
            self.db.query(Slot.status, func.count(Slot.id))
            .filter(Slot.tenant_id == tenant_id)
            .group_by(Slot.status)
            .all()
        )
        counts = {s.value: 0 for s in SlotStatus}
        counts.update({status: count for status, count in rows})
        return counts
