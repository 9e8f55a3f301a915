"""Notification record persistence."""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from slotkeeper.models.notification import (
    Notification,
    NotificationStatus,
    TERMINAL_NOTIFICATION_STATUSES,
)


class NotificationRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, notification_id: int, tenant_id: Optional[int] = None, fresh: bool = False) -> Optional[Notification]:
        query = self.db.query(Notification).filter(Notification.id == notification_id)
        if tenant_id is not None:
            query = query.filter(Notification.tenant_id == tenant_id)
        if fresh:
            query = query.populate_existing()
        return query.first()

    def add(self, notification: Notification) -> Notification:
        self.db.add(notification)
        self.db.flush()
        return notification

    def mark_abandoned(self, notification_id: int, now: datetime, error: Optional[str] = None) -> bool:
        """Flag a record whose retries are exhausted. Already sent records are left alone."""
        values = {"status": NotificationStatus.ABANDONED.value, "updated_at": now}
        if error:
            values["error_message"] = error
        updated = (
            self.db.query(Notification)
            .filter(
                Notification.id == notification_id,
                Notification.status.in_(
                    [NotificationStatus.PENDING.value, NotificationStatus.FAILED.value]
                ),
            )
            .update(values, synchronize_session=False)
        )
        return updated == 1

    def purge_terminal_before(self, cutoff: datetime) -> int:
        return (
            self.db.query(Notification)
            .filter(
                Notification.status.in_(TERMINAL_NOTIFICATION_STATUSES),
                Notification.created_at < cutoff,
            )
            .delete(synchronize_session=False)
        )
