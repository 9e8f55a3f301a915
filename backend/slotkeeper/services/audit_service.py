"""Audit logging service.

Writes audit entries for slot and waitlist transitions inside the caller's
transaction, so an entry is persisted only when the transition it describes
is committed.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from slotkeeper.db.base import utcnow
from slotkeeper.models.booking import AuditLogEntry

logger = logging.getLogger("audit")


def log_action(
    db: Session,
    tenant_id: int,
    action: str,
    resource_type: str,
    resource_id: Any,
    details: Optional[dict[str, Any]] = None,
    actor_type: str = "system",
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Add an audit log entry to the current transaction.

    Args:
        db: The session whose transaction the entry joins. The caller commits.
        tenant_id: Tenant owning the resource
        action: What happened (slot.held, entry.removed, booking.created, ...)
        resource_type: slot, waitlist_entry, booking or notification
        resource_id: ID of the affected resource
        details: Additional context (previous status, reason, hold expiry)
        actor_type: system for workers, user for HTTP callers
        now: Timestamp from the caller's clock
    """
    db.add(AuditLogEntry(
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id),
        details=details or {},
        created_at=now or utcnow(),
    ))
    logger.debug(f"{action} {resource_type} {resource_id}", extra={"tenant_id": tenant_id})


def purge_before(db: Session, cutoff: datetime) -> int:
    """Delete audit entries older than ``cutoff``. Does not commit."""
    return (
        db.query(AuditLogEntry)
        .filter(AuditLogEntry.created_at < cutoff)
        .delete(synchronize_session=False)
    )
