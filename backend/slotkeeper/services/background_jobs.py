"""
Waitlist job handlers.

Each handler receives a session and the task, commits its own work and
returns a result dict stored on the task. Handlers are safe to re-run:
an event that was already resolved is skipped, not repeated.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from slotkeeper.core.alerting import AlertManager, alert_manager
from slotkeeper.core.clock import Clock, system_clock
from slotkeeper.core.config import Settings, settings as default_settings
from slotkeeper.core.errors import InfrastructureError, NotFoundError
from slotkeeper.models.notification import NotificationStatus
from slotkeeper.models.tenant import Tenant
from slotkeeper.models.waitlist import CascadeReason
from slotkeeper.repositories.notification_repository import NotificationRepository
from slotkeeper.repositories.slot_repository import SlotRepository
from slotkeeper.services import audit_service, job_scheduler
from slotkeeper.services.background_workers import BackgroundTask, BackgroundWorkerManager, worker_manager
from slotkeeper.services.cascade_service import CascadeService
from slotkeeper.services.job_scheduler import JobType
from slotkeeper.services.notification_service import NotificationDispatcher
from slotkeeper.services.waitlist_service import WaitlistService

logger = logging.getLogger(__name__)

_RESOLVED_NOTIFICATION_STATUSES = (
    NotificationStatus.SENT.value,
    NotificationStatus.DELIVERED.value,
    NotificationStatus.ABANDONED.value,
)


@dataclass
class SweepResult:
    processed_tenants: int = 0
    released_slots: int = 0
    cascade_notifications: int = 0
    reoffered_slots: int = 0
    errors: List[str] = field(default_factory=list)


class WaitlistJobHandlers:
    """Registers and runs the waitlist job types on a worker manager."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        manager: Optional[BackgroundWorkerManager] = None,
        clock: Clock = system_clock,
        settings: Optional[Settings] = None,
        alerts: Optional[AlertManager] = None,
    ):
        self.dispatcher = dispatcher
        self.manager = manager or worker_manager
        self.clock = clock
        self.settings = settings or default_settings
        self.alerts = alerts or alert_manager

    def register(self) -> BackgroundWorkerManager:
        handlers = {
            JobType.PROCESS_EXPIRED_HOLDS: self.process_expired_holds,
            JobType.NOTIFICATION_CASCADE: self.notification_cascade,
            JobType.RETRY_FAILED_NOTIFICATION: self.retry_failed_notification,
            JobType.CLEANUP_OLD_RECORDS: self.cleanup_old_records,
            JobType.RECALCULATE_PRIORITY_SCORES: self.recalculate_priority_scores,
        }
        for job_type, handler in handlers.items():
            self.manager.register_handler(job_type.value, handler)
        return self.manager

    def _cascade_service(self, db: Session) -> CascadeService:
        return CascadeService(
            db, self.dispatcher, clock=self.clock, settings=self.settings, manager=self.manager
        )

    # =============================================================================
    # EXPIRED HOLD SWEEP
    # =============================================================================

    async def sweep_expired_holds(self, db: Session, tenant_id: Optional[int] = None) -> SweepResult:
        """Release expired holds, cascade them, and re-offer open future slots.

        Tenants are processed independently; a failure in one is recorded
        as ``"Tenant <id>: <message>"`` and the sweep moves on.
        """
        result = SweepResult()
        if tenant_id is not None:
            tenant_ids = [tenant_id]
        else:
            try:
                tenant_ids = [
                    t.id for t in db.query(Tenant).filter(Tenant.active.is_(True)).order_by(Tenant.id)
                ]
            except SQLAlchemyError as e:
                # Nothing was swept; fail the attempt so the queue retries it
                raise InfrastructureError(f"Cannot list tenants for sweep: {e}") from e

        cascades = self._cascade_service(db)
        slots = SlotRepository(db)

        for tid in tenant_ids:
            context = {"tenant_id": tid}
            try:
                now = self.clock.now()
                for slot in slots.find_expired_holds(tid, now):
                    if slot.held_entry_id is None:
                        continue
                    outcome = await cascades.handle_cascade(
                        tid, slot.id, slot.held_entry_id, CascadeReason.EXPIRED, expired_only=True
                    )
                    if outcome.released:
                        result.released_slots += 1
                    if outcome.notified:
                        result.cascade_notifications += 1

                for slot in slots.find_open_future(tid, self.clock.now()):
                    outcome = await cascades.offer_slot(tid, slot.id)
                    if outcome.next_candidate_found:
                        result.reoffered_slots += 1

                result.processed_tenants += 1
            except Exception as e:
                db.rollback()
                logger.exception(f"Expired hold sweep failed for tenant {tid}: {e}", extra=context)
                result.errors.append(f"Tenant {tid}: {e}")

        if result.released_slots or result.reoffered_slots or result.errors:
            logger.info(
                f"Expired hold sweep: {result.processed_tenants} tenants, "
                f"{result.released_slots} released, {result.cascade_notifications} notified, "
                f"{result.reoffered_slots} re-offered, {len(result.errors)} errors"
            )
        return result

    async def process_expired_holds(self, db: Session, task: BackgroundTask) -> Dict[str, Any]:
        result = await self.sweep_expired_holds(db, task.payload.get("tenant_id"))
        return asdict(result)

    # =============================================================================
    # CASCADE
    # =============================================================================

    async def notification_cascade(self, db: Session, task: BackgroundTask) -> Dict[str, Any]:
        payload = task.payload
        result = await self._cascade_service(db).handle_cascade(
            payload["tenant_id"],
            payload["slot_id"],
            payload["previous_entry_id"],
            CascadeReason(payload["reason"]),
        )
        return asdict(result)

    # =============================================================================
    # NOTIFICATION RETRY
    # =============================================================================

    async def retry_failed_notification(self, db: Session, task: BackgroundTask) -> Dict[str, Any]:
        """Re-send a failed offer. The job schedules its own next attempt.

        After the last allowed attempt fails the record is abandoned and an
        alert is raised. The hold is left to expire naturally.
        """
        tenant_id = task.payload["tenant_id"]
        notification_id = task.payload["notification_id"]
        attempt = int(task.payload["attempt"])
        context = {"tenant_id": tenant_id, "notification_id": notification_id}

        notifications = NotificationRepository(db)
        record = notifications.get(notification_id, tenant_id, fresh=True)
        if record is None:
            raise NotFoundError("Notification", notification_id, tenant_id)

        if record.status in _RESOLVED_NOTIFICATION_STATUSES:
            return {"skipped": True, "reason": f"notification already {record.status}"}
        if record.retry_count >= attempt:
            return {"skipped": True, "reason": f"attempt {attempt} already processed"}

        slot = SlotRepository(db).get(tenant_id, record.slot_id, fresh=True)
        if slot is None or not slot.is_held_for(record.waitlist_entry_id):
            return {"skipped": True, "reason": "slot no longer held for this entry"}

        result = await self.dispatcher.retry(db, notification_id, attempt)
        if result.success:
            logger.info(f"Notification {notification_id} sent on retry {attempt}", extra=context)
            return {"status": NotificationStatus.SENT.value, "attempt": attempt}

        max_retries = self.settings.notification_max_retries
        if attempt < max_retries:
            delay = self.settings.notification_retry_base_delay_seconds * (2 ** attempt)
            await job_scheduler.schedule_notification_retry(
                tenant_id, notification_id, attempt + 1, delay, manager=self.manager
            )
            logger.warning(
                f"Notification {notification_id} retry {attempt}/{max_retries} failed; "
                f"next attempt in {delay:g}s",
                extra=context,
            )
            return {"status": NotificationStatus.FAILED.value, "attempt": attempt, "next_delay_seconds": delay}

        now = self.clock.now()
        notifications.mark_abandoned(notification_id, now, result.error)
        audit_service.log_action(
            db, tenant_id, "notification.abandoned", "notification", notification_id,
            details={"attempts": attempt, "error": result.error}, now=now,
        )
        db.commit()
        self.alerts.alert(
            "warning",
            "Notification abandoned",
            f"Offer for slot {record.slot_id} could not be delivered after {attempt} retries: {result.error}",
            source="notifications",
            tenant_id=tenant_id,
            context={"notification_id": notification_id, "slot_id": record.slot_id},
        )
        return {"status": NotificationStatus.ABANDONED.value, "attempt": attempt}

    # =============================================================================
    # MAINTENANCE
    # =============================================================================

    def cleanup(self, db: Session, retention_days: Optional[int] = None) -> Dict[str, Any]:
        """Delete terminal notifications and audit entries older than the retention window."""
        days = retention_days or self.settings.retention_days
        cutoff = self.clock.now() - timedelta(days=days)

        deleted_notifications = NotificationRepository(db).purge_terminal_before(cutoff)
        db.commit()

        deleted_audit_logs = 0
        try:
            deleted_audit_logs = audit_service.purge_before(db, cutoff)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Skipping audit log cleanup: {e}")

        logger.info(
            f"Cleanup removed {deleted_notifications} notifications and "
            f"{deleted_audit_logs} audit entries older than {days} days"
        )
        return {
            "deleted_notifications": deleted_notifications,
            "deleted_audit_logs": deleted_audit_logs,
            "cutoff": cutoff.isoformat(),
        }

    async def cleanup_old_records(self, db: Session, task: BackgroundTask) -> Dict[str, Any]:
        return self.cleanup(db, task.payload.get("retention_days"))

    async def recalculate_priority_scores(self, db: Session, task: BackgroundTask) -> Dict[str, Any]:
        service = WaitlistService(db, clock=self.clock, settings=self.settings)
        changed = service.recalculate_priority_scores(task.payload.get("tenant_id"))
        return {"updated_entries": changed}
