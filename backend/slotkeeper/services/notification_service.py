"""Notification dispatch for slot offers via SMS, WhatsApp and Email."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

import httpx
from sqlalchemy.orm import Session

from slotkeeper.core.clock import Clock, system_clock
from slotkeeper.core.config import Settings, settings as default_settings
from slotkeeper.core.errors import DispatchError, NotFoundError
from slotkeeper.models.notification import Notification, NotificationStatus
from slotkeeper.models.slot import Slot
from slotkeeper.models.tenant import Service, Staff, Tenant
from slotkeeper.models.waitlist import NotificationChannel, WaitlistEntry
from slotkeeper.repositories.notification_repository import NotificationRepository

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """Result of a dispatch attempt."""
    success: bool
    notification_id: Optional[int] = None
    channel: Optional[str] = None
    error: Optional[str] = None
    sent_at: Optional[datetime] = None


class NotificationDispatcher(Protocol):
    """Outbound delivery used by the cascade and the retry job.

    Implementations record what they attempted and report failures in the
    returned ``DispatchResult`` instead of raising.
    """

    async def send(
        self,
        db: Session,
        candidate: WaitlistEntry,
        slot: Slot,
        service: Service,
        staff: Staff,
        tenant_name: str,
    ) -> DispatchResult:
        ...

    async def retry(self, db: Session, notification_id: int, attempt: int) -> DispatchResult:
        ...


def build_offer_message(
    candidate: WaitlistEntry,
    slot: Slot,
    service: Service,
    staff: Staff,
    tenant_name: str,
    now: datetime,
) -> str:
    minutes_left = 0
    if slot.hold_expires_at is not None:
        minutes_left = max(0, int((slot.hold_expires_at - now).total_seconds() // 60))
    return (
        f"Hi {candidate.customer_name}, a slot has opened up at {tenant_name}: "
        f"{service.name} with {staff.name} on {slot.start_time:%a %d %b at %H:%M}. "
        f"Reply YES to confirm or NO to decline. "
        f"We are holding it for you for {minutes_left} minutes."
    )


class NotificationService:
    """Sends slot offers and records each one as a ``Notification`` row.

    Channels are tried in the entry's preference order: the preferred channel
    first, then the remaining configured channels. The ``log`` provider only
    writes the message to the log; ``live`` delivers SMS and WhatsApp through
    Twilio and email through SendGrid.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Clock = system_clock,
        http_client: Optional[httpx.AsyncClient] = None,
        provider: Optional[str] = None,
    ):
        self.settings = settings or default_settings
        self.clock = clock
        self.provider = provider or self.settings.notification_provider
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self):
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # Dispatcher interface
    # ------------------------------------------------------------------

    async def send(
        self,
        db: Session,
        candidate: WaitlistEntry,
        slot: Slot,
        service: Service,
        staff: Staff,
        tenant_name: str,
    ) -> DispatchResult:
        now = self.clock.now()
        channels = candidate.channels_in_order()
        message = build_offer_message(candidate, slot, service, staff, tenant_name, now)

        record = NotificationRepository(db).add(Notification(
            tenant_id=slot.tenant_id,
            waitlist_entry_id=candidate.id,
            slot_id=slot.id,
            channel=channels[0].value,
            recipient=self._recipient(candidate, channels[0]) or candidate.phone,
            subject=f"A {service.name} slot is available",
            message=message,
            status=NotificationStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        ))
        result = await self._deliver_record(record, candidate, channels)
        db.commit()
        return result

    async def retry(self, db: Session, notification_id: int, attempt: int) -> DispatchResult:
        record = NotificationRepository(db).get(notification_id, fresh=True)
        if record is None:
            raise NotFoundError("Notification", notification_id)
        candidate = db.get(WaitlistEntry, record.waitlist_entry_id)
        if candidate is None:
            raise NotFoundError("Waitlist entry", record.waitlist_entry_id, record.tenant_id)

        record.retry_count = attempt
        result = await self._deliver_record(record, candidate, candidate.channels_in_order())
        db.commit()
        return result

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    @staticmethod
    def _recipient(candidate: WaitlistEntry, channel: NotificationChannel) -> Optional[str]:
        if channel == NotificationChannel.EMAIL:
            return candidate.email
        return candidate.phone

    async def _deliver_record(
        self,
        record: Notification,
        candidate: WaitlistEntry,
        channels: List[NotificationChannel],
    ) -> DispatchResult:
        """Try each channel in order, updating ``record`` with the outcome."""
        errors = []
        for channel in channels:
            recipient = self._recipient(candidate, channel)
            if not recipient:
                errors.append(f"{channel.value}: no recipient")
                continue
            try:
                provider_id = await self._deliver(channel, recipient, record.subject, record.message)
            except DispatchError as e:
                logger.warning(
                    f"Notification {record.id} via {channel.value} failed: {e}",
                    extra={"tenant_id": record.tenant_id, "notification_id": record.id},
                )
                errors.append(str(e))
                continue

            now = self.clock.now()
            record.channel = channel.value
            record.recipient = recipient
            record.status = NotificationStatus.SENT.value
            record.provider_message_id = provider_id
            record.error_message = None
            record.sent_at = now
            record.updated_at = now
            logger.info(
                f"Notification {record.id} sent via {channel.value}",
                extra={"tenant_id": record.tenant_id, "notification_id": record.id},
            )
            return DispatchResult(
                success=True,
                notification_id=record.id,
                channel=channel.value,
                sent_at=now,
            )

        error = "; ".join(errors) or "No notification channels configured"
        record.status = NotificationStatus.FAILED.value
        record.error_message = error
        record.updated_at = self.clock.now()
        return DispatchResult(success=False, notification_id=record.id, error=error)

    async def _deliver(
        self,
        channel: NotificationChannel,
        recipient: str,
        subject: Optional[str],
        message: str,
    ) -> str:
        """Hand one message to a provider. Returns the provider message id."""
        if self.provider != "live":
            return self._send_log(channel, recipient, message)
        if channel == NotificationChannel.EMAIL:
            return await self._send_sendgrid_email(recipient, subject or "", message)
        return await self._send_twilio_message(channel, recipient, message)

    def _send_log(self, channel: NotificationChannel, recipient: str, message: str) -> str:
        logger.info(f"[{channel.value.upper()}] To {recipient}: {message}")
        return f"log-{uuid.uuid4()}"

    async def _send_twilio_message(self, channel: NotificationChannel, to: str, message: str) -> str:
        """Send SMS or WhatsApp via Twilio."""
        account_sid = self.settings.twilio_account_sid
        auth_token = self.settings.twilio_auth_token
        if not account_sid or not auth_token:
            raise DispatchError(channel.value, "Twilio credentials not configured")

        if channel == NotificationChannel.WHATSAPP:
            sender = self.settings.twilio_whatsapp_from or self.settings.twilio_from_number
            if not sender:
                raise DispatchError(channel.value, "Twilio WhatsApp sender not configured")
            to = f"whatsapp:{to}"
            sender = sender if sender.startswith("whatsapp:") else f"whatsapp:{sender}"
        else:
            sender = self.settings.twilio_from_number

        client = await self._get_client()
        try:
            response = await client.post(
                f"https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json",
                auth=(account_sid, auth_token),
                data={"To": to, "From": sender, "Body": message},
            )
        except httpx.HTTPError as e:
            raise DispatchError(channel.value, str(e)) from e

        if response.status_code not in (200, 201):
            raise DispatchError(channel.value, f"Twilio error: {response.status_code} - {response.text}")
        return response.json().get("sid", "")

    async def _send_sendgrid_email(self, to: str, subject: str, body: str) -> str:
        """Send email via SendGrid."""
        if not self.settings.sendgrid_api_key:
            raise DispatchError("email", "SendGrid API key not configured")

        client = await self._get_client()
        try:
            response = await client.post(
                "https://api.sendgrid.com/v3/mail/send",
                headers={
                    "Authorization": f"Bearer {self.settings.sendgrid_api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "personalizations": [{"to": [{"email": to}]}],
                    "from": {"email": self.settings.email_from},
                    "subject": subject,
                    "content": [{"type": "text/plain", "value": body}],
                },
            )
        except httpx.HTTPError as e:
            raise DispatchError("email", str(e)) from e

        if response.status_code not in (200, 202):
            raise DispatchError("email", f"SendGrid error: {response.status_code} - {response.text}")
        return response.headers.get("X-Message-Id", "")


async def dispatch_offer(
    db: Session,
    dispatcher: NotificationDispatcher,
    candidate: WaitlistEntry,
    slot: Slot,
) -> DispatchResult:
    """Load the catalog rows an offer message needs and dispatch it."""
    service = db.get(Service, slot.service_id)
    staff = db.get(Staff, slot.staff_id)
    tenant = db.get(Tenant, slot.tenant_id)
    if service is None or staff is None or tenant is None:
        raise NotFoundError("Slot catalog data", slot.id, slot.tenant_id)
    return await dispatcher.send(db, candidate, slot, service, staff, tenant.name)


_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get the process-wide notification service."""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
