"""Persistence layer. Every query is scoped by tenant id."""

from slotkeeper.repositories.slot_repository import SlotRepository
from slotkeeper.repositories.waitlist_repository import WaitlistRepository
from slotkeeper.repositories.notification_repository import NotificationRepository

__all__ = ["SlotRepository", "WaitlistRepository", "NotificationRepository"]
