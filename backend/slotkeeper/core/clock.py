"""Clock sources.

Every expiry comparison goes through a clock object so that hold expiry can
be driven by stored timestamps and simulated deterministically in tests.
Timestamps are naive UTC throughout the application.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock returning naive UTC datetimes."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or SystemClock().now()

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta given as keyword arguments (minutes=11)."""
        self._now = self._now + timedelta(**kwargs)
        return self._now


system_clock = SystemClock()
