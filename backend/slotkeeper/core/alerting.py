"""Alert buffer for events that need manual or administrative attention.

Alerts are kept in memory only and are also written to the ``alerts``
logger, so a log shipper can forward them.
"""

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger("alerts")

LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "critical": logging.CRITICAL}


@dataclass
class Alert:
    level: str
    title: str
    message: str
    source: str = "system"
    tenant_id: Optional[int] = None
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AlertManager:
    """Bounded, newest-last buffer of alerts."""

    def __init__(self, max_buffer: int = 200):
        self._alerts: Deque[Alert] = deque(maxlen=max_buffer)

    def alert(
        self,
        level: str,
        title: str,
        message: str,
        source: str = "system",
        tenant_id: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        if level not in LEVELS:
            raise ValueError(f"Unknown alert level {level!r}; expected one of {sorted(LEVELS)}")
        entry = Alert(level, title, message, source, tenant_id, dict(context or {}))
        self._alerts.append(entry)
        logger.log(LEVELS[level], f"[{source}] {title}: {message}", extra={"tenant_id": tenant_id})
        return entry

    def get_recent(
        self,
        limit: int = 20,
        level: Optional[str] = None,
        tenant_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Newest first. ``level`` is a minimum severity."""
        threshold = LEVELS.get(level, logging.NOTSET) if level else logging.NOTSET
        matches = [
            a for a in reversed(self._alerts)
            if LEVELS[a.level] >= threshold and (tenant_id is None or a.tenant_id == tenant_id)
        ]
        return [a.to_dict() for a in matches[:limit]]

    def clear(self) -> None:
        self._alerts.clear()


alert_manager = AlertManager()
