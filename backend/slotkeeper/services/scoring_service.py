"""Priority scoring for waitlist entries.

Pure functions with no I/O. The score is recomputed at matching time; the
value stored on the entry is only refreshed by the recalculation job for
display and reporting.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from slotkeeper.core.config import ScoringWeights
from slotkeeper.models.slot import Slot
from slotkeeper.models.waitlist import WaitlistEntry


@dataclass(frozen=True)
class ScoreBreakdown:
    """Individual components of a priority score."""
    base: int
    vip: int
    service_match: int
    staff_preference: int
    time_window: int
    recency: int

    @property
    def total(self) -> int:
        return (
            self.base
            + self.vip
            + self.service_match
            + self.staff_preference
            + self.time_window
            + self.recency
        )


def weeks_waiting(created_at: datetime, now: datetime) -> int:
    """Whole weeks elapsed since the entry was created. Never negative."""
    if now <= created_at:
        return 0
    return (now - created_at).days // 7


def score_breakdown(
    entry: WaitlistEntry,
    weights: ScoringWeights,
    now: datetime,
    slot: Optional[Slot] = None,
) -> ScoreBreakdown:
    """Compute each score component for ``entry``.

    Without a slot, the staff bonus applies when the entry names any staff
    member and the time-window bonus always applies.
    """
    if slot is None:
        staff_match = entry.staff_id is not None
        in_window = True
    else:
        staff_match = entry.staff_id is not None and entry.staff_id == slot.staff_id
        in_window = entry.earliest_time <= slot.start_time <= entry.latest_time

    recency = min(
        weeks_waiting(entry.created_at, now) * weights.recency_bonus_per_week,
        weights.max_recency_bonus,
    )

    return ScoreBreakdown(
        base=weights.base_score,
        vip=weights.vip_bonus if entry.vip_status else 0,
        service_match=weights.service_match_bonus,
        staff_preference=weights.staff_preference_bonus if staff_match else 0,
        time_window=weights.time_window_bonus if in_window else 0,
        recency=recency,
    )


def calculate_priority_score(
    entry: WaitlistEntry,
    weights: ScoringWeights,
    now: datetime,
    slot: Optional[Slot] = None,
) -> int:
    return score_breakdown(entry, weights, now, slot).total
