"""Candidate matching for open slots."""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from slotkeeper.core.clock import Clock, system_clock
from slotkeeper.core.config import ScoringWeights, settings
from slotkeeper.models.slot import Slot
from slotkeeper.models.waitlist import WaitlistEntry
from slotkeeper.repositories.waitlist_repository import WaitlistRepository
from slotkeeper.services.scoring_service import calculate_priority_score

logger = logging.getLogger(__name__)


@dataclass
class RankedCandidate:
    entry: WaitlistEntry
    score: int


class MatcherService:
    """Ranks eligible waitlist entries for a slot.

    Ordering is total: score descending, then oldest entry first, then
    lowest entry id.
    """

    def __init__(
        self,
        db: Session,
        weights: Optional[ScoringWeights] = None,
        clock: Clock = system_clock,
    ):
        self.db = db
        self.weights = weights or settings.scoring_weights
        self.clock = clock
        self.entries = WaitlistRepository(db)

    def find_candidates(self, slot: Slot) -> List[RankedCandidate]:
        now = self.clock.now()
        eligible = self.entries.find_eligible(
            slot.tenant_id,
            slot.service_id,
            slot.staff_id,
            slot.start_time,
        )
        ranked = [
            RankedCandidate(entry=e, score=calculate_priority_score(e, self.weights, now, slot))
            for e in eligible
        ]
        ranked.sort(key=lambda c: (-c.score, c.entry.created_at, c.entry.id))

        logger.debug(
            f"Slot {slot.id}: {len(ranked)} eligible candidates",
            extra={"tenant_id": slot.tenant_id, "slot_id": slot.id},
        )
        return ranked
