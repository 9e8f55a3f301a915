# Services module

from slotkeeper.services.scoring_service import calculate_priority_score, score_breakdown
from slotkeeper.services.matcher_service import MatcherService, RankedCandidate
from slotkeeper.services.slot_state_machine import SlotStateMachine, TransitionResult, Offer
from slotkeeper.services.waitlist_service import WaitlistService
from slotkeeper.services.cascade_service import CascadeService, CascadeResult
from slotkeeper.services.notification_service import (
    DispatchResult,
    NotificationDispatcher,
    NotificationService,
)
