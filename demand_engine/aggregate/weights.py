"""Weight resolution for demand events."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from demand_engine.aggregate.boosts import BoostEntry, match_boost
from demand_engine.aggregate.events import EventType, ProductText, VoterContext

logger = logging.getLogger(__name__)

# Fixed policy constants
BASE_WEIGHTS = {
    EventType.SEARCH: 1,  # curiosity signal
    EventType.SCAN: 5,  # proof of possession
    EventType.MEMBER_SCAN: 20,  # premium verified possession
}
PHOTO_CONTRIBUTION_BONUS = 10  # flat, never boosted


@dataclass(frozen=True)
class ResolvedWeight:
    """Weight to add for one event and how it was derived."""

    event_type: EventType  # effective type after membership check
    base_weight: float
    multiplier: float
    weight: float
    boost: Optional[BoostEntry] = None


def effective_event_type(event_type: EventType, voter: VoterContext) -> EventType:
    """Member scans from non-members count as ordinary scans."""
    if event_type is EventType.MEMBER_SCAN and not voter.is_member:
        logger.debug(f"Downgrading member_scan from non-member {voter.voter_key[:12]}")
        return EventType.SCAN
    return event_type


def resolve_weight(
    event_type: "EventType | str",
    voter: VoterContext,
    product: ProductText,
    boosts: Sequence[BoostEntry],
    now: datetime,
) -> ResolvedWeight:
    """
    Compute the score an event adds to its record.

    Args:
        event_type: Event kind (raises InvalidEventType when unknown)
        voter: Identity of the voter
        product: Catalog text used for boost matching
        boosts: Candidate category boosts
        now: Time used to check boost windows

    Returns:
        ResolvedWeight with the final weight
    """
    event_type = effective_event_type(EventType.parse(event_type), voter)

    if event_type is EventType.PHOTO_CONTRIBUTION:
        return ResolvedWeight(
            event_type=event_type,
            base_weight=PHOTO_CONTRIBUTION_BONUS,
            multiplier=1.0,
            weight=float(PHOTO_CONTRIBUTION_BONUS),
        )

    base = BASE_WEIGHTS[event_type]
    boost = match_boost(boosts, product, now)
    multiplier = boost.multiplier if boost else 1.0
    return ResolvedWeight(
        event_type=event_type,
        base_weight=base,
        multiplier=multiplier,
        weight=base * multiplier,
        boost=boost,
    )
