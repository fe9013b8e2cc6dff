"""Sliding-window scan velocity."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from demand_engine.aggregate.classifier import classify_urgency

DAY_WINDOW = timedelta(hours=24)
WEEK_WINDOW = timedelta(days=7)

# A scan in the last 24h counts five times toward velocity. This multiplies
# the count, separately from the per-event vote weights.
RECENT_SCAN_MULTIPLIER = 5


@dataclass(frozen=True)
class VelocitySnapshot:
    last_24h: int
    last_7d: int
    velocity_score: float

    @property
    def urgency_tier(self) -> str:
        return classify_urgency(self.last_24h, self.last_7d)


def compute_velocity(
    scan_log: Iterable[datetime],
    weighted_total: float,
    now: datetime,
) -> VelocitySnapshot:
    """
    Count log entries inside the 24h and 7d windows ending at ``now``.

    velocity_score = last_24h * 5 + last_7d + weighted_total. Adding the raw
    total keeps slow, large demand from being eclipsed by a short burst.

    Args:
        scan_log: Timestamps of demand signals (any order)
        weighted_total: Current weighted total of the record
        now: End of both windows

    Returns:
        VelocitySnapshot with counts and score
    """
    day_start = now - DAY_WINDOW
    week_start = now - WEEK_WINDOW

    last_24h = 0
    last_7d = 0
    for ts in scan_log:
        if ts >= week_start:
            last_7d += 1
            if ts >= day_start:
                last_24h += 1

    score = last_24h * RECENT_SCAN_MULTIPLIER + last_7d + weighted_total
    return VelocitySnapshot(last_24h=last_24h, last_7d=last_7d, velocity_score=score)


def prune_cutoff(now: datetime) -> datetime:
    """Entries strictly older than this fall outside every window."""
    return now - WEEK_WINDOW
