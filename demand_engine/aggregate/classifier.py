"""Urgency tiers, funding progress, and the demand lifecycle state machine.

Everything here is a pure function over counters; the store calls these
inside its atomic update so derived fields never drift from their sources.
"""

from decimal import ROUND_HALF_UP, Decimal

# Urgency thresholds, tuned against the velocity formula in velocity.py
URGENT_SCANS_24H = 100
URGENT_SCANS_7D = 500
TRENDING_SCANS_24H = 20
TRENDING_SCANS_7D = 100

TIER_ORDER = ("normal", "trending", "urgent")

STATUS_ORDER = ("collecting_votes", "threshold_reached", "queued", "testing", "complete")
TERMINAL_STATUSES = frozenset({"complete"})


def classify_urgency(scans_last_24h: int, scans_last_7d: int) -> str:
    """Map window counts to an urgency tier; the most severe tier wins."""
    if scans_last_24h >= URGENT_SCANS_24H or scans_last_7d >= URGENT_SCANS_7D:
        return "urgent"
    if scans_last_24h >= TRENDING_SCANS_24H or scans_last_7d >= TRENDING_SCANS_7D:
        return "trending"
    return "normal"


def tier_rank(tier: str | None) -> int:
    """Severity index of a tier (-1 for unknown/None)."""
    try:
        return TIER_ORDER.index(tier)
    except ValueError:
        return -1


def is_escalation(previous_tier: str, new_tier: str) -> bool:
    return tier_rank(new_tier) > tier_rank(previous_tier)


def funding_progress(weighted_total: float, funding_threshold: float) -> int:
    """
    Percent of the funding threshold reached, capped at 100.

    Halves round up (0.5 -> 1) so 12.5% displays as 13%.
    """
    if funding_threshold <= 0:
        raise ValueError("funding_threshold must be positive")
    ratio = Decimal(str(weighted_total)) / Decimal(str(funding_threshold)) * 100
    percent = int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return min(100, percent)


def threshold_crossed(status: str, weighted_total: float, funding_threshold: float) -> bool:
    """True when a collecting record has enough weight to advance."""
    return status == "collecting_votes" and weighted_total >= funding_threshold


def status_rank(status: str) -> int:
    try:
        return STATUS_ORDER.index(status)
    except ValueError:
        raise ValueError(f"Unknown status: {status!r}") from None


def next_status(status: str) -> str | None:
    """The only status a record may move to without an override."""
    rank = status_rank(status)
    if rank + 1 < len(STATUS_ORDER):
        return STATUS_ORDER[rank + 1]
    return None


def check_transition(from_status: str, to_status: str) -> str | None:
    """
    Validate a non-override lifecycle move.

    Returns:
        None if allowed, otherwise a reason string
    """
    status_rank(to_status)
    if from_status == to_status:
        return "record is already in that status"
    if status_rank(to_status) < status_rank(from_status):
        return "status never moves backward without an override"
    if to_status != next_status(from_status):
        return f"next status is {next_status(from_status)}"
    if from_status == "collecting_votes":
        return "threshold_reached is set automatically when funding completes"
    return None


def is_rankable(status: str, excluded: bool = False) -> bool:
    """Whether a record belongs in the testing queue."""
    return status not in TERMINAL_STATUSES and not excluded
