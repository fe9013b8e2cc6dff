"""Testing queue ordering."""

from datetime import datetime
from typing import Iterable, Protocol, TypeVar

from demand_engine.aggregate.classifier import is_rankable


class Rankable(Protocol):
    barcode: str
    status: str
    excluded_from_queue: bool
    velocity_score: float
    weighted_total: float
    created_at: datetime


R = TypeVar("R", bound=Rankable)


def queue_sort_key(record: Rankable) -> tuple:
    """Velocity desc, then weighted total desc, then oldest request first."""
    return (-record.velocity_score, -record.weighted_total, record.created_at)


def rank_records(records: Iterable[R]) -> list[R]:
    """
    Order records for testing.

    Terminal and excluded records are dropped. The result is a fresh list;
    the inputs are not modified.
    """
    candidates = [r for r in records if is_rankable(r.status, r.excluded_from_queue)]
    return sorted(candidates, key=queue_sort_key)


def queue_positions(records: Iterable[R]) -> dict[str, int]:
    """Map barcode -> 1-based queue position."""
    return {r.barcode: i for i, r in enumerate(rank_records(records), start=1)}
