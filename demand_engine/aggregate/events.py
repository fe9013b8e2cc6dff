"""Inbound demand events, collaborator contexts, and outbound transition events."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from demand_engine.errors import InvalidEvent, InvalidEventType


class EventType(str, Enum):
    """Kinds of demand signal."""

    SEARCH = "search"
    SCAN = "scan"
    MEMBER_SCAN = "member_scan"
    PHOTO_CONTRIBUTION = "photo_contribution"

    @classmethod
    def parse(cls, value: "str | EventType") -> "EventType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidEventType(str(value)) from None

    @property
    def is_vote(self) -> bool:
        """Search and scans are demand votes; photos are enrichment."""
        return self is not EventType.PHOTO_CONTRIBUTION


class DemandStatus(str, Enum):
    """Lifecycle of a demand record, in order."""

    COLLECTING_VOTES = "collecting_votes"
    THRESHOLD_REACHED = "threshold_reached"
    QUEUED = "queued"
    TESTING = "testing"
    COMPLETE = "complete"


class UrgencyTier(str, Enum):
    NORMAL = "normal"
    TRENDING = "trending"
    URGENT = "urgent"


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC for storage."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass(frozen=True)
class VoterContext:
    """Identity collaborator output: a stable anonymous key plus membership."""

    voter_key: str
    is_member: bool = False
    user_id: Optional[str] = None


@dataclass(frozen=True)
class ProductText:
    """Catalog lookup output, used for boost matching and display."""

    product_name: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def match_text(self) -> str:
        """Lowercased name and category text searched for boost keywords."""
        parts = [self.product_name, self.category]
        return " ".join(p for p in parts if p).lower()


@dataclass
class DemandEvent:
    """One demand signal for a barcode."""

    barcode: str
    event_type: EventType
    voter: VoterContext
    timestamp: datetime
    product: ProductText = field(default_factory=ProductText)
    submission_id: Optional[str] = None
    notify_on_complete: bool = False

    def __post_init__(self):
        self.event_type = EventType.parse(self.event_type)
        self.barcode = (self.barcode or "").strip()
        if not self.barcode:
            raise InvalidEvent("barcode is required")
        if not self.voter or not self.voter.voter_key:
            raise InvalidEvent("voter key is required")
        if self.event_type is EventType.PHOTO_CONTRIBUTION and not self.submission_id:
            raise InvalidEvent("submission_id is required for photo contributions")
        self.timestamp = to_naive_utc(self.timestamp)


# ---------------------------------------------------------------------------
# Outbound events consumed by the notification collaborator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ThresholdReached:
    barcode: str
    weighted_total: float
    funding_threshold: float
    occurred_at: datetime
    kind: str = "threshold_reached"

    @property
    def dedupe_detail(self) -> str:
        return str(int(self.funding_threshold))


@dataclass(frozen=True)
class UrgencyEscalated:
    barcode: str
    previous_tier: str
    tier: str
    scans_last_24h: int
    scans_last_7d: int
    occurred_at: datetime
    kind: str = "urgency_escalated"

    @property
    def dedupe_detail(self) -> str:
        return self.tier


@dataclass(frozen=True)
class QueuePositionJumped:
    barcode: str
    previous_position: int
    position: int
    occurred_at: datetime
    kind: str = "queue_position_jumped"

    @property
    def positions_gained(self) -> int:
        return self.previous_position - self.position

    @property
    def dedupe_detail(self) -> str:
        return str(self.position)


@dataclass(frozen=True)
class TestingCompleted:
    barcode: str
    linked_product_id: Optional[str]
    subscriber_keys: tuple[str, ...]
    occurred_at: datetime
    kind: str = "testing_completed"

    __test__ = False  # not a pytest test class

    @property
    def dedupe_detail(self) -> str:
        return "complete"


TransitionEvent = ThresholdReached | UrgencyEscalated | QueuePositionJumped | TestingCompleted


def event_payload(event: TransitionEvent) -> dict:
    """Serialize a transition event for webhook delivery."""
    payload = {}
    for name in event.__dataclass_fields__:
        value = getattr(event, name)
        if isinstance(value, datetime):
            value = value.isoformat() + "Z"
        elif isinstance(value, tuple):
            value = list(value)
        payload[name] = value
    return payload
