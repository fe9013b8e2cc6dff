"""Demand record store: atomic per-barcode event application.

Every mutation runs as one database transaction guarded by the record's
``version_id`` column. Two writers that read the same version cannot both
commit: the loser's UPDATE matches no row, SQLAlchemy raises StaleDataError,
and the whole attempt is retried from a fresh read. Records for different
barcodes never contend.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from demand_engine import metrics
from demand_engine.aggregate import ledger
from demand_engine.aggregate.boosts import BoostEntry, BoostRegistry
from demand_engine.aggregate.classifier import (
    check_transition,
    is_escalation,
    status_rank,
    threshold_crossed,
    tier_rank,
)
from demand_engine.aggregate.events import (
    DemandEvent,
    EventType,
    ProductText,
    TestingCompleted,
    ThresholdReached,
    TransitionEvent,
    UrgencyEscalated,
)
from demand_engine.aggregate.velocity import compute_velocity, prune_cutoff
from demand_engine.aggregate.weights import resolve_weight
from demand_engine.config import settings
from demand_engine.db.models import (
    Contributor,
    DemandRecord,
    PhotoContributor,
    ScanLogEntry,
    StatusHistory,
    Subscriber,
)
from demand_engine.errors import (
    ConcurrencyConflict,
    DuplicateSubmission,
    InvalidCorrection,
    InvalidStatusTransition,
    UnknownBarcode,
)
from demand_engine.logging_config import get_logger
from demand_engine.notify.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENGINE_ACTOR = "demand-engine"

COUNT_FIELDS = {
    EventType.SEARCH: "search_count",
    EventType.SCAN: "scan_count",
    EventType.MEMBER_SCAN: "member_scan_count",
}


@dataclass(frozen=True)
class DemandSummary:
    """Public view of a record after an event was applied."""

    barcode: str
    status: str
    weighted_total: float
    funding_threshold: float
    funding_progress_percent: int
    urgency_tier: str
    unique_voters: int
    velocity_score: float
    scans_last_24h: int
    scans_last_7d: int
    event_type: Optional[str] = None
    weight_applied: float = 0.0
    boost_multiplier: float = 1.0
    sequence_number: Optional[int] = None
    is_new_voter: bool = False
    accepted: bool = True
    duplicate: bool = False

    @classmethod
    def from_record(cls, record: DemandRecord, **extra) -> "DemandSummary":
        return cls(
            barcode=record.barcode,
            status=record.status,
            weighted_total=record.weighted_total,
            funding_threshold=record.funding_threshold,
            funding_progress_percent=record.funding_progress_percent,
            urgency_tier=record.urgency_tier,
            unique_voters=record.unique_voters,
            velocity_score=record.velocity_score,
            scans_last_24h=record.scans_last_24h,
            scans_last_7d=record.scans_last_7d,
            **extra,
        )


@dataclass
class _Outcome:
    summary: DemandSummary
    events: list[TransitionEvent] = field(default_factory=list)


class DemandStore:
    """
    Applies demand events and lifecycle changes to DemandRecords.

    Features:
    - Create-on-first-use, race-safe through the unique barcode constraint
    - Compare-and-swap updates with bounded retries
    - Materialized velocity/urgency recomputed inside the same transaction
    - Transition events dispatched only after a successful commit
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        boost_registry: Optional[BoostRegistry] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        max_attempts: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.boost_registry = boost_registry
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.max_attempts = max_attempts or settings.apply_event_max_attempts
        self.retry_backoff_seconds = (
            settings.apply_event_retry_backoff_seconds
            if retry_backoff_seconds is None
            else retry_backoff_seconds
        )

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    async def _run_atomic(
        self,
        barcode: str,
        operation: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """Run ``operation`` in its own transaction, retrying write collisions."""
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as db:
                try:
                    result = await operation(db)
                    await db.commit()
                    return result
                except StaleDataError as e:
                    await db.rollback()
                    last_error = e
                    reason = "version_conflict"
                except IntegrityError as e:
                    # Lost a create race or a unique ledger insert; re-read and retry
                    await db.rollback()
                    last_error = e
                    reason = "integrity_conflict"

            metrics.record_concurrency_retry(reason)
            logger.info(
                f"Write collision on {barcode} ({reason}), attempt {attempt}/{self.max_attempts}"
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_backoff_seconds * attempt)

        logger.error(f"Giving up on {barcode} after {self.max_attempts} attempts: {last_error}")
        raise ConcurrencyConflict(barcode, self.max_attempts) from last_error

    async def _load(self, db: AsyncSession, barcode: str) -> Optional[DemandRecord]:
        result = await db.execute(select(DemandRecord).where(DemandRecord.barcode == barcode))
        return result.scalar_one_or_none()

    async def _require(self, db: AsyncSession, barcode: str) -> DemandRecord:
        record = await self._load(db, barcode)
        if record is None:
            raise UnknownBarcode(barcode)
        return record

    async def _get_or_create(self, db: AsyncSession, event: DemandEvent) -> DemandRecord:
        """Look up the record, creating it on the first event for a barcode."""
        record = await self._load(db, event.barcode)
        if record is not None:
            return record

        record = DemandRecord(
            barcode=event.barcode,
            product_name=event.product.product_name,
            brand=event.product.brand,
            image_url=event.product.image_url,
            category=event.product.category,
            funding_threshold=settings.default_funding_threshold,
            weighted_total=0.0,
            search_count=0,
            scan_count=0,
            member_scan_count=0,
            photo_contribution_count=0,
            unique_voters=0,
            scans_last_24h=0,
            scans_last_7d=0,
            velocity_score=0.0,
            status="collecting_votes",
            urgency_tier="normal",
            excluded_from_queue=False,
            created_at=event.timestamp,
        )
        db.add(record)
        # A concurrent creator makes this raise IntegrityError; the retry
        # then finds the winner's row and updates it.
        await db.flush()
        db.add(
            StatusHistory(
                record_id=record.id,
                from_status=None,
                to_status="collecting_votes",
                changed_at=event.timestamp,
                actor=ENGINE_ACTOR,
            )
        )
        logger.info(f"Created demand record for barcode {event.barcode}")
        return record

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    async def apply_event(self, event: DemandEvent) -> DemandSummary:
        """
        Apply one demand event atomically.

        Args:
            event: Validated demand event

        Returns:
            DemandSummary of the record after the event

        Raises:
            InvalidEventType: Unknown event kind (raised before any write)
            ConcurrencyConflict: Retries exhausted; safe to retry
        """
        start = time.monotonic()
        boosts: Sequence[BoostEntry] = ()
        if self.boost_registry is not None and event.event_type is not EventType.PHOTO_CONTRIBUTION:
            boosts = await self.boost_registry.get_boosts()

        try:
            outcome = await self._run_atomic(
                event.barcode, lambda db: self._apply_once(db, event, boosts)
            )
        except ConcurrencyConflict:
            metrics.record_event_failed(event.event_type.value, "concurrency_conflict")
            raise

        summary = outcome.summary
        if summary.accepted and not summary.duplicate:
            metrics.record_event_applied(
                summary.event_type, summary.weight_applied, time.monotonic() - start
            )
        else:
            reason = "duplicate" if summary.duplicate else "terminal"
            metrics.record_event_skipped(event.event_type.value, reason)

        self.dispatcher.dispatch(outcome.events)
        return summary

    async def _apply_once(
        self,
        db: AsyncSession,
        event: DemandEvent,
        boosts: Sequence[BoostEntry],
    ) -> _Outcome:
        record = await self._get_or_create(db, event)

        if record.is_terminal:
            logger.debug(f"Ignoring {event.event_type.value} for completed record {record.barcode}")
            return _Outcome(
                DemandSummary.from_record(record, event_type=event.event_type.value, accepted=False)
            )

        self._backfill_metadata(record, event.product)
        product = ProductText(
            product_name=event.product.product_name or record.product_name,
            brand=event.product.brand or record.brand,
            category=event.product.category or record.category,
        )
        resolved = resolve_weight(event.event_type, event.voter, product, boosts, event.timestamp)

        weight = resolved.weight
        sequence_number = None
        is_new_voter = False
        if resolved.event_type is EventType.PHOTO_CONTRIBUTION:
            # Photo bonus only rewards people who have not voted on this barcode
            if await ledger.is_contributor(db, record, event.voter.voter_key):
                weight = 0.0
            try:
                await ledger.record_photo_contribution(
                    db,
                    record,
                    voter_key=event.voter.voter_key,
                    submission_id=event.submission_id,
                    bonus_weight=weight,
                    timestamp=event.timestamp,
                )
            except DuplicateSubmission:
                logger.debug(
                    f"Photo submission {event.submission_id} already credited on {record.barcode}"
                )
                return _Outcome(
                    DemandSummary.from_record(
                        record, event_type=resolved.event_type.value, duplicate=True
                    )
                )
        else:
            entry = await ledger.record_contributor(
                db,
                record,
                voter_key=event.voter.voter_key,
                timestamp=event.timestamp,
                user_id=event.voter.user_id,
            )
            sequence_number = entry.sequence_number
            is_new_voter = entry.is_new
            count_field = COUNT_FIELDS[resolved.event_type]
            setattr(record, count_field, getattr(record, count_field) + 1)
            db.add(
                ScanLogEntry(
                    record_id=record.id,
                    event_type=resolved.event_type.value,
                    scanned_at=event.timestamp,
                )
            )

        if event.notify_on_complete:
            await self._add_subscriber(db, record, event.voter.user_id or event.voter.voter_key)

        record.weighted_total += weight
        events = await self._reclassify(db, record, event.timestamp)

        summary = DemandSummary.from_record(
            record,
            event_type=resolved.event_type.value,
            weight_applied=weight,
            boost_multiplier=resolved.multiplier,
            sequence_number=sequence_number,
            is_new_voter=is_new_voter,
        )
        return _Outcome(summary, events)

    @staticmethod
    def _backfill_metadata(record: DemandRecord, product: ProductText) -> None:
        """Fill display fields the record is still missing."""
        for attr in ("product_name", "brand", "image_url", "category"):
            value = getattr(product, attr)
            if value and not getattr(record, attr):
                setattr(record, attr, value)

    async def _reclassify(
        self,
        db: AsyncSession,
        record: DemandRecord,
        now: datetime,
    ) -> list[TransitionEvent]:
        """
        Recompute velocity, urgency and threshold state for a record.

        Runs inside the caller's transaction. Log entries older than the 7-day
        window are pruned only after the window counts are taken.
        """
        events: list[TransitionEvent] = []
        cutoff = prune_cutoff(now)

        timestamps = (
            await db.scalars(
                select(ScanLogEntry.scanned_at).where(
                    ScanLogEntry.record_id == record.id,
                    ScanLogEntry.scanned_at >= cutoff,
                )
            )
        ).all()
        snapshot = compute_velocity(timestamps, record.weighted_total, now)

        await db.execute(
            delete(ScanLogEntry).where(
                ScanLogEntry.record_id == record.id,
                ScanLogEntry.scanned_at < cutoff,
            )
        )

        previous_tier = record.urgency_tier
        new_tier = snapshot.urgency_tier
        record.scans_last_24h = snapshot.last_24h
        record.scans_last_7d = snapshot.last_7d
        record.velocity_score = snapshot.velocity_score
        record.urgency_tier = new_tier
        record.velocity_computed_at = now

        if is_escalation(previous_tier, new_tier):
            notify = self._escalation_due(record, new_tier, now)
            metrics.record_urgency_escalation(new_tier, notify)
            if notify:
                record.last_trending_notification_at = now
                record.last_notified_tier = new_tier
                events.append(
                    UrgencyEscalated(
                        barcode=record.barcode,
                        previous_tier=previous_tier,
                        tier=new_tier,
                        scans_last_24h=snapshot.last_24h,
                        scans_last_7d=snapshot.last_7d,
                        occurred_at=now,
                    )
                )
            logger.info(
                f"Urgency for {record.barcode} escalated {previous_tier} -> {new_tier}"
                f"{'' if notify else ' (notification cooling down)'}"
            )

        if threshold_crossed(record.status, record.weighted_total, record.funding_threshold):
            record.status = "threshold_reached"
            record.threshold_reached_at = now
            db.add(
                StatusHistory(
                    record_id=record.id,
                    from_status="collecting_votes",
                    to_status="threshold_reached",
                    changed_at=now,
                    actor=ENGINE_ACTOR,
                    notes=f"weighted total {record.weighted_total:g} >= {record.funding_threshold:g}",
                )
            )
            metrics.record_threshold_reached()
            metrics.record_status_transition("threshold_reached")
            events.append(
                ThresholdReached(
                    barcode=record.barcode,
                    weighted_total=record.weighted_total,
                    funding_threshold=record.funding_threshold,
                    occurred_at=now,
                )
            )
            logger.info(f"Barcode {record.barcode} reached its funding threshold")

        return events

    @staticmethod
    def _escalation_due(record: DemandRecord, new_tier: str, now: datetime) -> bool:
        """Cooldown check; a tier above the last one notified always goes out."""
        last_at = record.last_trending_notification_at
        if last_at is None:
            return True
        if tier_rank(new_tier) > tier_rank(record.last_notified_tier):
            return True
        cooldown = timedelta(hours=settings.urgency_notification_cooldown_hours)
        return now - last_at >= cooldown

    async def _add_subscriber(self, db: AsyncSession, record: DemandRecord, key: str) -> bool:
        exists = await db.scalar(
            select(Subscriber.id).where(
                Subscriber.record_id == record.id,
                Subscriber.subscriber_key == key,
            )
        )
        if exists is not None:
            return False
        db.add(Subscriber(record_id=record.id, subscriber_key=key, subscribed_at=datetime.utcnow()))
        return True

    # ------------------------------------------------------------------
    # Lifecycle (lab intake and admin)
    # ------------------------------------------------------------------

    async def advance_status(
        self,
        barcode: str,
        to_status: str,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
        linked_product_id: Optional[str] = None,
    ) -> DemandSummary:
        """
        Move a record one step forward in the lab lifecycle.

        Raises:
            UnknownBarcode: No record for barcode
            InvalidStatusTransition: Skipped, backward, or automatic-only step
        """

        async def operation(db: AsyncSession) -> _Outcome:
            record = await self._require(db, barcode)
            try:
                reason = check_transition(record.status, to_status)
            except ValueError as e:
                raise InvalidStatusTransition(barcode, record.status, to_status, str(e)) from None
            if reason:
                raise InvalidStatusTransition(barcode, record.status, to_status, reason)
            if linked_product_id is not None:
                record.linked_product_id = linked_product_id
            events = await self._set_status(db, record, to_status, actor, notes, override=False)
            return _Outcome(DemandSummary.from_record(record), events)

        outcome = await self._run_atomic(barcode, operation)
        self.dispatcher.dispatch(outcome.events)
        return outcome.summary

    async def override_status(
        self,
        barcode: str,
        to_status: str,
        actor: str,
        reason: str,
    ) -> DemandSummary:
        """
        Force a record into any status, including backward moves.

        Raises:
            UnknownBarcode: No record for barcode
            InvalidCorrection: Missing reason or unknown status
        """
        if not reason or not reason.strip():
            raise InvalidCorrection("status overrides require a reason")
        try:
            status_rank(to_status)
        except ValueError as e:
            raise InvalidCorrection(str(e)) from None

        async def operation(db: AsyncSession) -> _Outcome:
            record = await self._require(db, barcode)
            get_logger(__name__, barcode=barcode, actor=actor).warning(
                f"Status override on {barcode}: {record.status} -> {to_status} "
                f"by {actor} ({reason})"
            )
            events = await self._set_status(db, record, to_status, actor, reason, override=True)
            return _Outcome(DemandSummary.from_record(record), events)

        outcome = await self._run_atomic(barcode, operation)
        self.dispatcher.dispatch(outcome.events)
        return outcome.summary

    async def _set_status(
        self,
        db: AsyncSession,
        record: DemandRecord,
        to_status: str,
        actor: Optional[str],
        notes: Optional[str],
        override: bool,
    ) -> list[TransitionEvent]:
        now = datetime.utcnow()
        from_status = record.status
        record.status = to_status
        if to_status == "threshold_reached" and record.threshold_reached_at is None:
            record.threshold_reached_at = now
        db.add(
            StatusHistory(
                record_id=record.id,
                from_status=from_status,
                to_status=to_status,
                changed_at=now,
                actor=actor,
                notes=notes,
                is_override=override,
            )
        )
        metrics.record_status_transition(to_status, override=override)
        logger.info(f"Barcode {record.barcode} moved {from_status} -> {to_status}")

        if to_status != "complete" or from_status == "complete":
            return []
        subscribers = (
            await db.scalars(
                select(Subscriber.subscriber_key)
                .where(Subscriber.record_id == record.id)
                .order_by(Subscriber.id)
            )
        ).all()
        return [
            TestingCompleted(
                barcode=record.barcode,
                linked_product_id=record.linked_product_id,
                subscriber_keys=tuple(subscribers),
                occurred_at=now,
            )
        ]

    async def link_product(self, barcode: str, product_id: str) -> DemandSummary:
        """Attach the tested-product id once testing is complete."""

        async def operation(db: AsyncSession) -> DemandSummary:
            record = await self._require(db, barcode)
            if record.status != "complete":
                raise InvalidStatusTransition(
                    barcode, record.status, "complete", "products link only to completed records"
                )
            record.linked_product_id = product_id
            return DemandSummary.from_record(record)

        return await self._run_atomic(barcode, operation)

    async def correct_weighted_total(
        self,
        barcode: str,
        new_total: float,
        actor: str,
        reason: Optional[str] = None,
    ) -> DemandSummary:
        """Administrative correction; the only path that may lower the total."""
        if new_total < 0:
            raise InvalidCorrection("weighted total cannot be negative")

        async def operation(db: AsyncSession) -> _Outcome:
            record = await self._require(db, barcode)
            get_logger(__name__, barcode=barcode, actor=actor).warning(
                f"Weighted total correction on {barcode}: {record.weighted_total:g} -> "
                f"{new_total:g} by {actor} ({reason or 'no reason given'})"
            )
            record.weighted_total = float(new_total)
            events: list[TransitionEvent] = []
            if not record.is_terminal:
                events = await self._reclassify(db, record, datetime.utcnow())
            return _Outcome(DemandSummary.from_record(record), events)

        outcome = await self._run_atomic(barcode, operation)
        self.dispatcher.dispatch(outcome.events)
        return outcome.summary

    async def set_funding_threshold(self, barcode: str, threshold: float, actor: str) -> DemandSummary:
        if threshold <= 0:
            raise InvalidCorrection("funding threshold must be positive")

        async def operation(db: AsyncSession) -> _Outcome:
            record = await self._require(db, barcode)
            logger.info(
                f"Funding threshold for {barcode}: {record.funding_threshold:g} -> "
                f"{threshold:g} by {actor}"
            )
            record.funding_threshold = float(threshold)
            events: list[TransitionEvent] = []
            if not record.is_terminal:
                events = await self._reclassify(db, record, datetime.utcnow())
            return _Outcome(DemandSummary.from_record(record), events)

        outcome = await self._run_atomic(barcode, operation)
        self.dispatcher.dispatch(outcome.events)
        return outcome.summary

    async def set_queue_exclusion(
        self,
        barcode: str,
        excluded: bool,
        actor: str,
        reason: Optional[str] = None,
    ) -> DemandSummary:
        """Hide a record from (or return it to) the testing queue."""

        async def operation(db: AsyncSession) -> DemandSummary:
            record = await self._require(db, barcode)
            record.excluded_from_queue = excluded
            if excluded:
                record.queue_position = None
            logger.info(
                f"Queue exclusion for {barcode} set to {excluded} by {actor}"
                f"{f' ({reason})' if reason else ''}"
            )
            return DemandSummary.from_record(record)

        return await self._run_atomic(barcode, operation)

    async def refresh_velocity(self, barcode: str, now: Optional[datetime] = None) -> DemandSummary:
        """Recompute window counts for a record without adding an event."""
        now = now or datetime.utcnow()

        async def operation(db: AsyncSession) -> _Outcome:
            record = await self._require(db, barcode)
            if record.is_terminal:
                return _Outcome(DemandSummary.from_record(record))
            events = await self._reclassify(db, record, now)
            return _Outcome(DemandSummary.from_record(record), events)

        outcome = await self._run_atomic(barcode, operation)
        self.dispatcher.dispatch(outcome.events)
        return outcome.summary

    async def subscribe(self, barcode: str, subscriber_key: str) -> bool:
        """Add a notify-on-complete subscriber; False if already subscribed."""

        async def operation(db: AsyncSession) -> bool:
            record = await self._require(db, barcode)
            return await self._add_subscriber(db, record, subscriber_key)

        return await self._run_atomic(barcode, operation)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_record(self, barcode: str) -> DemandRecord:
        async with self.session_factory() as db:
            return await self._require(db, barcode)

    async def get_status_history(self, barcode: str) -> list[StatusHistory]:
        async with self.session_factory() as db:
            record = await self._require(db, barcode)
            result = await db.execute(
                select(StatusHistory)
                .where(StatusHistory.record_id == record.id)
                .order_by(StatusHistory.changed_at, StatusHistory.id)
            )
            return list(result.scalars().all())

    async def get_contributors(
        self, barcode: str
    ) -> tuple[DemandRecord, list[Contributor], list[PhotoContributor]]:
        async with self.session_factory() as db:
            record = await self._require(db, barcode)
            contributors = await ledger.get_contributors(db, record.id)
            photos = await ledger.get_photo_contributors(db, record.id)
            return record, contributors, photos

    async def get_photo_contributors(self, barcode: str) -> list[PhotoContributor]:
        async with self.session_factory() as db:
            record = await self._require(db, barcode)
            return await ledger.get_photo_contributors(db, record.id)
