"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from demand_engine.aggregate.classifier import funding_progress


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class DemandRecord(Base):
    """Aggregated demand for one product barcode."""

    __tablename__ = "demand_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    barcode: Mapped[str] = mapped_column(String(64), nullable=False)

    # Display metadata from the catalog lookup, backfilled when missing
    product_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Weighted demand
    weighted_total: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    search_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    scan_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    member_scan_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    photo_contribution_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_voters: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    funding_threshold: Mapped[float] = mapped_column(Float, nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(32), default="collecting_votes", nullable=False, index=True
    )
    threshold_reached_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    linked_product_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Velocity (materialized from the scan log)
    scans_last_24h: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    scans_last_7d: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    velocity_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    urgency_tier: Mapped[str] = mapped_column(String(16), default="normal", nullable=False)
    velocity_computed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Attribution
    first_scout_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    first_scout_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Queue
    queue_position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    excluded_from_queue: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Notification bookkeeping (internal only)
    last_trending_notification_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    last_notified_tier: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    previous_queue_position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Compare-and-swap column: every UPDATE is guarded by the version it read
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        UniqueConstraint("barcode", name="uq_demand_record_barcode"),
        CheckConstraint("weighted_total >= 0", name="ck_demand_weighted_total_non_negative"),
        CheckConstraint("funding_threshold > 0", name="ck_demand_funding_threshold_positive"),
        Index("ix_demand_records_queue", "status", "velocity_score"),
    )

    @property
    def funding_progress_percent(self) -> int:
        """Progress toward the funding threshold, derived on every read."""
        return funding_progress(self.weighted_total, self.funding_threshold)

    @property
    def is_terminal(self) -> bool:
        return self.status == "complete"


class ScanLogEntry(Base):
    """Timestamp of one demand signal, kept for velocity windows only."""

    __tablename__ = "demand_scan_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("demand_records.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    scanned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("ix_demand_scan_log_record_time", "record_id", "scanned_at"),)


class Contributor(Base):
    """Distinct voter credited on a demand record, in arrival order."""

    __tablename__ = "demand_contributors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("demand_records.id", ondelete="CASCADE"), nullable=False
    )
    voter_key: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    contributed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("record_id", "voter_key", name="uq_contributor_record_voter"),
        UniqueConstraint("record_id", "sequence_number", name="uq_contributor_record_sequence"),
        Index("ix_demand_contributors_voter", "voter_key"),
    )


class PhotoContributor(Base):
    """Photo enrichment credited to a voter, one row per submission."""

    __tablename__ = "demand_photo_contributors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("demand_records.id", ondelete="CASCADE"), nullable=False
    )
    voter_key: Mapped[str] = mapped_column(String(128), nullable=False)
    submission_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contributed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    bonus_weight: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("record_id", "submission_id", name="uq_photo_record_submission"),
    )


class StatusHistory(Base):
    """Lifecycle transitions, including administrative overrides."""

    __tablename__ = "demand_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("demand_records.id", ondelete="CASCADE"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_override: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Subscriber(Base):
    """Voter asking to be told when testing completes."""

    __tablename__ = "demand_subscribers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("demand_records.id", ondelete="CASCADE"), nullable=False
    )
    subscriber_key: Mapped[str] = mapped_column(String(128), nullable=False)
    subscribed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("record_id", "subscriber_key", name="uq_subscriber_record_key"),
    )


class CategoryBoost(Base):
    """Admin-configured multiplier for matching product categories."""

    __tablename__ = "category_boosts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_label: Mapped[str] = mapped_column(String(128), nullable=False)
    headline: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    keywords: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    multiplier: Mapped[float] = mapped_column(Float, default=2.0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "multiplier >= 1 AND multiplier <= 10", name="ck_category_boost_multiplier_range"
        ),
    )
