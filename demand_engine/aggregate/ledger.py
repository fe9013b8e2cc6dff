"""Contributor ledger: arrival-ordered voters and photo contributors."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from demand_engine.db.models import Contributor, DemandRecord, PhotoContributor
from demand_engine.errors import DuplicateSubmission


@dataclass(frozen=True)
class LedgerEntry:
    sequence_number: int
    is_new: bool


async def record_contributor(
    db: AsyncSession,
    record: DemandRecord,
    voter_key: str,
    timestamp: datetime,
    user_id: Optional[str] = None,
) -> LedgerEntry:
    """
    Credit a voter on a record, once.

    Must run inside the record's versioned update so sequence numbers are
    assigned serially. A repeat voter gets their original sequence number.
    The first voter ever recorded becomes the record's first scout.
    """
    existing = await db.scalar(
        select(Contributor.sequence_number).where(
            Contributor.record_id == record.id,
            Contributor.voter_key == voter_key,
        )
    )
    if existing is not None:
        return LedgerEntry(sequence_number=existing, is_new=False)

    sequence_number = record.unique_voters + 1
    db.add(
        Contributor(
            record_id=record.id,
            voter_key=voter_key,
            user_id=user_id,
            sequence_number=sequence_number,
            contributed_at=timestamp,
        )
    )
    record.unique_voters = sequence_number

    if record.first_scout_key is None:
        record.first_scout_key = voter_key
        record.first_scout_at = timestamp

    return LedgerEntry(sequence_number=sequence_number, is_new=True)


async def record_photo_contribution(
    db: AsyncSession,
    record: DemandRecord,
    voter_key: str,
    submission_id: str,
    bonus_weight: float,
    timestamp: datetime,
) -> PhotoContributor:
    """
    Append a photo contribution.

    Raises:
        DuplicateSubmission: submission_id already recorded for this barcode
    """
    already = await db.scalar(
        select(PhotoContributor.id).where(
            PhotoContributor.record_id == record.id,
            PhotoContributor.submission_id == submission_id,
        )
    )
    if already is not None:
        raise DuplicateSubmission(record.barcode, submission_id)

    contribution = PhotoContributor(
        record_id=record.id,
        voter_key=voter_key,
        submission_id=submission_id,
        contributed_at=timestamp,
        bonus_weight=bonus_weight,
    )
    db.add(contribution)
    record.photo_contribution_count += 1
    return contribution


async def get_contributors(db: AsyncSession, record_id: int) -> list[Contributor]:
    result = await db.execute(
        select(Contributor)
        .where(Contributor.record_id == record_id)
        .order_by(Contributor.sequence_number)
    )
    return list(result.scalars().all())


async def get_photo_contributors(db: AsyncSession, record_id: int) -> list[PhotoContributor]:
    result = await db.execute(
        select(PhotoContributor)
        .where(PhotoContributor.record_id == record_id)
        .order_by(PhotoContributor.contributed_at, PhotoContributor.id)
    )
    return list(result.scalars().all())


async def is_contributor(db: AsyncSession, record: DemandRecord, voter_key: str) -> bool:
    """Whether the voter already holds a ledger slot on this record."""
    existing = await db.scalar(
        select(Contributor.id).where(
            Contributor.record_id == record.id,
            Contributor.voter_key == voter_key,
        )
    )
    return existing is not None
