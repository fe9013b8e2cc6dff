"""Read-side views over demand records: testing queue, requests, investigations."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from demand_engine import metrics
from demand_engine.aggregate.events import QueuePositionJumped
from demand_engine.aggregate.ranker import queue_positions, rank_records
from demand_engine.config import settings
from demand_engine.db.models import Contributor, DemandRecord
from demand_engine.notify.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

REQUEST_SORTS = ("most_voted", "newest", "almost_funded")


@dataclass(frozen=True)
class Investigation:
    """A record a voter has contributed to."""

    record: DemandRecord
    sequence_number: int
    contributed_at: datetime
    queue_position: Optional[int]


class DemandQueue:
    """Queue ordering and list views; never mutates demand counters."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher or NotificationDispatcher()

    async def _rankable_records(self, db: AsyncSession) -> list[DemandRecord]:
        result = await db.execute(
            select(DemandRecord).where(
                DemandRecord.status != "complete",
                DemandRecord.excluded_from_queue.is_(False),
            )
        )
        return list(result.scalars().all())

    async def get_queue(self, limit: int = 50, offset: int = 0) -> tuple[list[DemandRecord], int]:
        """
        Current testing queue.

        Returns:
            (page of ranked records, total queue length)
        """
        async with self.session_factory() as db:
            ranked = rank_records(await self._rankable_records(db))
        return ranked[offset : offset + limit], len(ranked)

    async def list_requests(
        self, sort: str = "most_voted", limit: int = 50, offset: int = 0
    ) -> list[DemandRecord]:
        """Records still collecting votes, for the public requests board."""
        if sort not in REQUEST_SORTS:
            raise ValueError(f"sort must be one of {', '.join(REQUEST_SORTS)}")

        query = select(DemandRecord).where(DemandRecord.status == "collecting_votes")
        if sort == "most_voted":
            query = query.order_by(DemandRecord.weighted_total.desc(), DemandRecord.created_at)
        elif sort == "newest":
            query = query.order_by(DemandRecord.created_at.desc(), DemandRecord.id.desc())

        async with self.session_factory() as db:
            if sort == "almost_funded":
                records = list((await db.execute(query)).scalars().all())
                records.sort(
                    key=lambda r: (-(r.weighted_total / r.funding_threshold), r.created_at)
                )
                return records[offset : offset + limit]
            result = await db.execute(query.offset(offset).limit(limit))
            return list(result.scalars().all())

    async def get_voter_investigations(self, voter_key: str) -> list[Investigation]:
        """Every record the voter contributed to, newest contribution first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(DemandRecord, Contributor)
                .join(Contributor, Contributor.record_id == DemandRecord.id)
                .where(Contributor.voter_key == voter_key)
                .order_by(Contributor.contributed_at.desc())
            )
            rows = result.all()
            positions = queue_positions(await self._rankable_records(db))

        return [
            Investigation(
                record=record,
                sequence_number=contributor.sequence_number,
                contributed_at=contributor.contributed_at,
                queue_position=positions.get(record.barcode),
            )
            for record, contributor in rows
        ]

    async def refresh_queue_positions(self) -> int:
        """
        Recompute and store queue positions for every rankable record.

        Records that climbed at least ``queue_jump_min_positions`` places
        since the last refresh produce a QueuePositionJumped event.

        Returns:
            Number of records in the queue
        """
        now = datetime.utcnow()
        events: list[QueuePositionJumped] = []

        async with self.session_factory() as db:
            records = await self._rankable_records(db)
            positions = queue_positions(records)

            for record in records:
                position = positions[record.barcode]
                previous = record.queue_position
                if (
                    previous is not None
                    and previous - position >= settings.queue_jump_min_positions
                ):
                    events.append(
                        QueuePositionJumped(
                            barcode=record.barcode,
                            previous_position=previous,
                            position=position,
                            occurred_at=now,
                        )
                    )
                if previous == position:
                    continue
                # Core UPDATE: positions are derived data and must not bump
                # the record version that guards event application.
                await db.execute(
                    update(DemandRecord.__table__)
                    .where(DemandRecord.__table__.c.id == record.id)
                    .values(queue_position=position, previous_queue_position=previous)
                )

            await db.execute(
                update(DemandRecord.__table__)
                .where(
                    (DemandRecord.__table__.c.status == "complete")
                    | (DemandRecord.__table__.c.excluded_from_queue.is_(True))
                )
                .where(DemandRecord.__table__.c.queue_position.is_not(None))
                .values(queue_position=None)
            )
            await db.commit()

        metrics.queue_size.set(len(positions))
        logger.info(f"Queue refreshed: {len(positions)} records, {len(events)} position jumps")
        self.dispatcher.dispatch(events)
        return len(positions)
