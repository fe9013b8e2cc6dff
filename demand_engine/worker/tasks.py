"""Background tasks and the shared engine services they drive."""

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from demand_engine import metrics
from demand_engine.aggregate.boosts import BoostRegistry
from demand_engine.aggregate.queue import DemandQueue
from demand_engine.aggregate.store import DemandStore
from demand_engine.db.models import DemandRecord
from demand_engine.db.session import AsyncSessionLocal
from demand_engine.errors import DemandEngineError
from demand_engine.logging_config import get_logger
from demand_engine.notify.dispatcher import NotificationDispatcher, build_dispatcher

logger = get_logger(__name__, component="worker")


class TaskRunner:
    """
    Owns the demand services for the process and runs periodic upkeep.

    Periodic jobs:
    - Reload category boosts into the in-memory registry
    - Decay velocity/urgency for records with no recent events
    - Recompute and persist testing queue positions
    """

    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.dispatcher: NotificationDispatcher | None = None
        self.boost_registry: BoostRegistry | None = None
        self.store: DemandStore | None = None
        self.queue: DemandQueue | None = None

    async def initialize(self, dispatcher: Optional[NotificationDispatcher] = None):
        """Build services; safe to call once per process."""
        self.dispatcher = dispatcher or build_dispatcher()
        self.boost_registry = BoostRegistry(self.session_factory)
        self.store = DemandStore(self.session_factory, self.boost_registry, self.dispatcher)
        self.queue = DemandQueue(self.session_factory, self.dispatcher)
        await self.boost_registry.refresh()
        logger.info("Task runner initialized")

    async def close(self):
        """Clean up resources."""
        if self.dispatcher:
            await self.dispatcher.close()

    async def refresh_boosts(self):
        """Reload category boosts from the database."""
        try:
            boosts = await self.boost_registry.refresh()
            metrics.record_scheduler_run("boost_refresh", True)
            logger.debug(f"Boost refresh loaded {len(boosts)} boosts")
        except Exception as e:
            metrics.record_scheduler_run("boost_refresh", False)
            logger.error(f"Boost refresh failed: {e}")

    async def refresh_velocities(self, now: Optional[datetime] = None):
        """Recompute window counts for records whose counts may have decayed."""
        now = now or datetime.utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(DemandRecord.barcode).where(
                    DemandRecord.status != "complete",
                    DemandRecord.scans_last_7d > 0,
                )
            )
            barcodes = [row[0] for row in result.all()]

        if not barcodes:
            logger.info("No records need a velocity refresh")
            metrics.record_scheduler_run("velocity_refresh", True)
            return

        failed = 0
        for barcode in barcodes:
            try:
                await self.store.refresh_velocity(barcode, now=now)
            except DemandEngineError as e:
                failed += 1
                logger.warning(f"Velocity refresh skipped for {barcode}: {e}")

        metrics.record_scheduler_run("velocity_refresh", failed == 0)
        logger.info(f"Refreshed velocity for {len(barcodes) - failed}/{len(barcodes)} records")

    async def refresh_queue_positions(self):
        """Persist queue positions and announce large jumps."""
        try:
            await self.queue.refresh_queue_positions()
            metrics.record_scheduler_run("queue_refresh", True)
        except Exception as e:
            metrics.record_scheduler_run("queue_refresh", False)
            logger.error(f"Queue refresh failed: {e}", exc_info=True)


task_runner = TaskRunner()
