"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from demand_engine.config import settings
from demand_engine.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Boost cache reloads every settings.boost_cache_ttl_seconds
    - Velocity decay runs every settings.velocity_refresh_interval_minutes
    - Queue positions are recomputed every settings.queue_refresh_interval_minutes

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        task_runner.refresh_boosts,
        IntervalTrigger(seconds=max(10, settings.boost_cache_ttl_seconds)),
        id="boost_refresh",
        name="Reload category boosts",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.refresh_velocities,
        IntervalTrigger(minutes=max(1, settings.velocity_refresh_interval_minutes)),
        id="velocity_refresh",
        name="Decay scan velocity and urgency",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.refresh_queue_positions,
        IntervalTrigger(minutes=max(1, settings.queue_refresh_interval_minutes)),
        id="queue_refresh",
        name="Recompute testing queue positions",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    logger.info(
        f"Scheduler configured: velocity every {settings.velocity_refresh_interval_minutes}m, "
        f"queue every {settings.queue_refresh_interval_minutes}m"
    )
    return scheduler
