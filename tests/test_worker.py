"""Tests for scheduled upkeep jobs."""

from datetime import timedelta

import pytest

from demand_engine.worker.scheduler import setup_scheduler
from demand_engine.worker.tasks import TaskRunner

from conftest import BASE_TIME


@pytest.fixture
async def runner(session_factory, dispatcher):
    task_runner = TaskRunner(session_factory)
    await task_runner.initialize(dispatcher=dispatcher)
    yield task_runner
    await task_runner.close()


@pytest.mark.asyncio
async def test_velocity_refresh_decays_quiet_records(runner, make_event):
    for i in range(20):
        await runner.store.apply_event(make_event(voter_key=f"v{i}"))

    await runner.refresh_velocities(now=BASE_TIME + timedelta(days=3))

    record = await runner.store.get_record("012345")
    assert record.urgency_tier == "normal"
    assert record.scans_last_24h == 0
    assert record.scans_last_7d == 20


@pytest.mark.asyncio
async def test_queue_refresh_job(runner, make_event):
    await runner.store.apply_event(make_event(barcode="111"))
    await runner.refresh_queue_positions()

    assert (await runner.store.get_record("111")).queue_position == 1


@pytest.mark.asyncio
async def test_boost_refresh_job(runner):
    await runner.refresh_boosts()
    assert await runner.boost_registry.get_boosts() == ()


def test_scheduler_jobs_registered():
    scheduler = setup_scheduler()
    job_ids = {job.id for job in scheduler.get_jobs()}
    assert job_ids == {"boost_refresh", "velocity_refresh", "queue_refresh"}
