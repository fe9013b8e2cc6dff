"""Shared fixtures: per-test SQLite database and engine services."""

from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from demand_engine.aggregate.boosts import BoostRegistry
from demand_engine.aggregate.events import DemandEvent, ProductText, VoterContext
from demand_engine.aggregate.queue import DemandQueue
from demand_engine.aggregate.store import DemandStore
from demand_engine.db.models import Base
from demand_engine.notify.dispatcher import NotificationDispatcher

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


class RecordingNotifier:
    """Notifier that keeps every event it is handed."""

    def __init__(self):
        self.events = []

    async def send(self, event) -> bool:
        self.events.append(event)
        return True

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]


@pytest.fixture
async def session_factory(tmp_path):
    """Async session factory bound to a fresh SQLite file database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'demand.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def sink() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(sink) -> NotificationDispatcher:
    return NotificationDispatcher(notifiers=[sink])


@pytest.fixture
def boost_registry(session_factory) -> BoostRegistry:
    # TTL of zero reloads on every read so tests see boosts immediately
    return BoostRegistry(session_factory, ttl_seconds=0)


@pytest.fixture
def store(session_factory, boost_registry, dispatcher) -> DemandStore:
    return DemandStore(
        session_factory,
        boost_registry=boost_registry,
        dispatcher=dispatcher,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def queue(session_factory, dispatcher) -> DemandQueue:
    return DemandQueue(session_factory, dispatcher)


@pytest.fixture
def make_event():
    """Factory for demand events with sensible defaults."""

    def _make(
        event_type: str = "scan",
        barcode: str = "012345",
        voter_key: str = "voter-1",
        at: datetime = BASE_TIME,
        is_member: bool = False,
        category: str | None = None,
        product_name: str | None = None,
        **kwargs,
    ) -> DemandEvent:
        return DemandEvent(
            barcode=barcode,
            event_type=event_type,
            voter=VoterContext(voter_key=voter_key, is_member=is_member),
            timestamp=at,
            product=ProductText(product_name=product_name, category=category),
            **kwargs,
        )

    return _make
