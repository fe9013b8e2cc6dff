"""Category boost registry with a short-lived in-process cache."""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from demand_engine.aggregate.events import ProductText
from demand_engine.config import settings
from demand_engine.db.models import CategoryBoost
from demand_engine import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoostEntry:
    """Detached snapshot of a CategoryBoost row."""

    id: Optional[int]
    category_label: str
    keywords: tuple[str, ...]
    multiplier: float
    is_active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, boost: CategoryBoost) -> "BoostEntry":
        return cls(
            id=boost.id,
            category_label=boost.category_label,
            keywords=tuple(k for k in (boost.keywords or []) if k),
            multiplier=float(boost.multiplier),
            is_active=boost.is_active,
            starts_at=boost.starts_at,
            ends_at=boost.ends_at,
        )

    def is_live(self, now: datetime) -> bool:
        """Active and inside [starts_at, ends_at]; missing bounds are open."""
        if not self.is_active:
            return False
        if self.starts_at is not None and now < self.starts_at:
            return False
        if self.ends_at is not None and now > self.ends_at:
            return False
        return True

    def matches(self, product: ProductText) -> bool:
        """Keyword substring in name/category, or exact category label."""
        if product.category and product.category.strip().lower() == self.category_label.strip().lower():
            return True
        text = product.match_text
        if not text:
            return False
        return any(keyword.lower() in text for keyword in self.keywords)


def match_boost(
    boosts: Sequence[BoostEntry],
    product: ProductText,
    now: datetime,
) -> Optional[BoostEntry]:
    """Return the matching live boost with the highest multiplier, if any."""
    best: Optional[BoostEntry] = None
    for boost in boosts:
        if not boost.is_live(now) or not boost.matches(product):
            continue
        if best is None or boost.multiplier > best.multiplier:
            best = boost
    return best


def validate_multiplier(multiplier: float) -> float:
    if not settings.boost_multiplier_min <= multiplier <= settings.boost_multiplier_max:
        raise ValueError(
            f"multiplier must be between {settings.boost_multiplier_min:g} "
            f"and {settings.boost_multiplier_max:g}"
        )
    return multiplier


class BoostRegistry:
    """
    Serves active boosts from memory, reloading at most once per TTL.

    Boosts change rarely relative to event volume; a read may be stale by
    up to one refresh interval.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        ttl_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = settings.boost_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries: tuple[BoostEntry, ...] = ()
        self._loaded_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return self._loaded_at is not None and time.monotonic() - self._loaded_at < self.ttl_seconds

    async def get_boosts(self) -> tuple[BoostEntry, ...]:
        """Cached boost entries (active flag set), reloading when stale."""
        if self._is_fresh():
            return self._entries
        async with self._lock:
            if not self._is_fresh():
                await self.refresh()
        return self._entries

    async def refresh(self) -> tuple[BoostEntry, ...]:
        """Reload boosts from the database."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CategoryBoost).where(CategoryBoost.is_active == True)  # noqa: E712
            )
            self._entries = tuple(BoostEntry.from_model(b) for b in result.scalars().all())
        self._loaded_at = time.monotonic()
        metrics.active_boosts.set(len(self._entries))
        logger.debug(f"Loaded {len(self._entries)} category boosts")
        return self._entries

    def invalidate(self):
        """Force the next read to reload (after an admin edit)."""
        self._loaded_at = None

    async def get_live(self, now: datetime) -> list[BoostEntry]:
        """Boosts in effect at ``now``, highest multiplier first."""
        boosts = await self.get_boosts()
        live = [b for b in boosts if b.is_live(now)]
        return sorted(live, key=lambda b: b.multiplier, reverse=True)


async def list_boosts(db: AsyncSession) -> list[CategoryBoost]:
    result = await db.execute(select(CategoryBoost).order_by(CategoryBoost.created_at.desc()))
    return list(result.scalars().all())
