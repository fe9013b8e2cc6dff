"""Cross-worker duplicate suppression for notification deliveries."""

import hashlib
import logging

import redis.asyncio as redis

from demand_engine.config import settings

logger = logging.getLogger(__name__)


class NotificationDedupe:
    """Remembers delivered transition events in Redis for a TTL."""

    def __init__(self, redis_url: str | None = None, ttl_hours: int | None = None):
        self.redis_url = redis_url or settings.redis_url
        self.ttl_hours = ttl_hours or settings.notification_dedupe_ttl_hours
        self._redis: redis.Redis | None = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    def _get_dedupe_key(self, kind: str, barcode: str, detail: str) -> str:
        """
        Generate dedupe key for a delivery.

        Args:
            kind: Event kind (threshold_reached, urgency_escalated, ...)
            barcode: Product barcode
            detail: Event-specific discriminator (tier, position, ...)

        Returns:
            Redis key string
        """
        key_data = f"{kind}:{barcode}:{detail}"
        key_hash = hashlib.md5(key_data.encode()).hexdigest()
        return f"notify:{key_hash}"

    async def claim(self, kind: str, barcode: str, detail: str) -> bool:
        """
        Atomically claim a delivery.

        Returns:
            True if this worker should deliver, False if already delivered
        """
        redis_client = await self._get_redis()
        key = self._get_dedupe_key(kind, barcode, detail)
        claimed = await redis_client.set(key, "1", nx=True, ex=self.ttl_hours * 3600)
        if not claimed:
            logger.debug(f"Skipping duplicate {kind} notification for {barcode}")
        return bool(claimed)

    async def release(self, kind: str, barcode: str, detail: str) -> None:
        """Drop a claim after a failed delivery so a retry can go out."""
        redis_client = await self._get_redis()
        await redis_client.delete(self._get_dedupe_key(kind, barcode, detail))
