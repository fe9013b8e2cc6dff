"""Notification sinks for transition events."""

import logging
import time
from typing import Optional, Protocol

import httpx

from demand_engine.aggregate.events import TransitionEvent, event_payload
from demand_engine.config import settings

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Anything that can deliver a transition event."""

    async def send(self, event: TransitionEvent) -> bool: ...


class LoggingNotifier:
    """Writes transition events to the application log."""

    async def send(self, event: TransitionEvent) -> bool:
        logger.info(f"[{event.kind}] {event.barcode}", extra={"event": event_payload(event)})
        return True


class WebhookNotifier:
    """POSTs transition events as JSON to a webhook URL."""

    def __init__(self, webhook_url: str, timeout: Optional[float] = None):
        self.webhook_url = webhook_url
        self.timeout = timeout or settings.notification_timeout_seconds
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def send(self, event: TransitionEvent) -> bool:
        """
        Deliver one event.

        Returns:
            True if the endpoint accepted it, False otherwise
        """
        client = await self._get_client()
        start = time.monotonic()
        try:
            response = await client.post(self.webhook_url, json=event_payload(event))
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery of {event.kind} for {event.barcode} failed: {e}")
            return False

        elapsed_ms = (time.monotonic() - start) * 1000
        if response.status_code in (200, 201, 202, 204):
            logger.debug(
                f"Delivered {event.kind} for {event.barcode} in {elapsed_ms:.0f}ms"
            )
            return True

        logger.warning(
            f"Webhook rejected {event.kind} for {event.barcode}: "
            f"HTTP {response.status_code} {response.text[:200]}"
        )
        return False
