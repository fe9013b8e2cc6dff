"""Fire-and-forget dispatch of transition events to notifier sinks."""

import asyncio
import logging
from typing import Iterable, Optional, Sequence

from demand_engine.aggregate.events import TransitionEvent
from demand_engine.config import settings
from demand_engine.notify.dedupe import NotificationDedupe
from demand_engine.notify.webhook import LoggingNotifier, Notifier, WebhookNotifier
from demand_engine import metrics

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Hands transition events to sinks without blocking the write path.

    dispatch() returns immediately; deliveries run as background tasks and
    their failures are logged and counted, never raised.
    """

    def __init__(
        self,
        notifiers: Optional[Sequence[Notifier]] = None,
        dedupe: Optional[NotificationDedupe] = None,
    ):
        self.notifiers: list[Notifier] = list(notifiers) if notifiers is not None else [LoggingNotifier()]
        self.dedupe = dedupe
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, events: Iterable[TransitionEvent]) -> None:
        """Schedule delivery of events (best-effort)."""
        for event in events:
            task = asyncio.create_task(self._deliver(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: TransitionEvent) -> None:
        try:
            if self.dedupe is not None:
                if not await self.dedupe.claim(event.kind, event.barcode, event.dedupe_detail):
                    return

            delivered = False
            for notifier in self.notifiers:
                try:
                    ok = await notifier.send(event)
                except Exception as e:
                    logger.error(
                        f"Notifier {type(notifier).__name__} raised for {event.kind} "
                        f"({event.barcode}): {e}",
                        exc_info=True,
                    )
                    ok = False
                metrics.record_notification(event.kind, ok)
                delivered = delivered or ok

            if not delivered and self.dedupe is not None:
                await self.dedupe.release(event.kind, event.barcode, event.dedupe_detail)
        except Exception as e:
            # Redis or sink setup failures stay out of the aggregation path
            logger.error(f"Dispatch of {event.kind} for {event.barcode} failed: {e}")
            metrics.record_notification(event.kind, False)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        for notifier in self.notifiers:
            close = getattr(notifier, "close", None)
            if close is not None:
                await close()
        if self.dedupe is not None:
            await self.dedupe.close()


def build_dispatcher() -> NotificationDispatcher:
    """Dispatcher configured from settings."""
    notifiers: list[Notifier] = [LoggingNotifier()]
    notifiers.extend(WebhookNotifier(url) for url in settings.notification_webhook_urls)
    dedupe = NotificationDedupe() if settings.notification_dedupe_enabled else None
    return NotificationDispatcher(notifiers=notifiers, dedupe=dedupe)
