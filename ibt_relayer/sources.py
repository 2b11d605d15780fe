"""
Event sources feeding the watchers.

Both ingestion models expose the same capability, `next_batch()`, so the
watcher core does not care whether events are pushed or polled:

- SubscriptionEventSource buffers a push-style async iterator.
- PollingEventSource queries a bounded page on a fixed interval.

Events a watcher cannot act on yet (insufficient confirmations, transient
read failure) are handed back with `defer()` and re-offered together with
the next batch.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import AsyncIterator, Awaitable, Callable, Optional

import structlog

from .models import BridgeEvent

logger = structlog.get_logger()


class EventSource(ABC):
    """Ordered batches of bridge events."""

    def __init__(self, name: str):
        self.name = name
        self._deferred: "OrderedDict[str, BridgeEvent]" = OrderedDict()

    @abstractmethod
    async def next_batch(self) -> list[BridgeEvent]:
        """Wait for and return the next batch of events."""

    def defer(self, event: BridgeEvent) -> None:
        """Re-offer `event` with the next batch."""
        self._deferred[event.source_event_id] = event

    @property
    def deferred_count(self) -> int:
        return len(self._deferred)

    def _merge_deferred(self, fresh: list[BridgeEvent]) -> list[BridgeEvent]:
        """Deferred events first, then fresh ones; one entry per event id."""
        batch: "OrderedDict[str, BridgeEvent]" = OrderedDict(self._deferred)
        self._deferred.clear()
        for event in fresh:
            # A redelivery supersedes the deferred copy
            batch[event.source_event_id] = event
        return list(batch.values())

    async def close(self) -> None:
        """Release resources held by the source."""


class SubscriptionEventSource(EventSource):
    """
    Buffers events from a push subscription.

    A background task drains the subscription into a queue. When the
    subscription ends or fails it is re-opened after `resubscribe_delay`
    seconds. While events are deferred, `next_batch()` also returns after
    `recheck_interval` seconds without a new delivery so they get
    re-evaluated.
    """

    def __init__(
        self,
        subscribe: Callable[[], AsyncIterator[BridgeEvent]],
        name: str = "subscription",
        max_batch: int = 50,
        recheck_interval: float = 12.0,
        resubscribe_delay: float = 5.0,
    ):
        super().__init__(name)
        self._subscribe = subscribe
        self.max_batch = max_batch
        self.recheck_interval = recheck_interval
        self.resubscribe_delay = resubscribe_delay
        self._queue: "asyncio.Queue[BridgeEvent]" = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None
        self.subscriptions = 0

    def _ensure_started(self) -> None:
        if self._pump is None or self._pump.done():
            self._pump = asyncio.create_task(self._run_subscription())

    async def _run_subscription(self) -> None:
        while True:
            self.subscriptions += 1
            try:
                async for event in self._subscribe():
                    await self._queue.put(event)
                logger.warning("subscription_ended", source=self.name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "subscription_failed",
                    source=self.name,
                    error=str(e),
                    resubscribe_in=self.resubscribe_delay,
                )
            await asyncio.sleep(self.resubscribe_delay)

    async def next_batch(self) -> list[BridgeEvent]:
        self._ensure_started()

        timeout = self.recheck_interval if self._deferred else None
        fresh: list[BridgeEvent] = []
        try:
            fresh.append(await asyncio.wait_for(self._queue.get(), timeout))
        except asyncio.TimeoutError:
            pass

        while fresh and len(fresh) < self.max_batch and not self._queue.empty():
            fresh.append(self._queue.get_nowait())

        return self._merge_deferred(fresh)

    async def close(self) -> None:
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None


class PollingEventSource(EventSource):
    """
    Queries recent events every `interval` seconds.

    The first batch is fetched immediately. A failed query raises out of
    `next_batch()`; the following call still waits one interval, so a
    failing tick never stops the timer.
    """

    def __init__(
        self,
        query: Callable[[], Awaitable[list[BridgeEvent]]],
        interval: float = 5.0,
        name: str = "poll",
        oldest_first: bool = True,
    ):
        super().__init__(name)
        self._query = query
        self.interval = interval
        self.oldest_first = oldest_first
        self.ticks = 0

    async def next_batch(self) -> list[BridgeEvent]:
        if self.ticks:
            await asyncio.sleep(self.interval)
        self.ticks += 1

        events = await self._query()
        if self.oldest_first:
            # Queries return newest first
            events = list(reversed(events))
        return self._merge_deferred(events)
