"""
Shop Service — live notification fan-out

In-process broadcast from the status-update consumer to Server-Sent-Event
clients. Each subscriber owns a queue; ``publish`` only appends to those
queues, so a slow or stalled client never holds up the publisher or the
other subscribers.

    consumer ──publish──▶ NotificationHub ──▶ [q1] ──▶ SSE client 1
                                         ├──▶ [q2] ──▶ SSE client 2
                                         └──▶ [q3] ──▶ SSE client 3

A subscriber only sees what is published after it subscribed. The hub is
confined to the event loop it runs on.
"""

import asyncio
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

_CLOSED = object()


def sse_frame(payload: Any) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class Subscription:
    """One subscriber's view of the hub; iterate with ``async for``."""

    def __init__(self, hub: "NotificationHub", max_queue_size: int, stop: asyncio.Event | None) -> None:
        self._hub = hub
        self._queue: asyncio.Queue = asyncio.Queue()
        self._max_queue_size = max_queue_size
        self._stop = stop
        self.closed = False
        self.dropped = 0

    def offer(self, message: Any) -> None:
        if self.closed:
            return
        if self._max_queue_size and self._queue.qsize() >= self._max_queue_size:
            self._queue.get_nowait()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning("Slow notification subscriber, %d message(s) dropped", self.dropped)
        self._queue.put_nowait(message)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub.discard(self)
        self._queue.put_nowait(_CLOSED)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        item = await self._next_item()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def _next_item(self) -> Any:
        if self._stop is None:
            return await self._queue.get()
        if self._stop.is_set():
            self.close()
        if not self._queue.empty():
            return self._queue.get_nowait()

        getter = asyncio.ensure_future(self._queue.get())
        stopper = asyncio.ensure_future(self._stop.wait())
        try:
            done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            getter.cancel()
            stopper.cancel()
        if getter in done:
            return getter.result()
        self.close()
        return self._queue.get_nowait()


class NotificationHub:
    def __init__(self, max_queue_size: int = 0) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: set[Subscription] = set()
        self.closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, stop: asyncio.Event | None = None) -> Subscription:
        """Register a subscriber now; it ends on ``stop``, ``close()`` or hub shutdown."""
        subscription = Subscription(self, self.max_queue_size, stop)
        if self.closed:
            subscription.close()
        else:
            self._subscribers.add(subscription)
        return subscription

    def discard(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    def publish(self, message: Any) -> int:
        """Hand ``message`` to every current subscriber; returns how many got it."""
        subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.offer(message)
        return len(subscribers)

    def close(self) -> None:
        self.closed = True
        for subscription in list(self._subscribers):
            subscription.close()
