"""
Change notification channel.

One-directional, non-blocking handoff from the reconciler to any number of
presentation-layer subscribers. Publishing never waits: when a subscriber
falls behind, its oldest pending notification is dropped.
"""

import asyncio
import logging

from lxc_common.models import Notification

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """
    A subscriber's queue of notifications.

    Iterate with ``async for``; iteration ends when the subscription or the
    channel is closed.
    """

    def __init__(self, channel: "ChangeChannel", maxsize: int):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def _offer(self, item: object) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def get_nowait(self) -> Notification | None:
        """Return the next notification, or None if nothing is pending."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            return None
        return item

    async def get(self) -> Notification | None:
        """Wait for the next notification; None once closed."""
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._channel._remove(self)
        self._offer(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Notification:
        notification = await self.get()
        if notification is None:
            raise StopAsyncIteration
        return notification

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ChangeChannel:
    """Fan-out of notifications to subscribers."""

    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self.maxsize)
        self._subscribers.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, notification: Notification) -> None:
        """Hand a notification to every subscriber without blocking."""
        logger.debug(f"Publishing {notification.kind} notification {notification.keys}")
        for subscription in list(self._subscribers):
            subscription._offer(notification)

    def close(self) -> None:
        """Close every subscription."""
        for subscription in list(self._subscribers):
            subscription.close()
