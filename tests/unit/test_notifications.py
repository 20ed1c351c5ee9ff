"""
Unit tests for the change notification channel.
"""

import asyncio

import pytest

from lxc_common.models import Notification
from lxc_engine.notifications import ChangeChannel


class TestChangeChannel:
    """Test suite for ChangeChannel and Subscription."""

    def test_publish_reaches_every_subscriber(self):
        channel = ChangeChannel()
        first = channel.subscribe()
        second = channel.subscribe()

        channel.publish(Notification("containers", ("web1",)))

        assert first.get_nowait().keys == ("web1",)
        assert second.get_nowait().keys == ("web1",)
        assert first.get_nowait() is None

    def test_publish_without_subscribers(self):
        ChangeChannel().publish(Notification("operations"))

    def test_slow_subscriber_drops_oldest(self):
        channel = ChangeChannel(maxsize=3)
        subscription = channel.subscribe()

        for i in range(5):
            channel.publish(Notification("operations", (str(i),)))

        assert subscription.dropped == 2
        assert [subscription.get_nowait().keys for _ in range(3)] == [("2",), ("3",), ("4",)]

    def test_close_unsubscribes(self):
        channel = ChangeChannel()
        with channel.subscribe():
            assert channel.subscriber_count == 1
        assert channel.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_async_iteration_ends_on_close(self):
        channel = ChangeChannel()
        subscription = channel.subscribe()
        channel.publish(Notification("containers", ("a1",)))
        channel.publish(Notification("operations", ("op",)))
        channel.close()

        received = [n.kind async for n in subscription]

        assert received == ["containers", "operations"]
        assert await subscription.get() is None

    @pytest.mark.asyncio
    async def test_get_waits_for_publish(self):
        channel = ChangeChannel()
        subscription = channel.subscribe()

        waiter = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)
        channel.publish(Notification("connectivity"))

        notification = await asyncio.wait_for(waiter, 1.0)
        assert notification.kind == "connectivity"
