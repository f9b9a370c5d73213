"""Tests for rally.workflow.events module."""

import asyncio

from rally.workflow.events import (
    Abort,
    Channel,
    Log,
    PermissionResponse,
    command_channel,
    event_channel,
)


class TestChannel:
    """Tests for the async channel."""

    def test_send_then_recv_in_order(self):
        async def scenario():
            channel = Channel()
            channel.send(Log("a"))
            channel.send(Log("b"))
            return [await channel.recv(), await channel.recv()]

        assert asyncio.run(scenario()) == [Log("a"), Log("b")]

    def test_full_channel_drops_without_blocking(self):
        channel = Channel(capacity=2)
        assert channel.send(Log("1"))
        assert channel.send(Log("2"))
        assert channel.send(Log("3")) is False
        assert channel.drain() == [Log("1"), Log("2")]
        # Space is freed once items are consumed
        assert channel.send(Log("4"))

    def test_closed_channel_rejects_sends(self):
        channel = Channel()
        channel.close()
        assert channel.closed
        assert channel.send(Log("late")) is False

    def test_recv_after_close_drains_then_returns_none(self):
        async def scenario():
            channel = Channel()
            channel.send(Log("queued"))
            channel.close()
            return [await channel.recv(), await channel.recv(), await channel.recv()]

        assert asyncio.run(scenario()) == [Log("queued"), None, None]

    def test_recv_waits_for_sender(self):
        async def scenario():
            channel = Channel()

            async def later():
                await asyncio.sleep(0.01)
                channel.send(PermissionResponse(granted=True))

            task = asyncio.create_task(later())
            item = await channel.recv()
            await task
            return item

        assert asyncio.run(scenario()) == PermissionResponse(granted=True)


class TestChannelFactories:
    """Tests for event_channel and command_channel."""

    def test_event_channel_is_bounded(self):
        channel = event_channel(capacity=1)
        channel.send(Log("x"))
        assert channel.send(Log("y")) is False

    def test_command_channel_is_unbounded(self):
        channel = command_channel()
        for _ in range(1000):
            assert channel.send(Abort())
