"""Tests for the typed event streams."""

from __future__ import annotations

import asyncio

import pytest

from presence.streams import EventBroadcaster


def test_each_subscriber_receives_published_items():
    async def scenario():
        broadcaster = EventBroadcaster()
        first, second = broadcaster.subscribe(), broadcaster.subscribe()
        broadcaster.publish(1)
        broadcaster.publish(2)
        broadcaster.close()
        return [item async for item in first], [item async for item in second]

    assert asyncio.run(scenario()) == ([1, 2], [1, 2])


def test_closed_handle_stops_receiving():
    async def scenario():
        broadcaster = EventBroadcaster()
        stream = broadcaster.subscribe()
        stream.close()
        broadcaster.publish("late")
        return broadcaster.subscriber_count(), [item async for item in stream]

    assert asyncio.run(scenario()) == (0, [])


def test_slow_subscriber_drops_oldest_items():
    async def scenario():
        broadcaster = EventBroadcaster(maxsize=3)
        stream = broadcaster.subscribe()
        for value in range(6):
            broadcaster.publish(value)
        broadcaster.close()
        return [item async for item in stream]

    items = asyncio.run(scenario())

    assert items[-1] == 5
    assert len(items) < 6


def test_subscribe_after_close_returns_finished_stream():
    async def scenario():
        broadcaster = EventBroadcaster()
        broadcaster.close()
        stream = broadcaster.subscribe()
        with pytest.raises(StopAsyncIteration):
            await stream.next(timeout=0.1)
        broadcaster.reopen()
        live = broadcaster.subscribe()
        broadcaster.publish("again")
        return await live.next(timeout=0.1)

    assert asyncio.run(scenario()) == "again"


def test_next_honours_timeout():
    async def scenario():
        async with EventBroadcaster().subscribe() as stream:
            await stream.next(timeout=0.01)

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(scenario())
