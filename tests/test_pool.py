"""Bounded-concurrency pool."""

import asyncio

import pytest

from devtrack.pool import run_pool


class Tracker:
    def __init__(self):
        self.in_flight = 0
        self.peak = 0
        self.started = []

    async def handle(self, item):
        self.started.append(item)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        # uneven durations so completion order differs from start order
        for _ in range((item * 7) % 4 + 1):
            await asyncio.sleep(0)
        self.in_flight -= 1
        return item * 10


@pytest.mark.asyncio
async def test_never_exceeds_concurrency():
    tracker = Tracker()

    results = await run_pool(range(10), 3, tracker.handle)

    assert tracker.peak == 3
    assert results == [i * 10 for i in range(10)]
    assert sorted(tracker.started) == list(range(10))


@pytest.mark.asyncio
async def test_concurrency_larger_than_items():
    tracker = Tracker()

    assert await run_pool([1, 2], 5, tracker.handle) == [10, 20]
    assert tracker.peak == 2


@pytest.mark.asyncio
async def test_empty_input():
    assert await run_pool([], 2, Tracker().handle) == []


@pytest.mark.asyncio
async def test_invalid_concurrency():
    with pytest.raises(ValueError):
        await run_pool([1], 0, Tracker().handle)


@pytest.mark.asyncio
async def test_failure_cancels_in_flight_handlers():
    cancelled = []

    async def handler(item):
        if item == 0:
            raise RuntimeError("page failed")
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(item)
            raise

    with pytest.raises(RuntimeError, match="page failed"):
        await run_pool([0, 1, 2, 3], 3, handler)

    assert sorted(cancelled) == [1, 2]
