"""Tests for the timer loop: immediate first tick, cadence, single-flight."""

import asyncio
from unittest.mock import AsyncMock

from keeper import RoundKeeper, TickReport
from scheduler import keeper_loop


class CountingKeeper:
    def __init__(self):
        self.ticks = 0

    async def run_tick(self):
        self.ticks += 1


class TestKeeperLoop:
    def test_first_tick_is_immediate(self):
        keeper = CountingKeeper()

        async def scenario():
            task = asyncio.create_task(keeper_loop(keeper, interval_s=60))
            await asyncio.sleep(0.05)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        asyncio.run(scenario())
        assert keeper.ticks == 1

    def test_fires_every_interval(self):
        keeper = CountingKeeper()
        asyncio.run(keeper_loop(keeper, interval_s=0.01, max_ticks=4))
        assert keeper.ticks == 4

    def test_slow_tick_is_not_overlapped(self):
        keeper = RoundKeeper(AsyncMock(), AsyncMock(), AsyncMock())
        started = []

        async def slow_tick():
            started.append(1)
            await asyncio.sleep(0.5)
            return TickReport(started_at=0)

        keeper.tick = slow_tick
        asyncio.run(keeper_loop(keeper, interval_s=0.01, max_ticks=5))
        assert started == [1]

    def test_crashing_tick_does_not_stop_loop(self):
        calls = []

        class Crashy:
            async def run_tick(self):
                calls.append(1)
                raise RuntimeError("boom")

        asyncio.run(keeper_loop(Crashy(), interval_s=0.01, max_ticks=3))
        assert len(calls) == 3
