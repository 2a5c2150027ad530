"""Tests for the adaptive interval loop."""

import asyncio

import pytest

from hr_agent.core.ticker import AdaptiveTicker


class Script:
    """A check callback that replays scripted results."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        result = self.results.pop(0) if self.results else False
        if isinstance(result, Exception):
            raise result
        return result


class TestIntervals:
    def test_requires_intervals(self):
        with pytest.raises(ValueError):
            AdaptiveTicker("empty", [], Script())

    def test_advance_is_capped(self):
        ticker = AdaptiveTicker("t", [10, 30, 60], Script())
        assert ticker.current_interval == 10
        for _ in range(5):
            ticker.advance()
        assert ticker.current_interval == 60
        ticker.reset()
        assert ticker.current_interval == 10

    def test_single_interval_is_fixed(self):
        ticker = AdaptiveTicker("fixed", [30], Script())
        ticker.advance()
        assert ticker.current_interval == 30


class TestTick:
    @pytest.mark.asyncio
    async def test_no_change_advances(self):
        ticker = AdaptiveTicker("t", [10, 30, 60], Script(False, False))
        await ticker.tick()
        await ticker.tick()
        assert ticker.current_interval == 60

    @pytest.mark.asyncio
    async def test_change_resets(self):
        ticker = AdaptiveTicker("t", [10, 30, 60], Script(False, False, True))
        for _ in range(3):
            await ticker.tick()
        assert ticker.current_interval == 10

    @pytest.mark.asyncio
    async def test_error_resets(self):
        check = Script(False, RuntimeError("runtime down"))
        ticker = AdaptiveTicker("t", [10, 30, 60], check)
        await ticker.tick()
        assert await ticker.tick() is True
        assert ticker.current_interval == 10
        assert check.calls == 2


class TestLoop:
    @pytest.mark.asyncio
    async def test_runs_until_stopped(self):
        check = Script()
        ticker = AdaptiveTicker("fast", [0.01], check)
        ticker.start()
        assert ticker.running
        await asyncio.sleep(0.1)
        await ticker.stop()
        assert not ticker.running
        seen = check.calls
        assert seen >= 2
        await asyncio.sleep(0.03)
        assert check.calls == seen

    @pytest.mark.asyncio
    async def test_run_immediately(self):
        check = Script()
        ticker = AdaptiveTicker("slow", [60], check)
        ticker.start(run_immediately=True)
        await asyncio.sleep(0.01)
        await ticker.stop()
        assert check.calls == 1

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_loop(self):
        ticker = AdaptiveTicker("once", [60], Script())
        ticker.start()
        task = ticker._task
        ticker.start()
        assert ticker._task is task
        await ticker.stop()
