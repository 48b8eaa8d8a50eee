"""
Unit tests for the periodic task runner.

Tests verify:
- start() runs one tick immediately, before returning.
- The loop re-fires every interval until stop().
- A second start() while running is a logged no-op (tick rate not doubled).
- stop() is idempotent, also before any start().
- Non-positive intervals raise ConfigurationError before anything is armed.
- A tick that raises does not break the loop.
- run_once() skips a tick requested while another is in flight.
- stop() waits for an in-flight tick to finish, including the first tick of
  start(); a restart afterwards arms a single loop.

CHANGELOG:
- 2026-10-19: Add stop-during-first-tick test (STORY-021)
- 2026-10-07: Add re-entrancy tests (STORY-009)
- 2026-10-05: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest
from pipeline.src.errors import ConfigurationError
from pipeline.src.scheduler import PeriodicTask


class TestStart:
    """Two-phase start: immediate tick, then the armed loop."""

    @pytest.mark.asyncio
    async def test_first_tick_runs_before_start_returns(self) -> None:
        tick = AsyncMock()
        task = PeriodicTask("test", tick)

        assert await task.start(60) is True
        assert tick.await_count == 1
        assert task.running is True
        await task.stop()

    @pytest.mark.asyncio
    async def test_loop_refires_on_interval(self) -> None:
        tick = AsyncMock()
        task = PeriodicTask("test", tick)

        await task.start(0.02)
        await asyncio.sleep(0.09)
        await task.stop()

        assert tick.await_count >= 3

    @pytest.mark.asyncio
    async def test_double_start_is_noop(self, caplog: pytest.LogCaptureFixture) -> None:
        """A second start() keeps the original tick rate."""
        tick = AsyncMock()
        task = PeriodicTask("test", tick)

        await task.start(0.05)
        with caplog.at_level(logging.INFO, logger="pipeline.src.scheduler"):
            assert await task.start(0.05) is False
        await asyncio.sleep(0.22)
        await task.stop()

        assert "already running" in caplog.text
        # 1 immediate tick + ~4 interval ticks; doubled would be ~10
        assert 4 <= tick.await_count <= 6

    @pytest.mark.asyncio
    @pytest.mark.parametrize("interval", [0, -1, -0.5])
    async def test_non_positive_interval_raises(self, interval: float) -> None:
        tick = AsyncMock()
        task = PeriodicTask("test", tick)

        with pytest.raises(ConfigurationError):
            await task.start(interval)

        tick.assert_not_awaited()
        assert task.running is False

    @pytest.mark.asyncio
    async def test_configuration_error_is_value_error(self) -> None:
        task = PeriodicTask("test", AsyncMock())
        with pytest.raises(ValueError):
            await task.start(0)

    @pytest.mark.asyncio
    async def test_restart_after_stop(self) -> None:
        tick = AsyncMock()
        task = PeriodicTask("test", tick)

        await task.start(60)
        await task.stop()
        assert await task.start(60) is True
        await task.stop()

        assert tick.await_count == 2


class TestStop:
    """stop() halts further ticks and is idempotent."""

    @pytest.mark.asyncio
    async def test_no_ticks_after_stop(self) -> None:
        tick = AsyncMock()
        task = PeriodicTask("test", tick)

        await task.start(0.02)
        await task.stop()
        count = tick.await_count
        await asyncio.sleep(0.06)

        assert tick.await_count == count
        assert task.running is False

    @pytest.mark.asyncio
    async def test_stop_twice_is_safe(self) -> None:
        task = PeriodicTask("test", AsyncMock())
        await task.start(60)

        await task.stop()
        await task.stop()

        assert task.running is False

    @pytest.mark.asyncio
    async def test_stop_before_start_is_safe(self) -> None:
        task = PeriodicTask("test", AsyncMock())
        await task.stop()
        assert task.running is False

    @pytest.mark.asyncio
    async def test_stop_waits_for_inflight_tick(self) -> None:
        finished = []
        started = asyncio.Event()
        calls = 0

        async def slow_tick() -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                return
            started.set()
            await asyncio.sleep(0.05)
            finished.append(True)

        task = PeriodicTask("test", slow_tick)
        await task.start(0.01)
        await asyncio.wait_for(started.wait(), timeout=1)
        await task.stop()

        assert finished == [True]

    @pytest.mark.asyncio
    async def test_stop_during_first_tick_then_restart_arms_one_loop(self) -> None:
        """stop() waits for start()'s first tick; a restart keeps a single timer."""
        gate = asyncio.Event()
        calls = 0

        async def tick() -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                await gate.wait()

        task = PeriodicTask("test", tick)
        starting = asyncio.create_task(task.start(0.05))
        await asyncio.sleep(0)
        stopping = asyncio.create_task(task.stop())
        await asyncio.sleep(0.02)

        assert not stopping.done()
        gate.set()
        await asyncio.wait_for(stopping, timeout=1)
        assert await starting is True
        assert task.running is False

        assert await task.start(0.05) is True
        await asyncio.sleep(0.22)
        await task.stop()

        # 1 blocked first tick + 1 restart tick + ~4 interval ticks
        assert 5 <= calls <= 7
        assert task.running is False


class TestTickIsolation:
    """Failing ticks and overlapping requests."""

    @pytest.mark.asyncio
    async def test_failing_tick_does_not_break_loop(self) -> None:
        tick = AsyncMock(side_effect=RuntimeError("boom"))
        task = PeriodicTask("test", tick)

        await task.start(0.02)
        await asyncio.sleep(0.07)
        await task.stop()

        assert tick.await_count >= 3
        assert task.tick_count == tick.await_count

    @pytest.mark.asyncio
    async def test_overlapping_run_once_is_skipped(self) -> None:
        gate = asyncio.Event()

        async def blocking_tick() -> None:
            await gate.wait()

        task = PeriodicTask("test", blocking_tick)
        first = asyncio.create_task(task.run_once())
        await asyncio.sleep(0)

        assert await task.run_once() is False
        gate.set()
        assert await first is True
        assert task.tick_count == 1

    @pytest.mark.asyncio
    async def test_last_tick_timestamp_recorded(self) -> None:
        task = PeriodicTask("test", AsyncMock())
        assert task.last_tick_at is None

        await task.run_once()

        assert task.last_tick_at is not None
