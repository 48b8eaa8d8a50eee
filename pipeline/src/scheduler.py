"""
Periodic task runner used by every background process of the pipeline.

A PeriodicTask wraps one async tick function and drives it on a fixed
interval:

1. ``start(interval_s)`` validates the interval, runs one tick immediately
   (awaited), then arms a loop that re-fires every ``interval_s`` seconds.
2. ``stop()`` wakes the loop so no further tick fires. A tick already in
   flight is allowed to finish; stop() waits for it.

Ticks of one task never overlap: the loop is sequential and ``run_once()``
skips a request that arrives while a tick is still running. A tick that
raises is logged and does not break the loop.

CHANGELOG:
- 2026-10-19: stop() waits for the first tick of start() (STORY-021)
- 2026-10-07: Add re-entrancy guard to run_once (STORY-009)
- 2026-10-05: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from pipeline.src.errors import ConfigurationError

logger = logging.getLogger(__name__)

TickFn = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """Fire-immediately-then-every-N-seconds runner for one tick function.

    Args:
        name: Task name used in log messages.
        tick: Async callable executed on every tick.

    Usage::

        task = PeriodicTask("simulation", scheduler.tick)
        await task.start(10)
        ...
        await task.stop()
    """

    def __init__(self, name: str, tick: TickFn) -> None:
        self.name = name
        self._tick = tick
        self._running = False
        self._in_tick = False
        self._stop_event: asyncio.Event | None = None
        self._first_tick: asyncio.Task[bool] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._tick_count = 0
        self._last_tick_at: datetime | None = None
        self._interval_s: float | None = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        """True between a successful start() and the next stop()."""
        return self._running

    @property
    def tick_count(self) -> int:
        """Number of ticks that have completed since construction."""
        return self._tick_count

    @property
    def last_tick_at(self) -> datetime | None:
        """UTC completion time of the most recent tick."""
        return self._last_tick_at

    @property
    def interval_s(self) -> float | None:
        """Interval of the current (or last) run."""
        return self._interval_s

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, interval_s: float) -> bool:
        """Run one tick now, then every *interval_s* seconds until stop().

        Args:
            interval_s: Seconds between ticks (> 0).

        Returns:
            True if the task was started, False if it was already running.

        Raises:
            ConfigurationError: If interval_s is not positive. Raised
                before anything is armed.
        """
        if isinstance(interval_s, bool) or not interval_s > 0:
            raise ConfigurationError(
                f"{self.name}: tick interval must be > 0 seconds (got {interval_s!r})"
            )
        if self._running:
            logger.info("%s already running (interval=%ss)", self.name, self._interval_s)
            return False

        self._running = True
        self._interval_s = interval_s
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        logger.info("Starting %s (every %ss)", self.name, interval_s)

        first = asyncio.create_task(self.run_once(), name=f"periodic-{self.name}-first")
        self._first_tick = first
        await first
        if self._first_tick is first:
            self._first_tick = None

        if stop_event.is_set():
            # stop() was called while the first tick was running.
            return True

        self._loop_task = asyncio.create_task(
            self._loop(interval_s, stop_event),
            name=f"periodic-{self.name}",
        )
        return True

    async def stop(self) -> None:
        """Stop further ticks and wait for an in-flight tick. Idempotent."""
        if self._stop_event is not None:
            self._stop_event.set()
        first, self._first_tick = self._first_tick, None
        if first is not None:
            await first
        task, self._loop_task = self._loop_task, None
        if task is not None:
            await task
        if self._running:
            logger.info("%s stopped", self.name)
        self._running = False

    async def run_once(self) -> bool:
        """Execute one tick unless another tick of this task is in flight.

        Never raises: a failing tick is logged.

        Returns:
            True if a tick ran, False if it was skipped.
        """
        if self._in_tick:
            logger.warning("%s tick still in progress, skipping", self.name)
            return False
        self._in_tick = True
        try:
            await self._tick()
        except Exception:
            logger.error("%s tick failed", self.name, exc_info=True)
        finally:
            self._in_tick = False
            self._tick_count += 1
            self._last_tick_at = datetime.now(tz=UTC)
        return True

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(self, interval_s: float, stop_event: asyncio.Event) -> None:
        """Sleep for interval_s between ticks until stop_event is set."""
        while not stop_event.is_set():
            # Use wait with timeout so stop() wakes the loop immediately
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
            if stop_event.is_set():
                break
            await self.run_once()
        logger.debug("%s loop exited", self.name)
