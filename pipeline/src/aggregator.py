"""
Aggregator: read-side rollups over the telemetry sample store.

Provides:
- daily_stats(user_id, period): usage and cost totals since the start of an
  hour / day / week / month window (PERIOD_CONFIG).
- device_rollups(user_id, device_id): the same totals for one device over
  day, week and month.
- user_snapshot / controller_snapshot: live totals from the latest sample of
  every device, for dashboards.
- chart_series(user_id, days): per-day average usage and hourly cost
  equivalent, ascending by date.
- device_history(user_id, device_id, hours): raw samples of one device.

Usage treats every sample as one second of draw at its instantaneous
power, so ``usage_kwh = sum(power_w) / 1000 / 3600``. Cost sums each
sample's instant (per-second) cost.

CHANGELOG:
- 2026-10-09: Add chart series and controller snapshots (STORY-013)
- 2026-10-08: Initial creation (STORY-012)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from typing import TYPE_CHECKING

from pipeline.src.errors import InvalidInput
from pipeline.src.models import (
    ChartPoint,
    ControllerSnapshot,
    DeviceReading,
    Period,
    PeriodStats,
    TelemetrySample,
    UserSnapshot,
)

if TYPE_CHECKING:
    from pipeline.src.store import SampleStore

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=5)


def _midnight(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class PeriodConfig:
    """How to resolve the start of a stats window.

    Attributes:
        description: Human-readable window description.
        start: Maps local "now" to the inclusive window start.
    """

    description: str
    start: Callable[[datetime], datetime]


PERIOD_CONFIG: dict[str, PeriodConfig] = {
    "hour": PeriodConfig(
        description="last 60 minutes",
        start=lambda now: now - timedelta(hours=1),
    ),
    "day": PeriodConfig(
        description="since local midnight",
        start=_midnight,
    ),
    "week": PeriodConfig(
        description="last 7 days",
        start=lambda now: now - timedelta(days=7),
    ),
    "month": PeriodConfig(
        description="since the first of the month",
        start=lambda now: _midnight(now).replace(day=1),
    ),
}


class Aggregator:
    """Computes rollups from the sample store on demand.

    Args:
        store: The telemetry sample store.
        tz: Timezone defining "local" midnight and calendar days.
        clock: Returns the current aware datetime.
        stale_after: Latest samples older than this add nothing to
            snapshot totals.
    """

    def __init__(
        self,
        store: SampleStore,
        *,
        tz: tzinfo = UTC,
        clock: Callable[[], datetime] | None = None,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ) -> None:
        self._store = store
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._stale_after = stale_after

    def _now(self) -> datetime:
        return self._clock().astimezone(self._tz)

    def period_start(self, period: str, now: datetime | None = None) -> datetime:
        """Return the inclusive start of *period* relative to local now.

        Raises:
            InvalidInput: For an unknown period name.
        """
        config = PERIOD_CONFIG.get(period)
        if config is None:
            raise InvalidInput(
                f"Unknown period '{period}' (expected one of {', '.join(PERIOD_CONFIG)})"
            )
        local_now = (now or self._clock()).astimezone(self._tz)
        return config.start(local_now)

    async def daily_stats(
        self,
        user_id: str,
        period: Period = "day",
        device_id: str | None = None,
    ) -> PeriodStats:
        """Usage and cost totals for a user (or one device) over a period."""
        now = self._now()
        start = self.period_start(period, now)
        totals = await self._store.summarize(user_id, since=start, until=now, device_id=device_id)
        return PeriodStats(
            period=period,
            start_time=start,
            end_time=now,
            total_usage_kwh=totals.usage_kwh,
            total_cost=totals.cost_sum,
            record_count=totals.sample_count,
        )

    async def device_rollups(self, user_id: str, device_id: str) -> dict[str, PeriodStats]:
        """Daily, weekly and monthly totals for one device."""
        return {
            period: await self.daily_stats(user_id, period, device_id=device_id)
            for period in ("day", "week", "month")
        }

    async def user_snapshot(self, user_id: str) -> UserSnapshot:
        """Live totals over the latest sample of every device of a user."""
        samples = await self._store.latest_per_device(user_id)
        snapshot = UserSnapshot(user_id=user_id)
        self._accumulate(snapshot, samples)
        return snapshot

    async def controller_snapshot(self, user_id: str, controller_id: str) -> ControllerSnapshot:
        """Live totals over the latest sample of every device of a controller."""
        samples = await self._store.latest_per_device(user_id, controller_id=controller_id)
        snapshot = ControllerSnapshot(user_id=user_id, controller_id=controller_id)
        self._accumulate(snapshot, samples)
        return snapshot

    async def chart_series(self, user_id: str, days: int = 7) -> list[ChartPoint]:
        """Per-day chart points for the last *days* days plus today.

        ``avg_usage_kwh`` is the mean draw of the day's samples in kW, i.e.
        the energy of one hour at that draw. ``hourly_cost_equivalent``
        scales the day's summed per-second cost to an hour.
        """
        if days < 0:
            raise InvalidInput(f"days must be >= 0 (got {days})")
        start = _midnight(self._now()) - timedelta(days=days)
        aggregates = await self._store.aggregate_daily(user_id, since=start, tz=self._tz)
        return [
            ChartPoint(
                date=aggregate.day,
                avg_usage_kwh=aggregate.power_sum_w / 1000 / aggregate.sample_count,
                hourly_cost_equivalent=aggregate.total_cost * 3600,
            )
            for aggregate in aggregates
            if aggregate.sample_count
        ]

    async def device_history(
        self,
        user_id: str,
        device_id: str,
        hours: int = 24,
    ) -> list[TelemetrySample]:
        """Samples of one device over the last *hours* hours, oldest first."""
        since = self._now() - timedelta(hours=hours)
        return await self._store.range_by_device(user_id, device_id, since=since)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _accumulate(self, snapshot: UserSnapshot, samples: list[TelemetrySample]) -> None:
        """Add the readings to the snapshot; stale readings add zero."""
        cutoff = self._clock() - self._stale_after
        for sample in samples:
            stale = sample.ts < cutoff
            snapshot.devices.append(
                DeviceReading(
                    device_id=sample.device_id,
                    device_name=sample.device_name,
                    controller_id=sample.controller_id,
                    ts=sample.ts,
                    power_w=sample.power_w,
                    cost_per_second=sample.cost_per_second,
                    cost_per_hour=sample.cost_per_hour,
                    cost_per_day=sample.cost_per_day,
                    stale=stale,
                )
            )
            if stale:
                continue
            snapshot.total_power += sample.power_w
            snapshot.total_cost_per_second += sample.cost_per_second
            snapshot.total_cost_per_hour += sample.cost_per_hour
            snapshot.total_cost_per_day += sample.cost_per_day
