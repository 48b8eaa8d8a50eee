"""
Unit tests for the read-side aggregator.

Tests verify:
- Period starts: hour = now-1h, day = local midnight, week = now-7d,
  month = first of the local month; unknown periods raise InvalidInput.
- The "day" period excludes 23:59 yesterday and includes 00:01 today.
- daily_stats sums usage as power/1000/3600 and cost as per-second cost.
- device_rollups returns day, week and month for one device.
- Snapshots sum the latest sample per device; stale samples add zero.
- Controller snapshots only include that controller's devices.
- chart_series returns per-day averages ascending by date.

CHANGELOG:
- 2026-10-09: Add chart series and controller snapshot tests (STORY-013)
- 2026-10-08: Initial creation (STORY-012)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
from pipeline.src.aggregator import Aggregator
from pipeline.src.errors import InvalidInput
from pipeline.src.models import TelemetrySample
from pipeline.src.store import SampleStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=UTC)


def _make_sample(
    device_id: str = "dev-1",
    ts: datetime = _NOW,
    power_w: float = 1000.0,
    controller_id: str | None = None,
) -> TelemetrySample:
    per_hour = power_w / 1000 * 0.12
    return TelemetrySample(
        user_id="user-1",
        device_id=device_id,
        controller_id=controller_id,
        device_name=device_id,
        ts=ts,
        power_w=power_w,
        rated_power_w=1000.0,
        voltage_v=220.0,
        current_a=power_w / 220.0,
        frequency_hz=50.0,
        electricity_rate=0.12,
        conversion_factor=1.0,
        currency="USD",
        currency_symbol="$",
        cost_per_second=per_hour / 3600,
        cost_per_hour=per_hour,
        cost_per_day=per_hour * 24,
        cost_per_month=per_hour * 24 * 30,
        cost_per_year=per_hour * 24 * 365,
    )


def _make_aggregator(store: SampleStore, now: datetime = _NOW, **kwargs) -> Aggregator:
    return Aggregator(store, clock=lambda: now, **kwargs)


# ---------------------------------------------------------------------------
# Period resolution
# ---------------------------------------------------------------------------


class TestPeriodStart:
    """Window starts relative to the local clock."""

    def test_hour(self) -> None:
        agg = _make_aggregator(store=None)  # type: ignore[arg-type]
        assert agg.period_start("hour") == _NOW - timedelta(hours=1)

    def test_day_is_local_midnight(self) -> None:
        agg = _make_aggregator(store=None)  # type: ignore[arg-type]
        assert agg.period_start("day") == datetime(2026, 3, 15, tzinfo=UTC)

    def test_week(self) -> None:
        agg = _make_aggregator(store=None)  # type: ignore[arg-type]
        assert agg.period_start("week") == _NOW - timedelta(days=7)

    def test_month_is_first_of_month(self) -> None:
        agg = _make_aggregator(store=None)  # type: ignore[arg-type]
        assert agg.period_start("month") == datetime(2026, 3, 1, tzinfo=UTC)

    def test_day_in_other_timezone(self) -> None:
        """12:00 UTC is 21:00 in Tokyo; local midnight is 15:00 UTC the day before."""
        agg = _make_aggregator(store=None, tz=ZoneInfo("Asia/Tokyo"))  # type: ignore[arg-type]
        start = agg.period_start("day")
        assert start.astimezone(UTC) == datetime(2026, 3, 14, 15, 0, tzinfo=UTC)

    def test_unknown_period_raises(self) -> None:
        agg = _make_aggregator(store=None)  # type: ignore[arg-type]
        with pytest.raises(InvalidInput, match="fortnight"):
            agg.period_start("fortnight")


# ---------------------------------------------------------------------------
# Period stats
# ---------------------------------------------------------------------------


class TestDailyStats:
    """Usage and cost totals over a period."""

    @pytest.mark.asyncio
    async def test_day_boundary(self, tmp_path: Path) -> None:
        """23:59 yesterday is excluded, 00:01 today is included."""
        async with SampleStore(tmp_path / "s.db") as store:
            await store.insert_batch(
                [
                    _make_sample(ts=datetime(2026, 3, 14, 23, 59, tzinfo=UTC), power_w=5000.0),
                    _make_sample(ts=datetime(2026, 3, 15, 0, 1, tzinfo=UTC), power_w=1000.0),
                ]
            )
            stats = await _make_aggregator(store).daily_stats("user-1", "day")

        assert stats.record_count == 1
        assert stats.total_usage_kwh == pytest.approx(1000.0 / 1000 / 3600)
        assert stats.total_cost == pytest.approx(0.12 / 3600)
        assert stats.start_time == datetime(2026, 3, 15, tzinfo=UTC)
        assert stats.end_time == _NOW

    @pytest.mark.asyncio
    async def test_week_includes_older_days(self, tmp_path: Path) -> None:
        async with SampleStore(tmp_path / "s.db") as store:
            await store.insert_batch(
                [
                    _make_sample(ts=_NOW - timedelta(days=3)),
                    _make_sample(ts=_NOW - timedelta(days=8)),
                    _make_sample(ts=_NOW),
                ]
            )
            stats = await _make_aggregator(store).daily_stats("user-1", "week")

        assert stats.record_count == 2

    @pytest.mark.asyncio
    async def test_empty_period(self, tmp_path: Path) -> None:
        async with SampleStore(tmp_path / "s.db") as store:
            stats = await _make_aggregator(store).daily_stats("user-1", "hour")

        assert (stats.total_usage_kwh, stats.total_cost, stats.record_count) == (0.0, 0.0, 0)

    @pytest.mark.asyncio
    async def test_unknown_period_raises(self, tmp_path: Path) -> None:
        async with SampleStore(tmp_path / "s.db") as store:
            with pytest.raises(InvalidInput):
                await _make_aggregator(store).daily_stats("user-1", "year")  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_device_rollups(self, tmp_path: Path) -> None:
        async with SampleStore(tmp_path / "s.db") as store:
            await store.insert_batch(
                [
                    _make_sample("a", ts=_NOW),
                    _make_sample("a", ts=_NOW - timedelta(days=5)),
                    _make_sample("b", ts=_NOW),
                ]
            )
            rollups = await _make_aggregator(store).device_rollups("user-1", "a")

        assert set(rollups) == {"day", "week", "month"}
        assert rollups["day"].record_count == 1
        assert rollups["week"].record_count == 2
        assert rollups["month"].record_count == 2


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class TestSnapshots:
    """Live totals over the latest sample per device."""

    @pytest.mark.asyncio
    async def test_user_snapshot_sums_latest_samples(self, tmp_path: Path) -> None:
        async with SampleStore(tmp_path / "s.db") as store:
            await store.insert_batch(
                [
                    _make_sample("a", ts=_NOW - timedelta(seconds=20), power_w=9999.0),
                    _make_sample("a", ts=_NOW - timedelta(seconds=10), power_w=1000.0),
                    _make_sample("b", ts=_NOW - timedelta(seconds=10), power_w=500.0),
                ]
            )
            snapshot = await _make_aggregator(store).user_snapshot("user-1")

        assert len(snapshot.devices) == 2
        assert snapshot.total_power == pytest.approx(1500.0)
        assert snapshot.total_cost_per_hour == pytest.approx(1.5 * 0.12)
        assert snapshot.total_cost_per_second == pytest.approx(1.5 * 0.12 / 3600)
        assert snapshot.total_cost_per_day == pytest.approx(1.5 * 0.12 * 24)

    @pytest.mark.asyncio
    async def test_stale_samples_add_zero(self, tmp_path: Path) -> None:
        async with SampleStore(tmp_path / "s.db") as store:
            await store.insert_batch(
                [
                    _make_sample("fresh", ts=_NOW - timedelta(seconds=30), power_w=100.0),
                    _make_sample("stale", ts=_NOW - timedelta(hours=2), power_w=800.0),
                ]
            )
            snapshot = await _make_aggregator(store).user_snapshot("user-1")

        assert snapshot.total_power == pytest.approx(100.0)
        stale = {reading.device_id: reading.stale for reading in snapshot.devices}
        assert stale == {"fresh": False, "stale": True}

    @pytest.mark.asyncio
    async def test_user_without_samples(self, tmp_path: Path) -> None:
        async with SampleStore(tmp_path / "s.db") as store:
            snapshot = await _make_aggregator(store).user_snapshot("user-1")

        assert snapshot.devices == []
        assert snapshot.total_power == 0.0

    @pytest.mark.asyncio
    async def test_controller_snapshot(self, tmp_path: Path) -> None:
        async with SampleStore(tmp_path / "s.db") as store:
            await store.insert_batch(
                [
                    _make_sample("a", controller_id="ctl-1", power_w=200.0),
                    _make_sample("b", controller_id="ctl-1", power_w=300.0),
                    _make_sample("c", controller_id="ctl-2", power_w=700.0),
                    _make_sample("d", power_w=900.0),
                ]
            )
            snapshot = await _make_aggregator(store).controller_snapshot("user-1", "ctl-1")

        assert snapshot.controller_id == "ctl-1"
        assert [r.device_id for r in snapshot.devices] == ["a", "b"]
        assert snapshot.total_power == pytest.approx(500.0)


# ---------------------------------------------------------------------------
# Chart series and history
# ---------------------------------------------------------------------------


class TestChartSeries:
    """Per-day chart points."""

    @pytest.mark.asyncio
    async def test_points_ascending_with_averages(self, tmp_path: Path) -> None:
        async with SampleStore(tmp_path / "s.db") as store:
            await store.insert_batch(
                [
                    _make_sample(ts=_NOW, power_w=1000.0),
                    _make_sample(ts=_NOW - timedelta(hours=1), power_w=3000.0),
                    _make_sample(ts=_NOW - timedelta(days=2), power_w=500.0),
                    _make_sample(ts=_NOW - timedelta(days=20), power_w=500.0),
                ]
            )
            points = await _make_aggregator(store).chart_series("user-1", days=7)

        assert [p.date.isoformat() for p in points] == ["2026-03-13", "2026-03-15"]
        assert points[1].avg_usage_kwh == pytest.approx(2.0)
        # Two samples of per-second cost, scaled to an hour
        assert points[1].hourly_cost_equivalent == pytest.approx((0.12 + 0.36) / 3600 * 3600)
        assert points[0].avg_usage_kwh == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_negative_days_rejected(self, tmp_path: Path) -> None:
        async with SampleStore(tmp_path / "s.db") as store:
            with pytest.raises(InvalidInput):
                await _make_aggregator(store).chart_series("user-1", days=-1)

    @pytest.mark.asyncio
    async def test_device_history(self, tmp_path: Path) -> None:
        async with SampleStore(tmp_path / "s.db") as store:
            await store.insert_batch(
                [
                    _make_sample(ts=_NOW - timedelta(hours=30)),
                    _make_sample(ts=_NOW - timedelta(hours=2)),
                    _make_sample(ts=_NOW - timedelta(hours=1)),
                ]
            )
            history = await _make_aggregator(store).device_history("user-1", "dev-1", hours=24)

        assert [s.ts for s in history] == [_NOW - timedelta(hours=2), _NOW - timedelta(hours=1)]
