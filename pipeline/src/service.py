"""
EnergyPipeline: composition root and public surface of the pipeline.

Builds every component from injected collaborators (no module-level
singletons) and exposes the operations callers use:

- start_simulation / stop_simulation: both simulation schedulers
  ("simulation" for owned devices, "controller-simulation" for devices
  attached to controllers).
- start_inactivity_monitor / stop_inactivity_monitor, monitor_stats,
  reset_alerts.
- start_maintenance: retention janitor and rollup cache refresh.
- latest_snapshot, period_stats, device_rollups, device_history,
  chart_series: read-side queries through the Aggregator.
- send_usage_report: plain-text usage summary sent through the notifier.
- stop_all: stops every background task; in-flight ticks finish first.

CHANGELOG:
- 2026-10-19: Janitor publishes samples_total health counter (STORY-021)
- 2026-10-12: Add usage reports and rollup cache (STORY-017)
- 2026-10-10: Add retention janitor (STORY-016)
- 2026-10-09: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import logging
import random
from datetime import UTC, timedelta, tzinfo
from typing import TYPE_CHECKING

from pipeline.src.aggregator import DEFAULT_STALE_AFTER, Aggregator
from pipeline.src.errors import NotifierError
from pipeline.src.models import (
    ChartPoint,
    ControllerSnapshot,
    MonitorStats,
    Period,
    PeriodStats,
    TelemetrySample,
    UserSnapshot,
)
from pipeline.src.monitor import DEFAULT_THRESHOLD_HOURS, InactivityMonitor
from pipeline.src.scheduler import PeriodicTask
from pipeline.src.simulation import (
    Clock,
    ControllerDevicePopulation,
    OwnedDevicePopulation,
    SimulationScheduler,
    utc_now,
)
from pipeline.src.store import DEFAULT_RETENTION

if TYPE_CHECKING:
    from pipeline.src.health import HealthWriter
    from pipeline.src.notifier import Notifier
    from pipeline.src.registry import (
        AlertStateStore,
        ControllerRegistry,
        DeviceRegistry,
        UserRegistry,
    )
    from pipeline.src.store import SampleStore

logger = logging.getLogger(__name__)


class EnergyPipeline:
    """Owns the schedulers, aggregator and monitor of one pipeline.

    Args:
        store: Telemetry sample store.
        users: Active users and their currency preferences.
        devices: Owned devices and inactivity queries.
        controllers: Controllers and their attached devices.
        alert_state: Storage for inactivity alert flags.
        notifier: Channel for inactivity alerts and usage reports.
        tz: Timezone for local hours and calendar days.
        clock: Returns the current aware datetime.
        rng: Random source shared by both simulation schedulers.
        threshold_hours: Inactivity threshold.
        retention: How long samples are kept by the janitor.
        stale_after: Snapshot staleness window.
        health: Optional health writer shared by every task.
    """

    def __init__(
        self,
        *,
        store: SampleStore,
        users: UserRegistry,
        devices: DeviceRegistry,
        controllers: ControllerRegistry,
        alert_state: AlertStateStore,
        notifier: Notifier,
        tz: tzinfo = UTC,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
        threshold_hours: float = DEFAULT_THRESHOLD_HOURS,
        retention: timedelta = DEFAULT_RETENTION,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        health: HealthWriter | None = None,
    ) -> None:
        self._store = store
        self._users = users
        self._notifier = notifier
        self._clock = clock
        self._retention = retention
        self._health = health

        self.simulation = SimulationScheduler(
            name="simulation",
            store=store,
            users=users,
            population=OwnedDevicePopulation(devices),
            tz=tz,
            clock=clock,
            rng=rng,
            health=health,
        )
        self.controller_simulation = SimulationScheduler(
            name="controller-simulation",
            store=store,
            users=users,
            population=ControllerDevicePopulation(controllers),
            tz=tz,
            clock=clock,
            rng=rng,
            health=health,
        )
        self.aggregator = Aggregator(store, tz=tz, clock=clock, stale_after=stale_after)
        self.monitor = InactivityMonitor(
            devices=devices,
            notifier=notifier,
            alert_state=alert_state,
            threshold_hours=threshold_hours,
            clock=clock,
            health=health,
        )
        self.janitor = PeriodicTask("janitor", self.evict_expired)
        self.rollups = PeriodicTask("rollup-refresh", self.refresh_rollups)
        self._rollup_cache: dict[str, PeriodStats] = {}

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def start_simulation(
        self,
        interval_s: float,
        controller_interval_s: float | None = None,
    ) -> bool:
        """Start both simulation schedulers.

        Returns:
            True if at least one scheduler was started, False if both were
            already running.
        """
        owned = await self.simulation.start(interval_s)
        attached = await self.controller_simulation.start(controller_interval_s or interval_s)
        return owned or attached

    async def stop_simulation(self) -> None:
        await self.simulation.stop()
        await self.controller_simulation.stop()

    async def start_inactivity_monitor(self, check_interval_min: float) -> bool:
        return await self.monitor.start(check_interval_min)

    async def stop_inactivity_monitor(self) -> None:
        await self.monitor.stop()

    async def start_maintenance(self, janitor_interval_s: float, rollup_interval_s: float) -> None:
        """Start the retention janitor and the rollup cache refresh."""
        await self.janitor.start(janitor_interval_s)
        await self.rollups.start(rollup_interval_s)

    async def stop_all(self) -> None:
        """Stop every background task. Idempotent."""
        await self.stop_simulation()
        await self.stop_inactivity_monitor()
        await self.janitor.stop()
        await self.rollups.stop()
        logger.info("All pipeline tasks stopped")

    async def backfill(self, days: int) -> int:
        """Synthesize *days* days of hourly history for both populations."""
        if days <= 0:
            return 0
        return await self.simulation.backfill(days) + await self.controller_simulation.backfill(
            days
        )

    async def evict_expired(self) -> int:
        """Delete samples older than the retention window.

        Also publishes the remaining sample count as the ``samples_total``
        health counter.
        """
        removed = await self._store.evict_older_than(self._retention, now=self._clock())
        if removed:
            logger.info("Janitor evicted %d samples older than %s", removed, self._retention)
        if self._health is not None:
            total = await self._store.count()
            try:
                self._health.record_tick("janitor", samples_evicted=removed)
                self._health.set_counter("samples_total", total)
            except Exception:
                logger.warning("Failed to write health file", exc_info=True)
        return removed

    async def refresh_rollups(self) -> int:
        """Recompute today's stats for every active user into the cache.

        Returns:
            Number of users refreshed.
        """
        refreshed = 0
        for user_id in await self._users.list_active_users():
            try:
                self._rollup_cache[user_id] = await self.aggregator.daily_stats(user_id, "day")
                refreshed += 1
            except Exception:
                logger.error("Rollup refresh failed for user=%s", user_id, exc_info=True)
        logger.debug("Refreshed rollups for %d users", refreshed)
        return refreshed

    def cached_period_stats(self, user_id: str) -> PeriodStats | None:
        """Today's stats as of the last rollup refresh, if any."""
        return self._rollup_cache.get(user_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def latest_snapshot(
        self,
        user_id: str,
        controller_id: str | None = None,
    ) -> UserSnapshot | ControllerSnapshot:
        """Live totals for a user, or for one of their controllers."""
        if controller_id is not None:
            return await self.aggregator.controller_snapshot(user_id, controller_id)
        return await self.aggregator.user_snapshot(user_id)

    async def period_stats(
        self,
        user_id: str,
        period: Period = "day",
        device_id: str | None = None,
    ) -> PeriodStats:
        return await self.aggregator.daily_stats(user_id, period, device_id=device_id)

    async def device_rollups(self, user_id: str, device_id: str) -> dict[str, PeriodStats]:
        return await self.aggregator.device_rollups(user_id, device_id)

    async def device_history(
        self, user_id: str, device_id: str, hours: int = 24
    ) -> list[TelemetrySample]:
        return await self.aggregator.device_history(user_id, device_id, hours)

    async def chart_series(self, user_id: str, days: int = 7) -> list[ChartPoint]:
        return await self.aggregator.chart_series(user_id, days)

    def monitor_stats(self) -> MonitorStats:
        return self.monitor.stats()

    async def reset_alerts(self) -> None:
        await self.monitor.reset_alerts()

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def send_usage_report(
        self,
        user_id: str,
        to_address: str,
        period: Period = "week",
    ) -> bool:
        """Send a plain-text usage summary for *period* to *to_address*.

        Returns:
            True if the notifier accepted the report. Delivery failures are
            logged and reported as False.
        """
        stats = await self.period_stats(user_id, period)
        days = 30 if period == "month" else 7
        series = await self.chart_series(user_id, days)
        preference = await self._users.currency_preference(user_id)

        subject = f"Energy usage report ({period})"
        lines = [
            f"Usage report for {stats.start_time:%Y-%m-%d %H:%M} to {stats.end_time:%Y-%m-%d %H:%M}",
            "",
            f"Total usage: {stats.total_usage_kwh:.6f} kWh",
            f"Total cost: {preference.symbol}{stats.total_cost:.4f} {preference.currency}",
            f"Samples: {stats.record_count}",
        ]
        if series:
            lines += ["", "Daily averages:"]
            lines += [
                f"  {point.date.isoformat()}: {point.avg_usage_kwh:.3f} kWh, "
                f"{preference.symbol}{point.hourly_cost_equivalent:.4f}/h"
                for point in series
            ]

        try:
            delivered = await self._notifier.send(to_address, subject, "\n".join(lines))
        except NotifierError:
            logger.error("Usage report for user=%s could not be sent", user_id, exc_info=True)
            return False
        if not delivered:
            logger.warning("Usage report for user=%s was rejected", user_id)
        return delivered
