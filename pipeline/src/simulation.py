"""
Simulation scheduler: synthesizes telemetry for every online device.

Each tick walks every active user, asks the device population for that
user's simulation targets, and for each target:

1. Simulates instantaneous power on the diurnal curve at the local hour.
2. Simulates display-only voltage, current and frequency.
3. Derives the five cost horizons with the user's live currency preference.

The user's samples are then appended to the sample store as one batch.

Two populations exist and each gets its own scheduler instance:
- OwnedDevicePopulation: online devices owned directly by the user.
- ControllerDevicePopulation: devices contributing to the rated power of
  the user's online controllers.

Failure isolation: a failure while reading or writing one user's batch is
logged with the user id and the tick moves on; a device with an invalid
rating is logged with its device id and skipped. tick() never raises.

CHANGELOG:
- 2026-10-19: Backfill steps hours in UTC across DST changes (STORY-021)
- 2026-10-10: Add historical backfill (STORY-019)
- 2026-10-08: Add controller-attached population (STORY-011)
- 2026-10-06: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from typing import TYPE_CHECKING, Protocol

from pipeline.src.costs import derive_costs
from pipeline.src.errors import InvalidInput
from pipeline.src.models import CurrencyPreference, TelemetrySample
from pipeline.src.power_model import (
    current_amps,
    simulate_frequency,
    simulate_power,
    simulate_voltage,
)
from pipeline.src.scheduler import PeriodicTask

if TYPE_CHECKING:
    from pipeline.src.health import HealthWriter
    from pipeline.src.registry import ControllerRegistry, DeviceRegistry, UserRegistry
    from pipeline.src.store import SampleStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# Populations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SimulationTarget:
    """One device to simulate during a tick.

    Attributes:
        device_id: Device identifier.
        device_name: Display name.
        rated_watts: Power rating in watts.
        location: Device or controller location.
        controller_id: Controller the device is attached to, if any.
    """

    device_id: str
    device_name: str
    rated_watts: float
    location: str
    controller_id: str | None = None


class DevicePopulation(Protocol):
    async def targets_for(self, user_id: str) -> list[SimulationTarget]: ...


class OwnedDevicePopulation:
    """Online devices owned directly by a user."""

    def __init__(self, devices: DeviceRegistry) -> None:
        self._devices = devices

    async def targets_for(self, user_id: str) -> list[SimulationTarget]:
        return [
            SimulationTarget(
                device_id=device.device_id,
                device_name=device.name,
                rated_watts=device.rated_watts,
                location=device.location,
            )
            for device in await self._devices.online_devices_for(user_id)
            if device.status == "online" and device.is_active
        ]


class ControllerDevicePopulation:
    """Devices contributing to the rated power of a user's online controllers."""

    def __init__(self, controllers: ControllerRegistry) -> None:
        self._controllers = controllers

    async def targets_for(self, user_id: str) -> list[SimulationTarget]:
        targets = []
        for controller in await self._controllers.controllers_for(user_id):
            if controller.status != "online":
                continue
            targets.extend(
                SimulationTarget(
                    device_id=device.device_id,
                    device_name=device.name,
                    rated_watts=device.rated_watts,
                    location=controller.location,
                    controller_id=controller.controller_id,
                )
                for device in controller.contributing_devices
            )
        return targets


# ---------------------------------------------------------------------------
# Sample construction
# ---------------------------------------------------------------------------


def build_sample(
    *,
    user_id: str,
    target: SimulationTarget,
    preference: CurrencyPreference,
    ts: datetime,
    hour: int,
    rng: random.Random | None = None,
) -> TelemetrySample:
    """Simulate one reading for *target* and price it with *preference*.

    Raises:
        InvalidInput: If the target's rating or the preference is invalid.
    """
    power = simulate_power(target.rated_watts, hour, rng)
    voltage = simulate_voltage(rng=rng)
    costs = derive_costs(power, preference.electricity_rate, preference.conversion_factor)
    return TelemetrySample(
        user_id=user_id,
        device_id=target.device_id,
        controller_id=target.controller_id,
        device_name=target.device_name,
        location=target.location,
        ts=ts,
        power_w=power,
        rated_power_w=target.rated_watts,
        voltage_v=voltage,
        current_a=current_amps(power, voltage),
        frequency_hz=simulate_frequency(rng=rng),
        electricity_rate=preference.electricity_rate,
        conversion_factor=preference.conversion_factor,
        currency=preference.currency,
        currency_symbol=preference.symbol,
        cost_per_second=costs.per_second,
        cost_per_hour=costs.per_hour,
        cost_per_day=costs.per_day,
        cost_per_month=costs.per_month,
        cost_per_year=costs.per_year,
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class SimulationScheduler:
    """Periodically writes one simulated sample per target device.

    Args:
        name: Instance name ("simulation", "controller-simulation").
        store: Sample store receiving the batches.
        users: Source of active users and their currency preferences.
        population: Which devices of a user get simulated.
        tz: Timezone whose local hour drives the diurnal curve.
        clock: Returns the current aware datetime.
        rng: Random source for power and electrical jitter.
        health: Optional health writer updated after every tick.
    """

    def __init__(
        self,
        *,
        name: str,
        store: SampleStore,
        users: UserRegistry,
        population: DevicePopulation,
        tz: tzinfo = UTC,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
        health: HealthWriter | None = None,
    ) -> None:
        self.name = name
        self._store = store
        self._users = users
        self._population = population
        self._tz = tz
        self._clock = clock
        self._rng = rng
        self._health = health
        self._task = PeriodicTask(name, self.tick)

    @property
    def running(self) -> bool:
        return self._task.running

    @property
    def task(self) -> PeriodicTask:
        return self._task

    async def start(self, interval_s: float) -> bool:
        """Fire one tick now, then every interval_s seconds."""
        return await self._task.start(interval_s)

    async def stop(self) -> None:
        await self._task.stop()

    async def tick(self) -> int:
        """Simulate and store one sample per target for every active user.

        Returns:
            Total number of samples written in this tick.
        """
        try:
            users = await self._users.list_active_users()
        except Exception:
            logger.error("%s: cannot list active users, skipping tick", self.name, exc_info=True)
            return 0

        if not users:
            logger.info("%s: no active users found", self.name)
            self._record_health(0)
            return 0

        now = self._clock()
        total = 0
        for user_id in users:
            try:
                total += await self._simulate_user(user_id, now)
            except Exception:
                logger.error(
                    "%s: simulation failed for user=%s, skipping",
                    self.name,
                    user_id,
                    exc_info=True,
                )

        logger.info("%s: generated %d samples for %d users", self.name, total, len(users))
        self._record_health(total)
        return total

    async def backfill(self, days: int, now: datetime | None = None) -> int:
        """Write hourly historical samples for the past *days* days.

        One sample per target per hour, from local midnight *days* days ago
        up to the current hour. Hours are counted in UTC, so a DST change
        day has 23 or 25 samples per target. Per-user failures are logged
        and skipped.

        Returns:
            Number of samples written.
        """
        reference = (now or self._clock()).astimezone(self._tz)
        midnight = reference.replace(hour=0, minute=0, second=0, microsecond=0)
        midnight -= timedelta(days=days)
        # Step in UTC: local wall-clock hours repeat or vanish on DST changes.
        start = midnight.astimezone(UTC)
        hours = int((reference.astimezone(UTC) - start).total_seconds() // 3600) + 1
        timestamps = [start + timedelta(hours=offset) for offset in range(hours)]

        users = await self._users.list_active_users()
        total = 0
        for user_id in users:
            try:
                for ts in timestamps:
                    total += await self._simulate_user(user_id, ts)
            except Exception:
                logger.error(
                    "%s: backfill failed for user=%s", self.name, user_id, exc_info=True
                )
        logger.info("%s: backfilled %d samples over %d days", self.name, total, days)
        return total

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _simulate_user(self, user_id: str, ts: datetime) -> int:
        """Build and store one batch for a user at *ts*."""
        targets = await self._population.targets_for(user_id)
        if not targets:
            return 0

        # Resolved on every call: preferences can change between ticks.
        preference = await self._users.currency_preference(user_id)
        hour = ts.astimezone(self._tz).hour

        samples = []
        for target in targets:
            try:
                samples.append(
                    build_sample(
                        user_id=user_id,
                        target=target,
                        preference=preference,
                        ts=ts,
                        hour=hour,
                        rng=self._rng,
                    )
                )
            except InvalidInput:
                logger.warning(
                    "%s: invalid input for user=%s device=%s, skipping",
                    self.name,
                    user_id,
                    target.device_id,
                    exc_info=True,
                )
        return await self._store.insert_batch(samples)

    def _record_health(self, written: int) -> None:
        if self._health is None:
            return
        try:
            self._health.record_tick(self.name, samples_written=written)
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
