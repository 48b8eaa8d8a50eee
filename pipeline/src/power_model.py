"""
Diurnal power model for simulated device telemetry.

Turns a device's rated wattage and the local hour of day into an
instantaneous power draw:

1. Apply the time-of-day multiplier (morning peak, evening peak, night low).
2. Apply independent uniform jitter in [-10 %, +10 %].
3. Clamp to >= 0.

Voltage, current and frequency helpers produce display-only electrical
readings around the 220 V / 50 Hz nominal grid; they never feed cost
computation.

These are pure functions apart from the random draw. Pass a seeded
``random.Random`` to make the output reproducible in tests.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

import random

from pipeline.src.errors import InvalidInput

JITTER: float = 0.10
"""Maximum relative jitter applied to every draw."""

PEAK_MULTIPLIER: float = 1.4
"""Largest diurnal multiplier (evening peak)."""

MAX_OUTPUT_FACTOR: float = PEAK_MULTIPLIER * (1 + JITTER)
"""Upper bound of ``simulate_power() / rated_watts``."""

NOMINAL_VOLTAGE_V: float = 220.0
NOMINAL_FREQUENCY_HZ: float = 50.0

_VOLTAGE_SPREAD_V = 5.0
_FREQUENCY_SPREAD_HZ = 0.1


def diurnal_multiplier(hour: int) -> float:
    """Return the load multiplier for a local hour of day.

    Args:
        hour: Hour of day, 0-23.

    Raises:
        InvalidInput: If hour is outside 0-23.
    """
    if not 0 <= hour <= 23:
        raise InvalidInput(f"hour must be within 0-23 (got {hour})")
    if 6 <= hour <= 9:
        return 1.3
    if 18 <= hour <= 23:
        return PEAK_MULTIPLIER
    if hour <= 5:
        return 0.6
    return 1.0


def simulate_power(
    rated_watts: float,
    hour: int,
    rng: random.Random | None = None,
) -> float:
    """Simulate the instantaneous draw of a device.

    Args:
        rated_watts: Device power rating in watts (> 0).
        hour: Local hour of day, 0-23.
        rng: Optional random source; the module-level generator is used
            when omitted.

    Returns:
        Power in watts, always within ``[0, rated_watts * MAX_OUTPUT_FACTOR]``.

    Raises:
        InvalidInput: If rated_watts <= 0 or hour is outside 0-23.
    """
    if rated_watts <= 0:
        raise InvalidInput(f"rated_watts must be > 0 (got {rated_watts})")
    multiplier = diurnal_multiplier(hour)
    source = rng or random
    variation = source.uniform(-JITTER, JITTER)
    return max(0.0, rated_watts * multiplier * (1 + variation))


def simulate_voltage(
    nominal: float = NOMINAL_VOLTAGE_V,
    rng: random.Random | None = None,
) -> float:
    """Return a line voltage within +/-5 V of nominal."""
    source = rng or random
    return nominal + source.uniform(-_VOLTAGE_SPREAD_V, _VOLTAGE_SPREAD_V)


def simulate_frequency(
    nominal: float = NOMINAL_FREQUENCY_HZ,
    rng: random.Random | None = None,
) -> float:
    """Return a grid frequency within +/-0.1 Hz of nominal."""
    source = rng or random
    return nominal + source.uniform(-_FREQUENCY_SPREAD_HZ, _FREQUENCY_SPREAD_HZ)


def current_amps(power_watts: float, voltage: float) -> float:
    """Current drawn at the given power and voltage (0 for a dead line)."""
    if voltage <= 0:
        return 0.0
    return power_watts / voltage
