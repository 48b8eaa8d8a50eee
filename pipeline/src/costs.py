"""
Cost converter: derives monetary cost figures from an instantaneous power draw.

This is the single place where per-second, per-hour, per-day, per-month and
per-year costs are computed, so the five figures stored on every telemetry
sample are always mutually consistent:

    per_hour   = kW * electricity_rate * conversion_factor
    per_second = per_hour / 3600
    per_day    = per_hour * 24
    per_month  = per_day * 30
    per_year   = per_day * 365

Also carries the currency catalogue (symbols, conversion factors relative to
USD and typical country electricity rates) used to build default currency
preferences.

CHANGELOG:
- 2026-10-06: Add currency catalogue with default country rates (STORY-017)
- 2026-10-03: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass

from pipeline.src.errors import InvalidInput

SECONDS_PER_HOUR = 3600
HOURS_PER_DAY = 24
DAYS_PER_MONTH = 30
DAYS_PER_YEAR = 365


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of sustaining one power draw over five horizons.

    Attributes:
        per_second: Cost per second (the "instant cost").
        per_hour: Cost per hour.
        per_day: Cost per day (24 h).
        per_month: Cost per 30-day month.
        per_year: Cost per 365-day year.
    """

    per_second: float
    per_hour: float
    per_day: float
    per_month: float
    per_year: float


@dataclass(frozen=True)
class CurrencyInfo:
    """Catalogue entry for a supported currency.

    Attributes:
        code: ISO 4217 currency code.
        symbol: Display symbol.
        country: Country / region code the default rate applies to.
        conversion_factor: Units of this currency per 1 USD.
        default_rate: Typical electricity rate per kWh in this currency.
    """

    code: str
    symbol: str
    country: str
    conversion_factor: float
    default_rate: float


CURRENCY_CATALOGUE: dict[str, CurrencyInfo] = {
    "USD": CurrencyInfo("USD", "$", "US", 1.0, 0.12),
    "INR": CurrencyInfo("INR", "₹", "IN", 83.5, 6.5),
    "EUR": CurrencyInfo("EUR", "€", "EU", 0.85, 0.25),
    "GBP": CurrencyInfo("GBP", "£", "UK", 0.73, 0.20),
    "JPY": CurrencyInfo("JPY", "¥", "JP", 110.0, 25.0),
    "AUD": CurrencyInfo("AUD", "A$", "AU", 1.35, 0.30),
    "CAD": CurrencyInfo("CAD", "C$", "CA", 1.25, 0.15),
}
"""Supported currencies keyed by code. USD is the base currency."""


def currency_info(code: str) -> CurrencyInfo:
    """Look up a currency in the catalogue.

    Raises:
        InvalidInput: If the code is not in :data:`CURRENCY_CATALOGUE`.
    """
    try:
        return CURRENCY_CATALOGUE[code.upper()]
    except KeyError:
        raise InvalidInput(f"Unsupported currency '{code}'") from None


def derive_costs(
    power_watts: float,
    electricity_rate: float,
    conversion_factor: float = 1.0,
) -> CostBreakdown:
    """Derive the five cost horizons for an instantaneous power draw.

    Pure function: no I/O, no clock.

    Args:
        power_watts: Instantaneous power in watts (>= 0).
        electricity_rate: Price per kWh (> 0).
        conversion_factor: Multiplier into the display currency (> 0).

    Returns:
        A :class:`CostBreakdown` whose fields are exact multiples of
        ``per_hour``.

    Raises:
        InvalidInput: For negative power or non-positive rate / factor.
    """
    if power_watts < 0:
        raise InvalidInput(f"power_watts must be >= 0 (got {power_watts})")
    if electricity_rate <= 0:
        raise InvalidInput(f"electricity_rate must be > 0 (got {electricity_rate})")
    if conversion_factor <= 0:
        raise InvalidInput(f"conversion_factor must be > 0 (got {conversion_factor})")

    per_hour = (power_watts / 1000) * electricity_rate * conversion_factor
    per_day = per_hour * HOURS_PER_DAY
    return CostBreakdown(
        per_second=per_hour / SECONDS_PER_HOUR,
        per_hour=per_hour,
        per_day=per_day,
        per_month=per_day * DAYS_PER_MONTH,
        per_year=per_day * DAYS_PER_YEAR,
    )
