"""
Pydantic models for registry inputs, telemetry samples and rollups.

Registry inputs (read-only to the pipeline):
- DeviceInfo: a directly owned device.
- ControllerInfo / AttachedDevice: a hub and the ordered devices attached to it.
- InactiveDevice: an offline device found by the inactivity query.
- CurrencyPreference: a user's currency, symbol, rate and conversion factor.

Pipeline outputs:
- TelemetrySample: one immutable simulated reading with frozen cost figures.
- PeriodStats, DailyAggregate, ChartPoint: read-side rollups.
- DeviceReading, UserSnapshot, ControllerSnapshot: live dashboard totals.

CHANGELOG:
- 2026-10-08: Add snapshot and chart models (STORY-012)
- 2026-10-06: Add CurrencyPreference catalogue constructors (STORY-017)
- 2026-10-03: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

from pipeline.src.costs import currency_info

DeviceStatus = Literal["online", "offline", "maintenance", "error"]
ControllerStatus = Literal["online", "offline", "maintenance"]
ConnectionStatus = Literal["connected", "disconnected", "pending_approval"]
Period = Literal["hour", "day", "week", "month"]
Day = date


class CurrencyPreference(BaseModel):
    """Per-user currency configuration applied when a sample is captured.

    ``electricity_rate`` is the price per kWh and ``conversion_factor`` the
    multiplier into the display currency. With a rate already quoted in the
    display currency the factor is 1.

    Attributes:
        currency: ISO 4217 code.
        symbol: Display symbol.
        electricity_rate: Price per kWh (> 0, <= 100).
        conversion_factor: Multiplier relative to the rate currency (> 0).
    """

    model_config = ConfigDict(frozen=True)

    currency: str = "USD"
    symbol: str = "$"
    electricity_rate: float = Field(default=0.12, gt=0, le=100)
    conversion_factor: float = Field(default=1.0, gt=0)

    @classmethod
    def for_currency(cls, code: str) -> CurrencyPreference:
        """Default preference for a currency, using its local country rate."""
        info = currency_info(code)
        return cls(
            currency=info.code,
            symbol=info.symbol,
            electricity_rate=info.default_rate,
            conversion_factor=1.0,
        )

    @classmethod
    def from_base_rate(cls, code: str, base_rate: float) -> CurrencyPreference:
        """Preference for a rate quoted in USD, displayed in *code*."""
        info = currency_info(code)
        return cls(
            currency=info.code,
            symbol=info.symbol,
            electricity_rate=base_rate,
            conversion_factor=info.conversion_factor,
        )


class DeviceInfo(BaseModel):
    """A device owned directly by a user."""

    device_id: str
    user_id: str
    name: str = ""
    rated_watts: float = Field(gt=0)
    status: DeviceStatus = "offline"
    location: str = "Unknown"
    last_seen: datetime
    is_active: bool = True


class AttachedDevice(BaseModel):
    """A device attached to a controller (hub)."""

    device_id: str
    name: str = ""
    rated_watts: float = Field(gt=0)
    connection_status: ConnectionStatus = "connected"
    is_active: bool = True

    @property
    def contributes(self) -> bool:
        """True when this device counts towards the controller's load."""
        return self.is_active and self.connection_status == "connected"


class ControllerInfo(BaseModel):
    """A controller and the ordered set of devices attached to it.

    ``total_rated_power`` is derived, never stored, so it always equals the
    sum of rated power over the devices currently connected and active.
    """

    controller_id: str
    user_id: str
    name: str = ""
    status: ControllerStatus = "online"
    location: str = "Unknown"
    devices: list[AttachedDevice] = Field(default_factory=list)

    @property
    def contributing_devices(self) -> list[AttachedDevice]:
        """Attached devices that are connected and active, in attach order."""
        return [device for device in self.devices if device.contributes]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_rated_power(self) -> float:
        """Sum of rated watts over the contributing devices."""
        return sum(device.rated_watts for device in self.contributing_devices)


class InactiveDevice(BaseModel):
    """An offline device whose last report is older than the threshold."""

    device_id: str
    device_name: str = ""
    owner_id: str
    owner_email: str
    last_seen: datetime


class TelemetrySample(BaseModel):
    """A single simulated telemetry reading.

    Cost figures are frozen at capture time; a later change of the user's
    currency preference does not rewrite them.

    Attributes:
        user_id: Owner of the device.
        device_id: Device the reading belongs to.
        controller_id: Controller the device is attached to, if any.
        device_name: Device display name at capture time.
        location: Device (or controller) location.
        ts: Capture timestamp (timezone-aware).
        power_w: Instantaneous power in watts.
        rated_power_w: Device rating in watts.
        voltage_v: Simulated line voltage (display only).
        current_a: Simulated current (display only).
        frequency_hz: Simulated grid frequency (display only).
        electricity_rate: Price per kWh applied.
        conversion_factor: Currency multiplier applied.
        currency: Currency code applied.
        currency_symbol: Currency symbol applied.
        cost_per_second..cost_per_year: Output of the cost converter.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    device_id: str
    controller_id: str | None = None
    device_name: str = ""
    location: str = "Unknown"
    ts: datetime
    power_w: float = Field(ge=0)
    rated_power_w: float
    voltage_v: float
    current_a: float
    frequency_hz: float
    electricity_rate: float
    conversion_factor: float
    currency: str
    currency_symbol: str
    cost_per_second: float
    cost_per_hour: float
    cost_per_day: float
    cost_per_month: float
    cost_per_year: float

    @property
    def instant_cost(self) -> float:
        """Cost of one second at this draw."""
        return self.cost_per_second


class PeriodStats(BaseModel):
    """Usage and cost totals over a period window."""

    period: Period
    start_time: datetime
    end_time: datetime
    total_usage_kwh: float
    total_cost: float
    record_count: int


class DailyAggregate(BaseModel):
    """Per-local-day totals from the sample store."""

    day: date
    total_usage_kwh: float
    total_cost: float
    sample_count: int
    power_sum_w: float


class ChartPoint(BaseModel):
    """One point of the dashboard usage chart."""

    date: Day
    avg_usage_kwh: float
    hourly_cost_equivalent: float


class DeviceReading(BaseModel):
    """Latest reading of one device inside a snapshot.

    ``stale`` readings are listed but add nothing to the snapshot totals.
    """

    device_id: str
    device_name: str = ""
    controller_id: str | None = None
    ts: datetime
    power_w: float
    cost_per_second: float
    cost_per_hour: float
    cost_per_day: float
    stale: bool = False


class UserSnapshot(BaseModel):
    """Live totals across every device of a user."""

    user_id: str
    devices: list[DeviceReading] = Field(default_factory=list)
    total_power: float = 0.0
    total_cost_per_second: float = 0.0
    total_cost_per_hour: float = 0.0
    total_cost_per_day: float = 0.0


class ControllerSnapshot(UserSnapshot):
    """Live totals across the devices of one controller."""

    controller_id: str


class MonitorStats(BaseModel):
    """Inactivity monitor status."""

    is_running: bool
    flagged_devices_count: int
    inactive_threshold_hours: float
