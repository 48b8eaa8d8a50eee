"""
Shared test fixtures for energy pipeline tests.

Provides:
- Automatic cleanup of pipeline env vars (and isolation from .env files).
- An in-memory registry implementing the user, device and controller
  contracts, for tests that do not need SQLite.
- A settable clock.

CHANGELOG:
- 2026-10-09: Add in-memory registry and settable clock (STORY-014)
- 2026-10-05: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pipeline.src.models import (
    ControllerInfo,
    CurrencyPreference,
    DeviceInfo,
    InactiveDevice,
)

# All PipelineSettings environment variable names, used for cleanup.
_ALL_PIPELINE_ENV_VARS = (
    "DB_PATH",
    "SIMULATION_INTERVAL_S",
    "CONTROLLER_SIMULATION_INTERVAL_S",
    "INACTIVITY_CHECK_INTERVAL_MIN",
    "INACTIVITY_THRESHOLD_H",
    "RETENTION_DAYS",
    "JANITOR_INTERVAL_S",
    "ROLLUP_INTERVAL_S",
    "SNAPSHOT_STALE_AFTER_S",
    "TIMEZONE",
    "ALERT_STATE_BACKEND",
    "BACKFILL_DAYS",
    "FIXTURE_PATH",
    "HEALTH_PATH",
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_USERNAME",
    "SMTP_PASSWORD",
    "SMTP_SENDER",
    "SMTP_USE_TLS",
    "ALERT_WEBHOOK_URL",
    "ALERT_WEBHOOK_TOKEN",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_pipeline_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all pipeline env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_PIPELINE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


class FakeClock:
    """Callable clock that returns a settable aware datetime."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class InMemoryRegistry:
    """Dict-backed UserRegistry, DeviceRegistry and ControllerRegistry."""

    def __init__(self) -> None:
        self.users: dict[str, str] = {}
        self.preferences: dict[str, CurrencyPreference] = {}
        self.devices: dict[str, DeviceInfo] = {}
        self.controllers: dict[str, ControllerInfo] = {}

    def add_user(
        self,
        user_id: str,
        email: str | None = None,
        preference: CurrencyPreference | None = None,
    ) -> None:
        self.users[user_id] = email or f"{user_id}@example.com"
        if preference is not None:
            self.preferences[user_id] = preference

    def add_device(self, device: DeviceInfo) -> None:
        self.devices[device.device_id] = device

    def add_controller(self, controller: ControllerInfo) -> None:
        self.controllers[controller.controller_id] = controller

    async def list_active_users(self) -> list[str]:
        return list(self.users)

    async def currency_preference(self, user_id: str) -> CurrencyPreference:
        return self.preferences.get(user_id, CurrencyPreference())

    async def online_devices_for(self, user_id: str) -> list[DeviceInfo]:
        return [
            device
            for device in self.devices.values()
            if device.user_id == user_id and device.status == "online" and device.is_active
        ]

    async def offline_devices_older_than(self, threshold: datetime) -> list[InactiveDevice]:
        return [
            InactiveDevice(
                device_id=device.device_id,
                device_name=device.name,
                owner_id=device.user_id,
                owner_email=self.users.get(device.user_id, ""),
                last_seen=device.last_seen,
            )
            for device in self.devices.values()
            if device.status == "offline" and device.is_active and device.last_seen < threshold
        ]

    async def controllers_for(self, user_id: str) -> list[ControllerInfo]:
        return [c for c in self.controllers.values() if c.user_id == user_id]


@pytest.fixture()
def registry() -> InMemoryRegistry:
    """Empty in-memory registry."""
    return InMemoryRegistry()


@pytest.fixture()
def clock() -> FakeClock:
    """Clock fixed at 2026-03-15 12:00 UTC."""
    return FakeClock(datetime(2026, 3, 15, 12, 0, 0, tzinfo=UTC))
