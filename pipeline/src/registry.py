"""
User, device and controller registries consumed by the pipeline.

The pipeline only reads registry data. The protocols below are the contracts
it depends on; :class:`SqliteRegistry` is the concrete implementation used by
the daemon, backed by the same SQLite database file as the sample store.

Contracts:
- UserRegistry: list_active_users(), currency_preference(user_id).
- DeviceRegistry: online_devices_for(user_id), offline_devices_older_than(threshold).
- ControllerRegistry: controllers_for(user_id).
- AlertStateStore: flagged_devices(), mark_alerted(), clear_alert(), reset_alerts().

SqliteRegistry also persists alert de-duplication state per device
(``device_alert_state``) so a restart does not re-alert devices that were
already reported, and loads registry fixtures (users, currency preferences,
devices and controllers) from JSON.

CHANGELOG:
- 2026-10-19: Roll back failed writes; fixture users accept a USD-quoted rate (STORY-021)
- 2026-10-11: Persist alert state in device_alert_state (STORY-015)
- 2026-10-10: Add fixture loading for controller / device data (STORY-018)
- 2026-10-05: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import aiosqlite
from pydantic import BaseModel, Field

from pipeline.src.errors import TransientStoreError
from pipeline.src.models import (
    AttachedDevice,
    ControllerInfo,
    CurrencyPreference,
    DeviceInfo,
    DeviceStatus,
    InactiveDevice,
)
from pipeline.src.store import from_db_ts, to_db_ts

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class UserRegistry(Protocol):
    async def list_active_users(self) -> list[str]: ...

    async def currency_preference(self, user_id: str) -> CurrencyPreference: ...


class DeviceRegistry(Protocol):
    async def online_devices_for(self, user_id: str) -> list[DeviceInfo]: ...

    async def offline_devices_older_than(self, threshold: datetime) -> list[InactiveDevice]: ...


class ControllerRegistry(Protocol):
    async def controllers_for(self, user_id: str) -> list[ControllerInfo]: ...


class AlertStateStore(Protocol):
    """De-duplication state of the inactivity monitor.

    ``flagged_devices`` maps device id to the ``last_seen`` value the alert
    was sent for.
    """

    async def flagged_devices(self) -> dict[str, datetime]: ...

    async def mark_alerted(self, device_id: str, last_seen: datetime, alerted_at: datetime) -> None: ...

    async def clear_alert(self, device_id: str) -> None: ...

    async def reset_alerts(self) -> None: ...


# ---------------------------------------------------------------------------
# Fixture format
# ---------------------------------------------------------------------------


class UserFixture(BaseModel):
    """A fixture user.

    The preference is either a full ``currency`` object or a
    ``currency_code`` with an optional ``usd_rate``: the rate per kWh quoted
    in USD, converted for display with the catalogue factor.
    """

    user_id: str
    email: str
    name: str = ""
    is_active: bool = True
    currency: CurrencyPreference | None = None
    currency_code: str | None = None
    usd_rate: float | None = Field(default=None, gt=0)

    def preference(self) -> CurrencyPreference | None:
        if self.currency is not None:
            return self.currency
        if self.currency_code is None:
            return None
        if self.usd_rate is not None:
            return CurrencyPreference.from_base_rate(self.currency_code, self.usd_rate)
        return CurrencyPreference.for_currency(self.currency_code)


class RegistryFixture(BaseModel):
    """JSON fixture describing users, devices and controllers."""

    users: list[UserFixture] = Field(default_factory=list)
    devices: list[DeviceInfo] = Field(default_factory=list)
    controllers: list[ControllerInfo] = Field(default_factory=list)

    @classmethod
    def from_file(cls, path: str | Path) -> RegistryFixture:
        """Read and validate a fixture file."""
        return cls.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------

_SCHEMA_SQL = (
    """\
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1
);""",
    """\
CREATE TABLE IF NOT EXISTS currency_preferences (
    user_id TEXT PRIMARY KEY,
    currency TEXT NOT NULL,
    symbol TEXT NOT NULL,
    electricity_rate REAL NOT NULL CHECK (electricity_rate > 0),
    conversion_factor REAL NOT NULL CHECK (conversion_factor > 0),
    updated_at TEXT NOT NULL
);""",
    """\
CREATE TABLE IF NOT EXISTS devices (
    device_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    rated_watts REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'offline',
    location TEXT NOT NULL DEFAULT 'Unknown',
    is_active INTEGER NOT NULL DEFAULT 1,
    last_seen TEXT NOT NULL
);""",
    """\
CREATE TABLE IF NOT EXISTS controllers (
    controller_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'online',
    location TEXT NOT NULL DEFAULT 'Unknown'
);""",
    """\
CREATE TABLE IF NOT EXISTS controller_devices (
    controller_id TEXT NOT NULL,
    device_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    rated_watts REAL NOT NULL,
    connection_status TEXT NOT NULL DEFAULT 'connected',
    is_active INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (controller_id, device_id)
);""",
    """\
CREATE TABLE IF NOT EXISTS device_alert_state (
    device_id TEXT PRIMARY KEY,
    last_seen TEXT NOT NULL,
    alerted_at TEXT NOT NULL
);""",
    "CREATE INDEX IF NOT EXISTS idx_devices_user ON devices (user_id);",
    "CREATE INDEX IF NOT EXISTS idx_devices_status_seen ON devices (status, last_seen);",
)

_UPSERT_USER_SQL = """\
INSERT INTO users (user_id, email, name, is_active) VALUES (?, ?, ?, ?)
ON CONFLICT (user_id) DO UPDATE SET
    email = excluded.email, name = excluded.name, is_active = excluded.is_active;
"""

_UPSERT_PREFERENCE_SQL = """\
INSERT INTO currency_preferences
    (user_id, currency, symbol, electricity_rate, conversion_factor, updated_at)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT (user_id) DO UPDATE SET
    currency = excluded.currency,
    symbol = excluded.symbol,
    electricity_rate = excluded.electricity_rate,
    conversion_factor = excluded.conversion_factor,
    updated_at = excluded.updated_at;
"""

_UPSERT_DEVICE_SQL = """\
INSERT INTO devices
    (device_id, user_id, name, rated_watts, status, location, is_active, last_seen)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (device_id) DO UPDATE SET
    user_id = excluded.user_id,
    name = excluded.name,
    rated_watts = excluded.rated_watts,
    status = excluded.status,
    location = excluded.location,
    is_active = excluded.is_active,
    last_seen = excluded.last_seen;
"""

_UPSERT_CONTROLLER_SQL = """\
INSERT INTO controllers (controller_id, user_id, name, status, location)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT (controller_id) DO UPDATE SET
    user_id = excluded.user_id,
    name = excluded.name,
    status = excluded.status,
    location = excluded.location;
"""

_ACTIVE_USERS_SQL = "SELECT user_id FROM users WHERE is_active = 1 ORDER BY user_id;"

_PREFERENCE_SQL = """\
SELECT currency, symbol, electricity_rate, conversion_factor
FROM currency_preferences WHERE user_id = ?;
"""

_ONLINE_DEVICES_SQL = """\
SELECT device_id, user_id, name, rated_watts, status, location, is_active, last_seen
FROM devices
WHERE user_id = ? AND is_active = 1 AND status = 'online'
ORDER BY device_id;
"""

_INACTIVE_DEVICES_SQL = """\
SELECT d.device_id, d.name, d.user_id, u.email, d.last_seen
FROM devices d
JOIN users u ON u.user_id = d.user_id
WHERE d.is_active = 1 AND d.status = 'offline' AND d.last_seen < ?
ORDER BY d.last_seen ASC;
"""

_CONTROLLERS_SQL = """\
SELECT controller_id, user_id, name, status, location
FROM controllers WHERE user_id = ? ORDER BY controller_id;
"""

_CONTROLLER_DEVICES_SQL = """\
SELECT device_id, name, rated_watts, connection_status, is_active
FROM controller_devices WHERE controller_id = ? ORDER BY position ASC;
"""


class SqliteRegistry:
    """SQLite-backed user, device, controller and alert-state registry.

    Implements :class:`UserRegistry`, :class:`DeviceRegistry`,
    :class:`ControllerRegistry` and :class:`AlertStateStore`.

    Args:
        path: Filesystem path for the SQLite database file.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the connection and create the registry tables."""
        try:
            self._db = await aiosqlite.connect(str(self._path))
            await self._db.execute("PRAGMA journal_mode=WAL;")
            for sql in _SCHEMA_SQL:
                await self._db.execute(sql)
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise TransientStoreError(f"Cannot open registry at {self._path}") from exc

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteRegistry:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Writes (registry maintenance, fixtures, status toggles)
    # ------------------------------------------------------------------

    async def upsert_user(
        self,
        user_id: str,
        email: str,
        name: str = "",
        is_active: bool = True,
    ) -> None:
        await self._write(_UPSERT_USER_SQL, (user_id, email, name, int(is_active)))

    async def set_currency_preference(self, user_id: str, preference: CurrencyPreference) -> None:
        """Store a user's preference. Applies to samples captured from now on."""
        await self._write(
            _UPSERT_PREFERENCE_SQL,
            (
                user_id,
                preference.currency,
                preference.symbol,
                preference.electricity_rate,
                preference.conversion_factor,
                to_db_ts(datetime.now(tz=UTC)),
            ),
        )

    async def upsert_device(self, device: DeviceInfo) -> None:
        await self._write(
            _UPSERT_DEVICE_SQL,
            (
                device.device_id,
                device.user_id,
                device.name,
                device.rated_watts,
                device.status,
                device.location,
                int(device.is_active),
                to_db_ts(device.last_seen),
            ),
        )

    async def set_device_status(
        self,
        device_id: str,
        status: DeviceStatus,
        seen_at: datetime | None = None,
    ) -> None:
        """Toggle a device's status and bump its last_seen timestamp."""
        seen = seen_at if seen_at is not None else datetime.now(tz=UTC)
        await self._write(
            "UPDATE devices SET status = ?, last_seen = ? WHERE device_id = ?;",
            (status, to_db_ts(seen), device_id),
        )

    async def upsert_controller(self, controller: ControllerInfo) -> None:
        """Store a controller and replace its ordered attached-device list."""
        assert self._db is not None, "Registry not opened. Call open() or use async with."
        try:
            await self._db.execute(
                _UPSERT_CONTROLLER_SQL,
                (
                    controller.controller_id,
                    controller.user_id,
                    controller.name,
                    controller.status,
                    controller.location,
                ),
            )
            await self._db.execute(
                "DELETE FROM controller_devices WHERE controller_id = ?;",
                (controller.controller_id,),
            )
            await self._db.executemany(
                "INSERT INTO controller_devices "
                "(controller_id, device_id, position, name, rated_watts, "
                "connection_status, is_active) VALUES (?, ?, ?, ?, ?, ?, ?);",
                [
                    (
                        controller.controller_id,
                        device.device_id,
                        position,
                        device.name,
                        device.rated_watts,
                        device.connection_status,
                        int(device.is_active),
                    )
                    for position, device in enumerate(controller.devices)
                ],
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            await self._db.rollback()
            raise TransientStoreError(
                f"Controller upsert failed for {controller.controller_id}"
            ) from exc

    async def load_fixture(self, fixture: RegistryFixture) -> None:
        """Load users, preferences, devices and controllers from a fixture."""
        for user in fixture.users:
            await self.upsert_user(user.user_id, user.email, user.name, user.is_active)
            preference = user.preference()
            if preference is not None:
                await self.set_currency_preference(user.user_id, preference)
        for device in fixture.devices:
            await self.upsert_device(device)
        for controller in fixture.controllers:
            await self.upsert_controller(controller)
        logger.info(
            "Loaded registry fixture: %d users, %d devices, %d controllers",
            len(fixture.users),
            len(fixture.devices),
            len(fixture.controllers),
        )

    # ------------------------------------------------------------------
    # UserRegistry
    # ------------------------------------------------------------------

    async def list_active_users(self) -> list[str]:
        rows = await self._fetchall(_ACTIVE_USERS_SQL, ())
        return [row[0] for row in rows]

    async def currency_preference(self, user_id: str) -> CurrencyPreference:
        """Return the user's live preference, or the USD default when unset."""
        rows = await self._fetchall(_PREFERENCE_SQL, (user_id,))
        if not rows:
            return CurrencyPreference()
        currency, symbol, rate, factor = rows[0]
        return CurrencyPreference(
            currency=currency,
            symbol=symbol,
            electricity_rate=rate,
            conversion_factor=factor,
        )

    # ------------------------------------------------------------------
    # DeviceRegistry
    # ------------------------------------------------------------------

    async def online_devices_for(self, user_id: str) -> list[DeviceInfo]:
        rows = await self._fetchall(_ONLINE_DEVICES_SQL, (user_id,))
        return [
            DeviceInfo(
                device_id=device_id,
                user_id=owner,
                name=name,
                rated_watts=rated_watts,
                status=status,
                location=location,
                is_active=bool(is_active),
                last_seen=from_db_ts(last_seen),
            )
            for device_id, owner, name, rated_watts, status, location, is_active, last_seen in rows
        ]

    async def offline_devices_older_than(self, threshold: datetime) -> list[InactiveDevice]:
        rows = await self._fetchall(_INACTIVE_DEVICES_SQL, (to_db_ts(threshold),))
        return [
            InactiveDevice(
                device_id=device_id,
                device_name=name,
                owner_id=owner,
                owner_email=email,
                last_seen=from_db_ts(last_seen),
            )
            for device_id, name, owner, email, last_seen in rows
        ]

    # ------------------------------------------------------------------
    # ControllerRegistry
    # ------------------------------------------------------------------

    async def controllers_for(self, user_id: str) -> list[ControllerInfo]:
        controllers = []
        for controller_id, owner, name, status, location in await self._fetchall(
            _CONTROLLERS_SQL, (user_id,)
        ):
            device_rows = await self._fetchall(_CONTROLLER_DEVICES_SQL, (controller_id,))
            controllers.append(
                ControllerInfo(
                    controller_id=controller_id,
                    user_id=owner,
                    name=name,
                    status=status,
                    location=location,
                    devices=[
                        AttachedDevice(
                            device_id=device_id,
                            name=device_name,
                            rated_watts=rated_watts,
                            connection_status=connection_status,
                            is_active=bool(is_active),
                        )
                        for device_id, device_name, rated_watts, connection_status, is_active in device_rows
                    ],
                )
            )
        return controllers

    # ------------------------------------------------------------------
    # AlertStateStore
    # ------------------------------------------------------------------

    async def flagged_devices(self) -> dict[str, datetime]:
        rows = await self._fetchall("SELECT device_id, last_seen FROM device_alert_state;", ())
        return {device_id: from_db_ts(last_seen) for device_id, last_seen in rows}

    async def mark_alerted(self, device_id: str, last_seen: datetime, alerted_at: datetime) -> None:
        await self._write(
            "INSERT INTO device_alert_state (device_id, last_seen, alerted_at) VALUES (?, ?, ?) "
            "ON CONFLICT (device_id) DO UPDATE SET "
            "last_seen = excluded.last_seen, alerted_at = excluded.alerted_at;",
            (device_id, to_db_ts(last_seen), to_db_ts(alerted_at)),
        )

    async def clear_alert(self, device_id: str) -> None:
        await self._write("DELETE FROM device_alert_state WHERE device_id = ?;", (device_id,))

    async def reset_alerts(self) -> None:
        await self._write("DELETE FROM device_alert_state;", ())

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _write(self, sql: str, params: tuple) -> None:
        assert self._db is not None, "Registry not opened. Call open() or use async with."
        try:
            await self._db.execute(sql, params)
            await self._db.commit()
        except aiosqlite.Error as exc:
            await self._db.rollback()
            raise TransientStoreError("Registry write failed") from exc

    async def _fetchall(self, sql: str, params: tuple) -> list:
        assert self._db is not None, "Registry not opened. Call open() or use async with."
        try:
            cursor = await self._db.execute(sql, params)
            return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise TransientStoreError("Registry query failed") from exc
