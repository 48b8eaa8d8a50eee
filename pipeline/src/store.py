"""
Append-only telemetry sample store using async SQLite.

Every simulated reading is written once to the ``telemetry_samples`` table and
never updated. Readers (aggregator, dashboards) and both simulation
schedulers share one store; because rows are only appended or deleted by
predicate, no explicit locking is needed. The database runs in WAL mode so
the retention janitor's deletes do not block inserts or reads.

Operations:
- insert_batch(samples): INSERT a batch of TelemetrySample rows.
- latest_per_device(user_id): newest sample per device (ties: last inserted).
- range_by_device(user_id, device_id, since): samples in time order.
- summarize(user_id, since): power / cost sums and count over a window.
- aggregate_daily(user_id, since, tz): per-local-day totals.
- evict_older_than(retention): DELETE samples past the retention window.
- count(user_id): number of stored samples.

Every SQLite failure is re-raised as TransientStoreError so callers can skip
the affected entity for the current tick.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-09: Add aggregate_daily for chart series (STORY-013)
- 2026-10-04: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from pathlib import Path

import aiosqlite

from pipeline.src.errors import TransientStoreError
from pipeline.src.models import DailyAggregate, TelemetrySample

DEFAULT_RETENTION = timedelta(days=30)

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS telemetry_samples (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    device_id TEXT NOT NULL,
    controller_id TEXT,
    device_name TEXT NOT NULL DEFAULT '',
    location TEXT NOT NULL DEFAULT '',
    ts TEXT NOT NULL,
    power_w REAL NOT NULL,
    rated_power_w REAL NOT NULL,
    voltage_v REAL NOT NULL,
    current_a REAL NOT NULL,
    frequency_hz REAL NOT NULL,
    electricity_rate REAL NOT NULL,
    conversion_factor REAL NOT NULL,
    currency TEXT NOT NULL,
    currency_symbol TEXT NOT NULL,
    cost_per_second REAL NOT NULL,
    cost_per_hour REAL NOT NULL,
    cost_per_day REAL NOT NULL,
    cost_per_month REAL NOT NULL,
    cost_per_year REAL NOT NULL
);
"""

_CREATE_INDEXES_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_samples_user_device_ts "
    "ON telemetry_samples (user_id, device_id, ts);",
    "CREATE INDEX IF NOT EXISTS idx_samples_user_ts ON telemetry_samples (user_id, ts);",
    "CREATE INDEX IF NOT EXISTS idx_samples_ts ON telemetry_samples (ts);",
)

_COLUMNS = (
    "user_id",
    "device_id",
    "controller_id",
    "device_name",
    "location",
    "ts",
    "power_w",
    "rated_power_w",
    "voltage_v",
    "current_a",
    "frequency_hz",
    "electricity_rate",
    "conversion_factor",
    "currency",
    "currency_symbol",
    "cost_per_second",
    "cost_per_hour",
    "cost_per_day",
    "cost_per_month",
    "cost_per_year",
)

_SELECT_COLUMNS = ", ".join(_COLUMNS)

_INSERT_SQL = (
    f"INSERT INTO telemetry_samples ({_SELECT_COLUMNS}) "
    f"VALUES ({', '.join('?' for _ in _COLUMNS)});"
)

# Newest ts wins; equal timestamps fall back to insertion order (rowid).
_LATEST_PER_DEVICE_SQL = f"""\
SELECT {_SELECT_COLUMNS} FROM (
    SELECT *, ROW_NUMBER() OVER (
        PARTITION BY device_id ORDER BY ts DESC, rowid DESC
    ) AS rn
    FROM telemetry_samples
    WHERE user_id = ? {{controller_filter}}
)
WHERE rn = 1
ORDER BY device_id ASC;
"""

_RANGE_BY_DEVICE_SQL = f"""\
SELECT {_SELECT_COLUMNS}
FROM telemetry_samples
WHERE user_id = ? AND device_id = ? AND ts >= ? AND ts <= ?
ORDER BY ts ASC, rowid ASC;
"""

_SUMMARIZE_SQL = """\
SELECT COALESCE(SUM(power_w), 0), COALESCE(SUM(cost_per_second), 0), COUNT(*)
FROM telemetry_samples
WHERE user_id = ? AND ts >= ? AND ts <= ? {device_filter};
"""

_DAILY_ROWS_SQL = """\
SELECT ts, power_w, cost_per_second
FROM telemetry_samples
WHERE user_id = ? AND ts >= ?
ORDER BY ts ASC;
"""

_EVICT_SQL = "DELETE FROM telemetry_samples WHERE ts < ?;"

_COUNT_SQL = "SELECT COUNT(*) FROM telemetry_samples;"

_COUNT_USER_SQL = "SELECT COUNT(*) FROM telemetry_samples WHERE user_id = ?;"

_MAX_TS = "9999-12-31T23:59:59.999999+00:00"


def to_db_ts(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string.

    A fixed width keeps lexicographic order equal to time order, so range
    predicates on the TEXT column are correct. Naive datetimes are taken
    as UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_db_ts(value: str) -> datetime:
    """Parse a timestamp written by :func:`to_db_ts`."""
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class WindowTotals:
    """Raw sums over a window of samples.

    Attributes:
        power_sum_w: Sum of instantaneous power over the samples.
        cost_sum: Sum of per-second cost over the samples.
        sample_count: Number of samples.
    """

    power_sum_w: float
    cost_sum: float
    sample_count: int

    @property
    def usage_kwh(self) -> float:
        """Energy, treating every sample as one second at its power."""
        return self.power_sum_w / 1000 / 3600


def _sample_to_row(sample: TelemetrySample) -> tuple:
    """Flatten a sample into INSERT parameters (in _COLUMNS order)."""
    data = sample.model_dump()
    data["ts"] = to_db_ts(sample.ts)
    return tuple(data[column] for column in _COLUMNS)


def _row_to_sample(row: Sequence) -> TelemetrySample:
    """Rebuild a sample from a SELECT row (in _COLUMNS order)."""
    data = dict(zip(_COLUMNS, row, strict=True))
    data["ts"] = from_db_ts(data["ts"])
    return TelemetrySample(**data)


class SampleStore:
    """Append-only async store of TelemetrySample rows backed by SQLite.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with SampleStore(path="/data/energy.db") as store:
            await store.insert_batch(samples)
            latest = await store.latest_per_device("user-1")
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        try:
            self._db = await aiosqlite.connect(str(self._path))
            await self._db.execute("PRAGMA journal_mode=WAL;")
            await self._db.execute(_CREATE_TABLE_SQL)
            for sql in _CREATE_INDEXES_SQL:
                await self._db.execute(sql)
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise TransientStoreError(f"Cannot open sample store at {self._path}") from exc

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SampleStore:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def insert_batch(self, samples: Sequence[TelemetrySample]) -> int:
        """Append a batch of samples in one transaction.

        Args:
            samples: Samples to store. An empty batch is a no-op.

        Returns:
            Number of rows inserted.

        Raises:
            TransientStoreError: If the write fails.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        if not samples:
            return 0
        rows = [_sample_to_row(sample) for sample in samples]
        try:
            await self._db.executemany(_INSERT_SQL, rows)
            await self._db.commit()
        except aiosqlite.Error as exc:
            await self._db.rollback()
            raise TransientStoreError(f"Insert of {len(rows)} samples failed") from exc
        return len(rows)

    async def latest_per_device(
        self,
        user_id: str,
        controller_id: str | None = None,
    ) -> list[TelemetrySample]:
        """Return the most recent sample of every device of a user.

        Among samples with the same timestamp the one inserted last wins.

        Args:
            user_id: Owner whose devices to read.
            controller_id: Restrict to samples captured through this
                controller.

        Returns:
            One sample per device id, ordered by device id.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        params: list[str] = [user_id]
        controller_filter = ""
        if controller_id is not None:
            controller_filter = "AND controller_id = ?"
            params.append(controller_id)
        sql = _LATEST_PER_DEVICE_SQL.format(controller_filter=controller_filter)
        return await self._fetch_samples(sql, params)

    async def range_by_device(
        self,
        user_id: str,
        device_id: str,
        since: datetime,
        until: datetime | None = None,
    ) -> list[TelemetrySample]:
        """Return a device's samples with ``since <= ts <= until``, oldest first."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        upper = to_db_ts(until) if until is not None else _MAX_TS
        return await self._fetch_samples(
            _RANGE_BY_DEVICE_SQL,
            [user_id, device_id, to_db_ts(since), upper],
        )

    async def summarize(
        self,
        user_id: str,
        since: datetime,
        until: datetime | None = None,
        device_id: str | None = None,
    ) -> WindowTotals:
        """Sum power and per-second cost over a user's samples in a window."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        upper = to_db_ts(until) if until is not None else _MAX_TS
        params: list[str] = [user_id, to_db_ts(since), upper]
        device_filter = ""
        if device_id is not None:
            device_filter = "AND device_id = ?"
            params.append(device_id)
        sql = _SUMMARIZE_SQL.format(device_filter=device_filter)
        try:
            cursor = await self._db.execute(sql, params)
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise TransientStoreError(f"Summary query failed for user {user_id}") from exc
        return WindowTotals(
            power_sum_w=float(row[0]),
            cost_sum=float(row[1]),
            sample_count=int(row[2]),
        )

    async def aggregate_daily(
        self,
        user_id: str,
        since: datetime,
        tz: tzinfo = UTC,
    ) -> list[DailyAggregate]:
        """Group a user's samples since *since* by local calendar day.

        Args:
            user_id: Owner whose samples to aggregate.
            since: Inclusive lower bound.
            tz: Timezone that defines the calendar day.

        Returns:
            One entry per day that has samples, ascending by day.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        try:
            cursor = await self._db.execute(_DAILY_ROWS_SQL, (user_id, to_db_ts(since)))
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise TransientStoreError(f"Daily aggregate failed for user {user_id}") from exc

        buckets: dict = {}
        for ts, power_w, cost_per_second in rows:
            day = from_db_ts(ts).astimezone(tz).date()
            power_sum, cost_sum, count = buckets.get(day, (0.0, 0.0, 0))
            buckets[day] = (power_sum + power_w, cost_sum + cost_per_second, count + 1)

        return [
            DailyAggregate(
                day=day,
                total_usage_kwh=power_sum / 1000 / 3600,
                total_cost=cost_sum,
                sample_count=count,
                power_sum_w=power_sum,
            )
            for day, (power_sum, cost_sum, count) in sorted(buckets.items())
        ]

    async def evict_older_than(
        self,
        retention: timedelta = DEFAULT_RETENTION,
        now: datetime | None = None,
    ) -> int:
        """Delete samples older than the retention window.

        Args:
            retention: Samples with ``ts < now - retention`` are removed.
            now: Reference time (defaults to the current UTC time).

        Returns:
            Number of rows removed.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        reference = now if now is not None else datetime.now(tz=UTC)
        cutoff = to_db_ts(reference - retention)
        try:
            cursor = await self._db.execute(_EVICT_SQL, (cutoff,))
            await self._db.commit()
        except aiosqlite.Error as exc:
            await self._db.rollback()
            raise TransientStoreError("Eviction failed") from exc
        return cursor.rowcount

    async def count(self, user_id: str | None = None) -> int:
        """Return the number of stored samples, optionally for one user."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        try:
            if user_id is None:
                cursor = await self._db.execute(_COUNT_SQL)
            else:
                cursor = await self._db.execute(_COUNT_USER_SQL, (user_id,))
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise TransientStoreError("Count query failed") from exc
        return row[0]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _fetch_samples(self, sql: str, params: Sequence) -> list[TelemetrySample]:
        """Run a SELECT over _COLUMNS and rebuild the samples."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        try:
            cursor = await self._db.execute(sql, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise TransientStoreError("Sample query failed") from exc
        return [_row_to_sample(row) for row in rows]
