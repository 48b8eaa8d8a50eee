"""
Energy pipeline daemon entrypoint.

Builds the pipeline from PipelineSettings and runs its background tasks
until SIGTERM/SIGINT:

1. Two simulation schedulers (owned devices, controller-attached devices).
2. The inactivity monitor.
3. The retention janitor and the rollup cache refresh.

Optionally loads a registry fixture and backfills hourly history before
the tasks start. Every task is resilient: a failing tick is logged and the
next tick runs on schedule. On shutdown the daemon stops every task, lets
in-flight ticks finish and closes the databases.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-10-12: Add fixture loading and backfill at startup (STORY-018)
- 2026-10-09: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from pipeline.src.health import HealthWriter
from pipeline.src.monitor import InMemoryAlertState
from pipeline.src.notifier import build_notifier
from pipeline.src.registry import RegistryFixture, SqliteRegistry
from pipeline.src.service import EnergyPipeline

if TYPE_CHECKING:
    from pipeline.src.config import PipelineSettings
    from pipeline.src.store import SampleStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on the root logger (stderr)."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def _masked_secret(value: str | None) -> str:
    """Return a short non-reversible fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: PipelineSettings) -> None:
    """Log a config summary at startup, masking the SMTP password and webhook token."""
    logger.info(
        "Energy pipeline starting with config: "
        "db_path=%s, simulation_interval_s=%s, controller_simulation_interval_s=%s, "
        "inactivity_check_interval_min=%s, inactivity_threshold_h=%s, "
        "retention_days=%s, janitor_interval_s=%s, rollup_interval_s=%s, "
        "timezone=%s, alert_state_backend=%s, backfill_days=%s, fixture_path=%s, "
        "smtp_host=%s, smtp_port=%s, smtp_username=%s, smtp_password_masked=%s, "
        "alert_webhook_url=%s, alert_webhook_token_masked=%s",
        settings.db_path,
        settings.simulation_interval_s,
        settings.controller_simulation_interval_s,
        settings.inactivity_check_interval_min,
        settings.inactivity_threshold_h,
        settings.retention_days,
        settings.janitor_interval_s,
        settings.rollup_interval_s,
        settings.timezone,
        settings.alert_state_backend,
        settings.backfill_days,
        settings.fixture_path or "none",
        settings.smtp_host or "none",
        settings.smtp_port,
        settings.smtp_username,
        _masked_secret(settings.smtp_password),
        settings.alert_webhook_url or "none",
        _masked_secret(settings.alert_webhook_token),
    )


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_pipeline(
    settings: PipelineSettings,
    *,
    store: SampleStore,
    registry: SqliteRegistry,
    health: HealthWriter | None = None,
) -> EnergyPipeline:
    """Wire an EnergyPipeline from settings and opened storage."""
    alert_state = registry if settings.alert_state_backend == "sqlite" else InMemoryAlertState()
    return EnergyPipeline(
        store=store,
        users=registry,
        devices=registry,
        controllers=registry,
        alert_state=alert_state,
        notifier=build_notifier(settings),
        tz=settings.tz,
        threshold_hours=settings.inactivity_threshold_h,
        retention=timedelta(days=settings.retention_days),
        stale_after=timedelta(seconds=settings.snapshot_stale_after_s),
        health=health,
    )


async def run_pipeline(
    pipeline: EnergyPipeline,
    settings: PipelineSettings,
    shutdown_event: asyncio.Event,
) -> None:
    """Start every background task, wait for shutdown, then stop them all."""
    try:
        await pipeline.start_simulation(
            settings.simulation_interval_s,
            settings.controller_simulation_interval_s,
        )
        await pipeline.start_inactivity_monitor(settings.inactivity_check_interval_min)
        await pipeline.start_maintenance(settings.janitor_interval_s, settings.rollup_interval_s)
        logger.info("Energy pipeline running")
        await shutdown_event.wait()
    finally:
        await pipeline.stop_all()
        logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, open storage, run the pipeline.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    from pipeline.src.config import PipelineSettings
    from pipeline.src.store import SampleStore

    settings = PipelineSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    health = HealthWriter(settings.health_path)

    async with SampleStore(settings.db_path) as store, SqliteRegistry(settings.db_path) as registry:
        if settings.fixture_path:
            await registry.load_fixture(RegistryFixture.from_file(settings.fixture_path))

        pipeline = build_pipeline(settings, store=store, registry=registry, health=health)
        if settings.backfill_days:
            await pipeline.backfill(settings.backfill_days)

        await run_pipeline(pipeline, settings, shutdown_event)


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the energy pipeline daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
