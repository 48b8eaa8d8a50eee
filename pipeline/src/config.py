"""
Pipeline daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded hosts, URLs, or credentials. Invalid values fail at startup
with a ValidationError.

CHANGELOG:
- 2026-10-12: Add notifier, backfill and fixture settings (STORY-017)
- 2026-10-05: Initial creation (STORY-007)

TODO:
- None
"""

from datetime import tzinfo
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings


class PipelineSettings(BaseSettings):
    """Energy pipeline configuration.

    Every variable has a default, so the daemon starts with an empty
    environment and logs alerts instead of sending them.

    Attributes:
        db_path: SQLite file holding samples, registry and alert state.
        simulation_interval_s: Seconds between owned-device simulation ticks.
        controller_simulation_interval_s: Seconds between controller-device
            simulation ticks.
        inactivity_check_interval_min: Minutes between inactivity checks.
        inactivity_threshold_h: Hours offline before a device is reported.
        retention_days: Days a telemetry sample is kept.
        janitor_interval_s: Seconds between retention sweeps.
        rollup_interval_s: Seconds between rollup cache refreshes.
        snapshot_stale_after_s: Age after which a device's latest sample no
            longer counts toward live snapshot totals.
        timezone: IANA zone defining the local hour and calendar day.
        alert_state_backend: ``sqlite`` persists alert flags, ``memory``
            keeps them for the process lifetime.
        backfill_days: Days of hourly history to synthesize at startup.
        fixture_path: Optional registry fixture JSON loaded at startup.
        health_path: Health JSON file path.
        smtp_host: SMTP relay; empty disables email.
        smtp_port: SMTP relay port.
        smtp_username: SMTP login user.
        smtp_password: SMTP login password.
        smtp_sender: From address (defaults to smtp_username).
        smtp_use_tls: Use STARTTLS.
        alert_webhook_url: HTTPS webhook for alerts; takes precedence over SMTP.
        alert_webhook_token: Bearer token for the webhook.
        log_level: Root log level.
    """

    db_path: str = "/data/energy.db"
    simulation_interval_s: float = 10
    controller_simulation_interval_s: float = 10
    inactivity_check_interval_min: float = 30
    inactivity_threshold_h: float = 24
    retention_days: int = 30
    janitor_interval_s: float = 3600
    rollup_interval_s: float = 300
    snapshot_stale_after_s: float = 300
    timezone: str = "UTC"
    alert_state_backend: Literal["sqlite", "memory"] = "sqlite"
    backfill_days: int = 0
    fixture_path: str = ""
    health_path: str = "/data/health.json"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_sender: str = ""
    smtp_use_tls: bool = True
    alert_webhook_url: str = ""
    alert_webhook_token: str = ""
    log_level: str = "INFO"

    @property
    def tz(self) -> tzinfo:
        """The configured timezone as a tzinfo."""
        return ZoneInfo(self.timezone)

    @field_validator(
        "simulation_interval_s",
        "controller_simulation_interval_s",
        "inactivity_check_interval_min",
        "inactivity_threshold_h",
        "janitor_interval_s",
        "rollup_interval_s",
        "snapshot_stale_after_s",
    )
    @classmethod
    def intervals_must_be_positive(cls, v: float) -> float:
        """Validate that intervals and thresholds are strictly positive."""
        if v <= 0:
            raise ValueError("intervals and thresholds must be > 0")
        return v

    @field_validator("retention_days")
    @classmethod
    def retention_must_be_at_least_one_day(cls, v: int) -> int:
        """Validate retention keeps at least one day of samples."""
        if v < 1:
            raise ValueError("RETENTION_DAYS must be >= 1")
        return v

    @field_validator("backfill_days")
    @classmethod
    def backfill_days_must_be_valid(cls, v: int) -> int:
        """Validate backfill is between 0 and 30 days."""
        if v < 0 or v > 30:
            raise ValueError("BACKFILL_DAYS must be >= 0 and <= 30")
        return v

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, v: str) -> str:
        """Validate the timezone is a known IANA zone."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"TIMEZONE '{v}' is not a known IANA zone") from exc
        return v

    @field_validator("smtp_port")
    @classmethod
    def smtp_port_must_be_valid(cls, v: int) -> int:
        """Validate SMTP port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("SMTP_PORT must be between 1 and 65535")
        return v

    @field_validator("alert_webhook_url")
    @classmethod
    def webhook_url_must_be_https(cls, v: str) -> str:
        """Validate that the alert webhook, when set, uses HTTPS.

        HTTP URLs are rejected at startup to prevent insecure transport
        of owner email addresses.
        """
        if v and not v.startswith("https://"):
            raise ValueError(f"ALERT_WEBHOOK_URL must use HTTPS (got: '{v[:20]}...').")
        return v

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
