"""
Inactivity monitor: alerts owners of devices that stopped reporting.

Every check:

1. Query offline devices whose ``last_seen`` is older than the threshold
   (default 24 hours).
2. Clear the flag of every flagged device that is no longer in that set,
   so a later inactivity period alerts again.
3. For each inactive device not already flagged for its current
   ``last_seen``, send one notification to the owner, then flag it.

A notifier failure (exception or a False result) is logged, leaves the
device unflagged so the next check retries, and does not stop the other
devices. A device whose ``last_seen`` advanced since it was flagged is
alerted again.

Flags live in an AlertStateStore: SqliteRegistry persists them across
restarts; InMemoryAlertState keeps them for the process lifetime only.
If saving a flag fails after a delivered alert, the monitor keeps that flag
in memory so the owner is not alerted again on every check.

CHANGELOG:
- 2026-10-19: Keep delivered alerts flagged when saving the flag fails (STORY-021)
- 2026-10-11: Persistent alert state, re-alert on last_seen change (STORY-015)
- 2026-10-09: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from pipeline.src.models import InactiveDevice, MonitorStats
from pipeline.src.scheduler import PeriodicTask
from pipeline.src.simulation import Clock, utc_now

if TYPE_CHECKING:
    from pipeline.src.health import HealthWriter
    from pipeline.src.notifier import Notifier
    from pipeline.src.registry import AlertStateStore, DeviceRegistry

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_HOURS = 24.0

ALERT_SUBJECT = "Device Inactive: {name}"
ALERT_BODY = (
    'Your device "{name}" has been inactive for {hours} hours. '
    "Please check if the device is powered on and connected."
)


class InMemoryAlertState:
    """Process-local alert flags; lost on restart."""

    def __init__(self) -> None:
        self._flags: dict[str, datetime] = {}

    async def flagged_devices(self) -> dict[str, datetime]:
        return dict(self._flags)

    async def mark_alerted(self, device_id: str, last_seen: datetime, alerted_at: datetime) -> None:
        self._flags[device_id] = last_seen

    async def clear_alert(self, device_id: str) -> None:
        self._flags.pop(device_id, None)

    async def reset_alerts(self) -> None:
        self._flags.clear()


class InactivityMonitor:
    """Periodic check for devices offline longer than a threshold.

    Args:
        devices: Registry answering offline_devices_older_than().
        notifier: Channel used to reach device owners.
        alert_state: Where per-device alert flags are kept.
        threshold_hours: Inactivity threshold in hours.
        clock: Returns the current aware datetime.
        health: Optional health writer updated after every check.
    """

    def __init__(
        self,
        *,
        devices: DeviceRegistry,
        notifier: Notifier,
        alert_state: AlertStateStore,
        threshold_hours: float = DEFAULT_THRESHOLD_HOURS,
        clock: Clock = utc_now,
        health: HealthWriter | None = None,
    ) -> None:
        self._devices = devices
        self._notifier = notifier
        self._alert_state = alert_state
        self._threshold_hours = threshold_hours
        self._clock = clock
        self._health = health
        self._flagged_count = 0
        # Delivered alerts whose flag could not be saved, kept for this process.
        self._unsaved: dict[str, datetime] = {}
        self._task = PeriodicTask("inactivity-monitor", self.check)

    @property
    def running(self) -> bool:
        return self._task.running

    @property
    def task(self) -> PeriodicTask:
        return self._task

    async def start(self, check_interval_min: float) -> bool:
        """Check now, then every *check_interval_min* minutes."""
        return await self._task.start(check_interval_min * 60)

    async def stop(self) -> None:
        await self._task.stop()

    async def check(self) -> int:
        """Run one inactivity check.

        Returns:
            Number of alerts sent.
        """
        now = self._clock()
        threshold = now - timedelta(hours=self._threshold_hours)
        try:
            inactive = await self._devices.offline_devices_older_than(threshold)
            flagged = await self._alert_state.flagged_devices()
        except Exception:
            logger.error("Inactivity check failed to read device state", exc_info=True)
            return 0
        flagged.update(self._unsaved)

        inactive_ids = {device.device_id for device in inactive}
        for device_id in flagged.keys() - inactive_ids:
            try:
                await self._alert_state.clear_alert(device_id)
                del flagged[device_id]
                self._unsaved.pop(device_id, None)
                logger.info("Device %s is active again, alert cleared", device_id)
            except Exception:
                logger.error("Failed to clear alert for device=%s", device_id, exc_info=True)

        sent = 0
        for device in inactive:
            if flagged.get(device.device_id) == device.last_seen:
                continue
            if await self._alert(device, now):
                flagged[device.device_id] = device.last_seen
                sent += 1

        self._flagged_count = len(flagged)
        if inactive:
            logger.info(
                "Inactivity check: %d inactive devices, %d alerts sent", len(inactive), sent
            )
        self._record_health(sent)
        return sent

    def stats(self) -> MonitorStats:
        """Running flag, flagged device count (as of the last check), threshold."""
        return MonitorStats(
            is_running=self.running,
            flagged_devices_count=self._flagged_count,
            inactive_threshold_hours=self._threshold_hours,
        )

    async def reset_alerts(self) -> None:
        """Clear every alert flag so all inactive devices alert again."""
        await self._alert_state.reset_alerts()
        self._unsaved.clear()
        self._flagged_count = 0
        logger.info("Inactivity alert flags reset")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _alert(self, device: InactiveDevice, now: datetime) -> bool:
        """Notify the owner of one device and flag it on success."""
        name = device.device_name or device.device_id
        hours = int((now - device.last_seen).total_seconds() // 3600)
        subject = ALERT_SUBJECT.format(name=name)
        body = ALERT_BODY.format(name=name, hours=hours)
        try:
            delivered = await self._notifier.send(device.owner_email, subject, body)
        except Exception:
            logger.error(
                "Failed to send inactivity alert for device=%s owner=%s",
                device.device_id,
                device.owner_id,
                exc_info=True,
            )
            return False
        if not delivered:
            logger.warning(
                "Notifier rejected inactivity alert for device=%s owner=%s",
                device.device_id,
                device.owner_id,
            )
            return False

        try:
            await self._alert_state.mark_alerted(device.device_id, device.last_seen, now)
        except Exception:
            logger.error(
                "Inactivity alert delivered for device=%s but the flag was not saved",
                device.device_id,
                exc_info=True,
            )
            self._unsaved[device.device_id] = device.last_seen
        else:
            self._unsaved.pop(device.device_id, None)
        logger.info("Inactivity alert sent for device=%s (%d hours)", device.device_id, hours)
        return True

    def _record_health(self, sent: int) -> None:
        if self._health is None:
            return
        try:
            self._health.record_tick(
                "inactivity-monitor",
                alerts_sent=sent,
                flagged_devices=self._flagged_count,
            )
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
