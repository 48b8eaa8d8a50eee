"""
Health file writer for the pipeline daemon.

Writes a JSON health file at a configurable path with:
- jobs: per background job, the ISO timestamp of its most recent tick.
- counters: latest per-job counters (samples written, samples evicted,
  flagged devices, ...).

The file is rewritten on every state change, providing a simple liveness
signal that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-09: Track per-job ticks and counters (STORY-016)
- 2026-10-04: Initial creation (STORY-016)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes pipeline health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._jobs: dict[str, str] = {}
        self._counters: dict[str, int] = {}

    def record_tick(self, job: str, **counters: int) -> None:
        """Record a tick of *job* with optional counters and write the file.

        Counters are stored under ``<job>.<name>``.
        """
        self._jobs[job] = datetime.now(tz=UTC).isoformat()
        for name, value in counters.items():
            self._counters[f"{job}.{name}"] = value
        self._write()

    def set_counter(self, name: str, value: int) -> None:
        """Update a single counter and write the file."""
        self._counters[name] = value
        self._write()

    def snapshot(self) -> dict:
        """Return the current health document."""
        return {"jobs": dict(self._jobs), "counters": dict(self._counters)}

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        self.path.write_text(json.dumps(self.snapshot()))
