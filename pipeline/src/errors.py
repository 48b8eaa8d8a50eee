"""
Exception taxonomy for the energy telemetry pipeline.

- InvalidInput: malformed parameters to the power model or cost converter.
- TransientStoreError: the sample store (or registry) failed one operation.
- NotifierError: alert or report delivery failed.
- ConfigurationError: a scheduler was asked to start with a bad interval.

Only ConfigurationError is expected to reach callers of the pipeline; the
others are caught and logged at the tick boundary.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class InvalidInput(PipelineError, ValueError):
    """Raised for non-positive ratings, rates, factors or out-of-range hours."""


class TransientStoreError(PipelineError):
    """Raised when a single storage operation fails.

    The caller skips the affected user or device for the current tick; the
    next tick retries naturally.
    """


class NotifierError(PipelineError):
    """Raised when an alert or report could not be delivered."""


class ConfigurationError(PipelineError, ValueError):
    """Raised at start() time for non-positive intervals or missing config."""
