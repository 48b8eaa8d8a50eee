"""
Energy telemetry pipeline package.

Simulates power draw for every registered device, derives electrical and
monetary figures under each user's currency preference, stores the samples
in a local SQLite store, rolls them up for dashboards, and alerts owners of
devices that stop reporting.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""
