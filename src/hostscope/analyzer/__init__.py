"""Analytics over persisted telemetry tables."""
