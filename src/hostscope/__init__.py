"""hostscope – host telemetry collection and reporting."""

__version__ = "0.1.0"
