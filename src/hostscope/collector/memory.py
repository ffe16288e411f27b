"""Memory metric sources."""

from __future__ import annotations

import psutil

from .base import MetricSource

_MB = 1024 * 1024


class RamUsedSource(MetricSource):

    @property
    def name(self) -> str:
        return "psutil.virtual_memory.used"

    def read(self) -> float:
        mem = psutil.virtual_memory()
        return (mem.total - mem.available) / _MB


class RamAvailableSource(MetricSource):

    @property
    def name(self) -> str:
        return "psutil.virtual_memory.available"

    def read(self) -> float:
        return psutil.virtual_memory().available / _MB
