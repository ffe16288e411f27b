"""Base interface for sample sinks."""

from __future__ import annotations

import abc
from datetime import datetime
from pathlib import Path

from ..collector.models import ProcessSample, SystemSample


class BaseExporter(abc.ABC):
    """Abstract base for sinks that receive samples from the sampler."""

    @abc.abstractmethod
    def append_system(self, sample: SystemSample) -> None:
        """Accept one system row."""

    @abc.abstractmethod
    def append_processes(self, samples: list[ProcessSample]) -> None:
        """Accept the process rows of one tick."""

    def maybe_flush(self, now: float | None = None) -> int:
        """Persist buffered rows if a flush is due; returns rows written."""
        return 0

    @abc.abstractmethod
    def flush_all(self) -> int:
        """Persist everything still buffered; returns rows written."""

    def shutdown(self) -> None:
        """Flush and release resources."""
        self.flush_all()


def table_paths(output_dir: Path, serial: str, started: datetime) -> tuple[Path, Path]:
    """``{serial}_{HHMMSS_ddmmyyyy}.csv`` and its ``_process`` sibling."""
    stem = f"{serial}_{started.strftime('%H%M%S_%d%m%Y')}"
    return output_dir / f"{stem}.csv", output_dir / f"{stem}_process.csv"
