"""Sampler that drives metric resolution on a fixed tick."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Protocol

from ..config import CollectorConfig
from ..exporter.base import BaseExporter
from .base import CollectorSetupError
from .models import ProcessSample, StaticContext, SystemSample
from .process import ProcessCollector
from .resolver import (
    GPU_DEDICATED_BY_PID,
    GPU_ENGINES,
    GPU_SHARED_BY_PID,
    MetricResolver,
    Resolution,
    default_chains,
)

logger = logging.getLogger(__name__)

_PROCESS_METRICS = (GPU_DEDICATED_BY_PID, GPU_SHARED_BY_PID)


class ProcessSource(Protocol):
    def collect(
        self,
        timestamp: datetime,
        gpu_dedicated: dict[str, float] | None = None,
        gpu_shared: dict[str, float] | None = None,
    ) -> list[ProcessSample]: ...


def prepare_output_dir(path: str | Path) -> Path:
    """Resolve and create the output directory, or fail before sampling."""
    try:
        directory = Path(path).expanduser().resolve()
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise CollectorSetupError(f"cannot use output directory {path!r}: {exc}") from exc
    if not directory.is_dir():
        raise CollectorSetupError(f"output path {directory} is not a directory")
    return directory


def _mapping_or_none(resolution: Resolution | None) -> dict[str, float] | None:
    if resolution is None or not resolution.available:
        return None
    return resolution.value


class Sampler:
    """Single-threaded sampling loop.

    Each tick resolves every tracked metric (fanned out with a per-tick
    timeout), enumerates processes, hands the rows to the writer and sleeps
    until the next tick boundary.  :meth:`stop` may be called from a signal
    handler or another thread; the loop then exits without touching any
    further provider and the writer flushes what it holds.
    """

    def __init__(
        self,
        config: CollectorConfig,
        writer: BaseExporter,
        *,
        resolver: MetricResolver | None = None,
        process_collector: ProcessSource | None = None,
        context: StaticContext | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._writer = writer
        self._resolver = resolver or MetricResolver(
            default_chains(config),
            timeout=config.source_timeout_seconds,
            max_workers=config.max_workers,
        )
        if process_collector is None and config.processes:
            process_collector = ProcessCollector(clock=clock)
        self._process_collector = process_collector
        self.context = context or StaticContext()
        self._clock = clock
        self._wall_clock = wall_clock
        self._stop_event = threading.Event()
        self.ticks = 0

    @property
    def resolver(self) -> MetricResolver:
        return self._resolver

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request the loop to end after the current tick."""
        self._stop_event.set()

    def sample_once(self) -> tuple[SystemSample, list[ProcessSample]]:
        """Take one system row and the process rows for the same instant."""
        timestamp = self._wall_clock().replace(microsecond=0)
        results = self._resolver.resolve_many()

        sample = SystemSample(timestamp=timestamp)
        for metric_id, resolution in results.items():
            if metric_id in _PROCESS_METRICS:
                continue
            if metric_id == GPU_ENGINES:
                sample.gpu_engines = resolution.value if resolution.available else {}
            elif hasattr(sample, metric_id):
                setattr(sample, metric_id, resolution.value)
            else:
                logger.debug("Resolved metric %s has no column", metric_id)

        processes: list[ProcessSample] = []
        if self._process_collector is not None:
            try:
                processes = self._process_collector.collect(
                    timestamp,
                    _mapping_or_none(results.get(GPU_DEDICATED_BY_PID)),
                    _mapping_or_none(results.get(GPU_SHARED_BY_PID)),
                )
            except Exception:  # noqa: BLE001 - process rows are lost for this tick only
                logger.exception("Process enumeration failed")
        return sample, processes

    def run(self, duration_minutes: float = 0.0) -> int:
        """Sample until *duration_minutes* elapse (0 = until stopped).

        Returns the number of ticks taken.  Buffered rows are flushed on
        every exit path, including exceptions.
        """
        interval = self._config.sample_interval_seconds
        start = self._clock()
        deadline = start + duration_minutes * 60 if duration_minutes > 0 else None
        next_tick = start
        logger.info(
            "Sampler started (interval=%.1fs, flush=%.1fs, duration=%s)",
            interval,
            self._config.flush_interval_seconds,
            f"{duration_minutes:g}min" if deadline else "until interrupted",
        )
        try:
            while not self._stop_event.is_set():
                if deadline is not None and self._clock() >= deadline:
                    break
                system, processes = self.sample_once()
                self._writer.append_system(system)
                self._writer.append_processes(processes)
                self.ticks += 1
                self._writer.maybe_flush()

                next_tick += interval
                delay = next_tick - self._clock()
                if delay < 0:
                    # overran one or more ticks; resume from now rather than bursting
                    next_tick = self._clock()
                    delay = 0.0
                self._stop_event.wait(delay)
        finally:
            self._resolver.shutdown()
            self._writer.flush_all()
            logger.info("Sampler stopped after %d ticks", self.ticks)
        return self.ticks
