"""Disk activity sources."""

from __future__ import annotations

import abc
import time
from typing import Callable

import psutil

from .base import MetricSource, SourceNotPresent


class RateSource(MetricSource):
    """Turns a monotonically increasing counter into a per-second rate.

    The first read only records the baseline and returns None, which the
    resolver treats as "no value yet" without logging a failure.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._prev_value: float | None = None
        self._prev_time: float | None = None

    @abc.abstractmethod
    def counter(self) -> float:
        """Current value of the underlying cumulative counter."""

    def read(self) -> float | None:
        value = self.counter()
        now = self._clock()
        prev_value, prev_time = self._prev_value, self._prev_time
        self._prev_value, self._prev_time = value, now
        if prev_value is None or prev_time is None:
            return None
        dt = now - prev_time
        if dt <= 0 or value < prev_value:
            # counter wrapped or was reset; start over from this baseline
            return None
        return (value - prev_value) / dt


class DiskTransfersSource(RateSource):
    """Read plus write operations per second across all physical disks."""

    @property
    def name(self) -> str:
        return "psutil.disk_io_counters"

    def counter(self) -> float:
        io = psutil.disk_io_counters(perdisk=False)
        if io is None:
            raise SourceNotPresent("no disk counters")
        return float(io.read_count + io.write_count)
