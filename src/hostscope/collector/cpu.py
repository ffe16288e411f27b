"""CPU metric sources."""

from __future__ import annotations

import psutil

from .base import MetricSource, SourceError, SourceNotPresent


class CpuPercentSource(MetricSource):
    """System-wide CPU utilisation since the previous call."""

    def __init__(self) -> None:
        # prime so the first real read covers one sample interval
        psutil.cpu_percent(interval=None)

    @property
    def name(self) -> str:
        return "psutil.cpu_percent"

    def read(self) -> float:
        return psutil.cpu_percent(interval=None)


class CpuFrequencySource(MetricSource):
    """Current CPU clock in MHz as reported by the OS."""

    @property
    def name(self) -> str:
        return "psutil.cpu_freq"

    def read(self) -> float:
        try:
            freq = psutil.cpu_freq()
        except (NotImplementedError, FileNotFoundError) as exc:
            raise SourceNotPresent("cpu frequency not exposed") from exc
        if freq is None:
            raise SourceNotPresent("cpu frequency not exposed")
        if not freq.current:
            raise SourceError("cpu frequency reported as zero")
        return freq.current


class CpuFrequencyRatioSource(MetricSource):
    """Current clock as a percentage of the rated maximum.

    Stands in for the processor-performance counter on platforms that do
    not publish one.
    """

    @property
    def name(self) -> str:
        return "psutil.cpu_freq.ratio"

    def read(self) -> float | None:
        try:
            freq = psutil.cpu_freq()
        except (NotImplementedError, FileNotFoundError) as exc:
            raise SourceNotPresent("cpu frequency not exposed") from exc
        if freq is None or not freq.max:
            raise SourceNotPresent("rated cpu frequency unknown")
        return freq.current / freq.max * 100.0
