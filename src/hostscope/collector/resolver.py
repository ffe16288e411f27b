"""Fallback-chain metric resolution.

Each logical metric owns an ordered list of :class:`MetricSource` objects.
Resolution walks the list and the first source that yields a valid value
wins.  Failures never propagate: a transient error degrades the metric to
"unavailable" for one tick, and a source that reports itself absent is
dropped for the rest of the run.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..config import CollectorConfig
from .base import (
    NOT_PRESENT,
    MetricSource,
    SourceNotPresent,
    parse_mapping,
    parse_number,
    parse_text,
)
from .cpu import CpuFrequencyRatioSource, CpuFrequencySource, CpuPercentSource
from .disk import DiskTransfersSource
from .gpu import (
    DEDICATED_COUNTER,
    SHARED_COUNTER,
    GpuEngineCounterSource,
    GpuProcessMemoryCounterSource,
    NvidiaProcessMemorySource,
    NvidiaUtilizationSource,
)
from .memory import RamAvailableSource, RamUsedSource
from .network import NetworkThroughputSource
from .power import (
    BatteryPercentSource,
    PlatformProfileSource,
    PowercfgSchemeSource,
    PowerProfilesCtlSource,
    PowerStatusSource,
    SysfsBatteryCapacitySource,
    SysfsBrightnessSource,
    WmiBatteryCapacitySource,
    WmiBrightnessSource,
)
from .shell import CounterSource
from .thermal import (
    AcpiThermalZoneSource,
    NvidiaTemperatureSource,
    PsutilTemperatureSource,
    SysfsThermalZoneSource,
)

logger = logging.getLogger(__name__)

NUMERIC = "numeric"
TEXT = "text"
MAPPING = "mapping"

STATUS_OK = "ok"
STATUS_NOT_PRESENT = "not_present"
STATUS_UNAVAILABLE = "unavailable"

GPU_ENGINES = "gpu_engines"
GPU_DEDICATED_BY_PID = "gpu_dedicated_by_pid"
GPU_SHARED_BY_PID = "gpu_shared_by_pid"


@dataclass
class MetricChain:
    """Ordered acquisition strategies for one logical metric."""

    metric_id: str
    kind: str
    sources: list[MetricSource] = field(default_factory=list)


@dataclass
class Resolution:
    """Outcome of resolving one metric for one tick."""

    metric_id: str
    value: Any
    available: bool
    status: str
    source: str = ""


class MetricResolver:
    """Resolves metrics through their fallback chains.

    The "already warned" latch lives on the instance, so two resolvers (two
    collectors, or two tests) never silence each other.
    """

    def __init__(
        self,
        chains: Iterable[MetricChain],
        *,
        timeout: float = 2.0,
        max_workers: int = 8,
    ) -> None:
        self._chains = {chain.metric_id: chain for chain in chains}
        self._active = {mid: list(chain.sources) for mid, chain in self._chains.items()}
        self._warned: dict[str, bool] = {}
        self._pending: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None

    @property
    def metric_ids(self) -> list[str]:
        return list(self._chains)

    def warned(self, metric_id: str) -> bool:
        return self._warned.get(metric_id, False)

    def _note_failure(self, metric_id: str, detail: str) -> None:
        with self._lock:
            first = not self._warned.get(metric_id, False)
            self._warned[metric_id] = True
        if first:
            logger.warning("Metric %s unavailable: %s (further failures logged at debug level)", metric_id, detail)
        else:
            logger.debug("Metric %s unavailable: %s", metric_id, detail)

    def _drop_source(self, metric_id: str, source: MetricSource, exc: Exception) -> None:
        with self._lock:
            active = self._active[metric_id]
            if source in active:
                active.remove(source)
                logger.info("Source %s not present for %s: %s", source.name, metric_id, exc)

    @staticmethod
    def _validate(kind: str, raw: Any) -> Any:
        if kind == NUMERIC:
            return parse_number(raw)
        if kind == TEXT:
            return parse_text(raw)
        if kind == MAPPING:
            return parse_mapping(raw)
        raise ValueError(f"unknown metric kind {kind!r}")

    def resolve(self, metric_id: str) -> Resolution:
        """Try each remaining source for *metric_id* in priority order."""
        chain = self._chains[metric_id]
        with self._lock:
            sources = list(self._active[metric_id])
        if not sources:
            return Resolution(metric_id, NOT_PRESENT, False, STATUS_NOT_PRESENT)

        failure = ""
        for source in sources:
            try:
                raw = source.read()
            except SourceNotPresent as exc:
                self._drop_source(metric_id, source, exc)
                continue
            except Exception as exc:  # noqa: BLE001 - any provider error is a transient miss
                failure = f"{source.name}: {exc}"
                continue
            if raw is None:
                # source has no reading yet (e.g. first sample of a rate)
                continue
            value = self._validate(chain.kind, raw)
            if value is None:
                failure = f"{source.name} returned malformed value {raw!r}"
                continue
            return Resolution(metric_id, value, True, STATUS_OK, source.name)

        with self._lock:
            exhausted = not self._active[metric_id]
        if exhausted:
            return Resolution(metric_id, NOT_PRESENT, False, STATUS_NOT_PRESENT)
        if failure:
            self._note_failure(metric_id, failure)
        return Resolution(metric_id, None, False, STATUS_UNAVAILABLE)

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix="hostscope-source",
            )
        return self._executor

    def resolve_many(
        self,
        metric_ids: Iterable[str] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Resolution]:
        """Resolve several metrics concurrently and join within *timeout*.

        A metric still running when the deadline passes is unavailable for
        this tick; it is not resubmitted until its previous call returns.
        """
        ids = list(self._chains if metric_ids is None else metric_ids)
        timeout = self._timeout if timeout is None else timeout
        executor = self._ensure_executor()

        futures: dict[str, Future] = {}
        results: dict[str, Resolution] = {}
        for mid in ids:
            previous = self._pending.get(mid)
            if previous is not None and not previous.done():
                self._note_failure(mid, "previous query still running")
                results[mid] = Resolution(mid, None, False, STATUS_UNAVAILABLE)
                continue
            futures[mid] = self._pending[mid] = executor.submit(self.resolve, mid)

        deadline = time.monotonic() + timeout
        for mid, future in futures.items():
            try:
                results[mid] = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FutureTimeout:
                self._note_failure(mid, f"timed out after {timeout:.1f}s")
                results[mid] = Resolution(mid, None, False, STATUS_UNAVAILABLE)
            except Exception as exc:  # noqa: BLE001
                self._note_failure(mid, f"resolver error: {exc}")
                results[mid] = Resolution(mid, None, False, STATUS_UNAVAILABLE)
            else:
                self._pending.pop(mid, None)
        return {mid: results[mid] for mid in ids}

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None


def default_chains(config: CollectorConfig) -> list[MetricChain]:
    """The standard fallback chains, most direct source first."""
    t = config.source_timeout_seconds
    chains = [
        MetricChain("cpu_util_pct", NUMERIC, [
            CpuPercentSource(),
            CounterSource(r"\Processor(_Total)\% Processor Time", t),
        ]),
        MetricChain("cpu_freq_mhz", NUMERIC, [
            CpuFrequencySource(),
            CounterSource(r"\Processor Information(_Total)\Processor Frequency", t),
        ]),
        MetricChain("cpu_perf_pct", NUMERIC, [
            CounterSource(r"\Processor Information(_Total)\% Processor Performance", t),
            CpuFrequencyRatioSource(),
        ]),
        MetricChain("ram_used_mb", NUMERIC, [RamUsedSource()]),
        MetricChain("ram_avail_mb", NUMERIC, [
            RamAvailableSource(),
            CounterSource(r"\Memory\Available MBytes", t),
        ]),
        MetricChain("disk_transfers_per_sec", NUMERIC, [
            DiskTransfersSource(),
            CounterSource(r"\PhysicalDisk(_Total)\Disk Transfers/sec", t),
        ]),
        MetricChain("net_bytes_per_sec", NUMERIC, [
            NetworkThroughputSource(),
            CounterSource(r"\Network Interface(*)\Bytes Total/sec", t),
        ]),
        MetricChain("battery_pct", NUMERIC, [
            BatteryPercentSource(),
            SysfsBatteryCapacitySource(),
            WmiBatteryCapacitySource(t),
        ]),
        MetricChain("screen_brightness", NUMERIC, [
            SysfsBrightnessSource(),
            WmiBrightnessSource(t),
        ]),
        MetricChain("cpu_temp_raw", NUMERIC, [
            AcpiThermalZoneSource(t),
            SysfsThermalZoneSource(),
            PsutilTemperatureSource(),
        ]),
        MetricChain("power_scheme", TEXT, [
            PowercfgSchemeSource(t),
            PlatformProfileSource(),
            PowerProfilesCtlSource(t),
        ]),
        MetricChain("power_status", TEXT, [PowerStatusSource()]),
    ]
    if config.gpu:
        chains += [
            MetricChain("gpu_temp_c", NUMERIC, [NvidiaTemperatureSource(t)]),
            MetricChain(GPU_ENGINES, MAPPING, [
                GpuEngineCounterSource(t),
                NvidiaUtilizationSource(t),
            ]),
        ]
        if config.processes:
            chains += [
                MetricChain(GPU_DEDICATED_BY_PID, MAPPING, [
                    GpuProcessMemoryCounterSource(DEDICATED_COUNTER, t),
                    NvidiaProcessMemorySource(t),
                ]),
                MetricChain(GPU_SHARED_BY_PID, MAPPING, [
                    GpuProcessMemoryCounterSource(SHARED_COUNTER, t),
                ]),
            ]
    return chains
