"""GPU engine utilisation and per-process GPU memory sources.

Windows publishes one ``GPU Engine`` counter instance per (process,
adapter, engine) triple, named like::

    pid_1234_luid_0x00000000_0x0000D1C3_phys_0_eng_0_engtype_3D

Utilisation is grouped by adapter identity and engine type and summed over
processes and engine indices, which yields one column per busy engine type
instead of one per process.
"""

from __future__ import annotations

import re
from collections import defaultdict

from .base import MetricSource, SourceError, parse_number
from .models import gpu_engine_column
from .shell import counter_instance, query_nvidia, read_counter

ENGINE_COUNTER = r"\GPU Engine(*)\Utilization Percentage"
DEDICATED_COUNTER = r"\GPU Process Memory(*)\Dedicated Usage"
SHARED_COUNTER = r"\GPU Process Memory(*)\Shared Usage"

_ENGINE_RE = re.compile(r"(?:^|_)(?P<adapter>luid_0x[0-9a-fA-F]+_0x[0-9a-fA-F]+_phys_\d+).*?_engtype_(?P<engtype>.+)$")
_PID_RE = re.compile(r"^pid_(\d+)_")

_MB = 1024 * 1024


def parse_engine_instance(instance: str) -> tuple[str, str] | None:
    """Return ``(adapter, engine_type)`` for a GPU Engine instance name."""
    match = _ENGINE_RE.search(instance)
    if not match:
        return None
    return match.group("adapter"), match.group("engtype").strip() or "Unknown"


def group_engine_utilization(values: dict[str, str]) -> dict[str, float]:
    """Sum raw per-instance counter values by (adapter, engine type).

    Only strictly positive totals are kept so idle engines do not widen
    the row.
    """
    totals: dict[str, float] = defaultdict(float)
    for path, raw in values.items():
        parsed = parse_engine_instance(counter_instance(path))
        number = parse_number(raw)
        if parsed is None or number is None:
            continue
        adapter, engine_type = parsed
        totals[gpu_engine_column(engine_type, adapter)] += number
    return {column: round(total, 4) for column, total in totals.items() if total > 0}


def group_process_memory(values: dict[str, str]) -> dict[str, float]:
    """Sum per-adapter GPU memory counter values by PID, in MB."""
    totals: dict[str, float] = defaultdict(float)
    for path, raw in values.items():
        match = _PID_RE.match(counter_instance(path))
        number = parse_number(raw)
        if not match or number is None:
            continue
        totals[match.group(1)] += number / _MB
    return dict(totals)


class GpuEngineCounterSource(MetricSource):

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "typeperf.gpu_engine"

    def read(self) -> dict[str, float]:
        return group_engine_utilization(read_counter(ENGINE_COUNTER, self._timeout))


class NvidiaUtilizationSource(MetricSource):

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "nvidia-smi.utilization"

    def read(self) -> dict[str, float]:
        result: dict[str, float] = {}
        for row in query_nvidia("index,utilization.gpu", timeout=self._timeout):
            if len(row) < 2:
                raise SourceError(f"unexpected nvidia-smi row {row!r}")
            value = parse_number(row[1])
            if value is not None and value > 0:
                result[gpu_engine_column("GPU", f"nvidia{row[0]}")] = value
        return result


class GpuProcessMemoryCounterSource(MetricSource):
    """Per-PID dedicated or shared GPU memory (MB) from Windows counters."""

    def __init__(self, counter: str, timeout: float = 5.0) -> None:
        self._counter = counter
        self._timeout = timeout

    @property
    def name(self) -> str:
        return f"typeperf:{self._counter}"

    def read(self) -> dict[str, float]:
        return group_process_memory(read_counter(self._counter, self._timeout))


class NvidiaProcessMemorySource(MetricSource):
    """Per-PID GPU memory (MB) for compute and graphics apps on NVIDIA."""

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "nvidia-smi.compute_apps"

    def read(self) -> dict[str, float]:
        totals: dict[str, float] = defaultdict(float)
        for row in query_nvidia("pid,used_memory", query="--query-compute-apps", timeout=self._timeout):
            if len(row) < 2:
                continue
            used = parse_number(row[1])
            if used is not None:
                totals[row[0]] += used
        return dict(totals)
