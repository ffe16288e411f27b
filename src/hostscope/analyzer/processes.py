"""Per-process indexing and cross-instance aggregation."""

from __future__ import annotations

import re
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

from ..collector.base import parse_number
from .loader import PROCESS_METRIC_COLUMNS, Table, parse_timestamp

_INSTANCE_RE = re.compile(r"^(?P<base>.+?)#\d+$")


def _time_key(stamp: str) -> tuple[datetime, str]:
    return parse_timestamp(stamp) or datetime.min, stamp


def base_name(process_name: str) -> str:
    """Strip an instance suffix: ``chrome#3`` -> ``chrome``."""
    match = _INSTANCE_RE.match(process_name)
    return match.group("base") if match else process_name


@dataclass
class ProcessPoint:
    """One process (or aggregate) at one timestamp."""

    timestamp: str
    values: dict[str, float | None] = field(default_factory=dict)


class ProcessAggregator:
    """Indexes process rows and builds aggregated series per base name."""

    def __init__(self, table: Table, metrics: tuple[str, ...] = PROCESS_METRIC_COLUMNS) -> None:
        self.metrics = tuple(m for m in metrics if table.has(m))
        self._by_key: dict[tuple[str, str], dict[str, str]] = {}
        self._series: dict[str, list[ProcessPoint]] = defaultdict(list)
        timestamps: set[str] = set()

        for row in table.rows:
            name = row.get("processName") or ""
            stamp = row.get("timestamp") or ""
            if not name or not stamp:
                continue
            self._by_key[(name, stamp)] = row
            self._series[name].append(ProcessPoint(
                timestamp=stamp,
                values={m: parse_number(row.get(m)) for m in self.metrics},
            ))
            timestamps.add(stamp)

        for points in self._series.values():
            points.sort(key=lambda p: _time_key(p.timestamp))
        self.timestamps = sorted(timestamps, key=_time_key)

        groups: dict[str, list[str]] = defaultdict(list)
        for name in self._series:
            groups[base_name(name)].append(name)
        self.base_groups = {base: sorted(names) for base, names in groups.items()}

    def lookup(self, process_name: str, timestamp: str) -> dict[str, str] | None:
        return self._by_key.get((process_name, timestamp))

    def series(self, process_name: str) -> list[ProcessPoint]:
        return list(self._series.get(process_name, []))

    def aggregated_series(self, base: str) -> list[ProcessPoint]:
        """Sum all instances of *base* at each timestamp where any is present.

        An instance missing at a timestamp (or with a blank cell) adds zero.
        """
        instances = self.base_groups.get(base, [])
        points: list[ProcessPoint] = []
        for stamp in self.timestamps:
            rows = [r for r in (self._by_key.get((name, stamp)) for name in instances) if r is not None]
            if not rows:
                continue
            totals = {
                metric: sum(parse_number(r.get(metric)) or 0.0 for r in rows)
                for metric in self.metrics
            }
            points.append(ProcessPoint(timestamp=stamp, values=totals))
        return points

    def aggregated(self) -> dict[str, list[ProcessPoint]]:
        """Aggregated series for every base name with several instances."""
        return {
            base: self.aggregated_series(base)
            for base, names in sorted(self.base_groups.items())
            if len(names) > 1
        }

    def averages(self, metric: str = "cpuPctRaw") -> dict[str, float]:
        """Mean of *metric* per (non-aggregated) process name."""
        result: dict[str, float] = {}
        for name, points in self._series.items():
            values = [p.values.get(metric) for p in points]
            values = [v for v in values if v is not None]
            if values:
                result[name] = statistics.fmean(values)
        return result

    def top_n(self, n: int = 5, metric: str = "cpuPctRaw") -> list[tuple[str, float]]:
        ranked = sorted(self.averages(metric).items(), key=lambda item: (-item[1], item[0]))
        return ranked[:n]


def normalized_cpu(cpu_pct_raw: float | None, logical_cores: int) -> float | None:
    """Per-process CPU as a share of the whole machine."""
    if cpu_pct_raw is None or logical_cores <= 0:
        return None
    return round(cpu_pct_raw / logical_cores, 2)
