"""Row types produced by the sampler and their table layouts."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from .base import NOT_PRESENT

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

#: A numeric reading: a number, None (unavailable this tick) or NOT_PRESENT.
Reading = Union[float, None, str]

GPU_COLUMN_PREFIX = "gpu_"

# (column, attribute) in file order; dynamic GPU engine columns follow.
SYSTEM_FIELDS: tuple[tuple[str, str], ...] = (
    ("cpuUtilPct", "cpu_util_pct"),
    ("cpuFreqMHz", "cpu_freq_mhz"),
    ("cpuPerfPct", "cpu_perf_pct"),
    ("ramUsedMB", "ram_used_mb"),
    ("ramAvailMB", "ram_avail_mb"),
    ("diskTransfersPerSec", "disk_transfers_per_sec"),
    ("netBytesPerSec", "net_bytes_per_sec"),
    ("batteryPct", "battery_pct"),
    ("screenBrightness", "screen_brightness"),
    ("cpuTempRaw", "cpu_temp_raw"),
    ("gpuTempC", "gpu_temp_c"),
    ("powerScheme", "power_scheme"),
    ("powerStatus", "power_status"),
)
SYSTEM_COLUMNS: tuple[str, ...] = ("timestamp",) + tuple(c for c, _ in SYSTEM_FIELDS)

PROCESS_FIELDS: tuple[tuple[str, str], ...] = (
    ("processName", "process_name"),
    ("processId", "pid"),
    ("cpuPctRaw", "cpu_pct_raw"),
    ("ramMB", "ram_mb"),
    ("ioReadBytesPerSec", "io_read_bps"),
    ("ioWriteBytesPerSec", "io_write_bps"),
    ("gpuDedicatedMB", "gpu_dedicated_mb"),
    ("gpuSharedMB", "gpu_shared_mb"),
)
PROCESS_COLUMNS: tuple[str, ...] = ("timestamp",) + tuple(c for c, _ in PROCESS_FIELDS)

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9]+")


def gpu_engine_column(engine_type: str, adapter: str) -> str:
    """Column name for one (engine type, adapter) utilisation series."""
    engine = _UNSAFE_RE.sub("", engine_type) or "engine"
    adapter_id = _UNSAFE_RE.sub("_", adapter).strip("_") or "0"
    return f"{GPU_COLUMN_PREFIX}{engine}_{adapter_id}"


def format_cell(value: Any) -> str:
    """Serialise one cell; None becomes the empty 'unavailable' cell."""
    if value is None:
        return ""
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(round(value, 4))
    return str(value)


@dataclass
class SystemSample:
    """One system-wide row per sampling tick."""

    timestamp: datetime
    cpu_util_pct: Reading = None
    cpu_freq_mhz: Reading = None
    cpu_perf_pct: Reading = None
    ram_used_mb: Reading = None
    ram_avail_mb: Reading = None
    disk_transfers_per_sec: Reading = None
    net_bytes_per_sec: Reading = None
    battery_pct: Reading = None
    screen_brightness: Reading = None
    cpu_temp_raw: Reading = None
    gpu_temp_c: Reading = None
    power_scheme: str | None = None
    power_status: str | None = None
    gpu_engines: dict[str, float] = field(default_factory=dict)

    def to_row(self) -> dict[str, str]:
        row = {"timestamp": self.timestamp.strftime(TIMESTAMP_FORMAT)}
        for column, attr in SYSTEM_FIELDS:
            row[column] = format_cell(getattr(self, attr))
        for column, value in self.gpu_engines.items():
            row[column] = format_cell(value)
        return row


@dataclass
class ProcessSample:
    """One row per (process instance, tick)."""

    timestamp: datetime
    process_name: str
    pid: int
    cpu_pct_raw: float | None = None
    ram_mb: float | None = None
    io_read_bps: float | None = None
    io_write_bps: float | None = None
    gpu_dedicated_mb: float | None = None
    gpu_shared_mb: float | None = None

    def to_row(self) -> dict[str, str]:
        row = {"timestamp": self.timestamp.strftime(TIMESTAMP_FORMAT)}
        for column, attr in PROCESS_FIELDS:
            row[column] = format_cell(getattr(self, attr))
        return row


@dataclass(frozen=True)
class StaticContext:
    """Machine facts resolved once at start-up."""

    serial_number: str = "unknown"
    system_model: str = NOT_PRESENT
    total_ram_mb: float | None = None
    max_clock_mhz: float | None = None
    logical_cores: int = 1
    gpus: tuple[str, ...] = ()
    disks: tuple[str, ...] = ()
