"""Load persisted system/process tables for reporting.

Tables are read schema-on-read: known legacy headers are mapped onto the
canonical column names, unknown columns are kept untouched, and only the
columns a report cannot do without are required.
"""

from __future__ import annotations

import csv
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from ..collector.base import parse_number
from ..collector.models import (
    GPU_COLUMN_PREFIX,
    PROCESS_COLUMNS,
    SYSTEM_COLUMNS,
    TIMESTAMP_FORMAT,
)

logger = logging.getLogger(__name__)

SYSTEM = "system"
PROCESS = "process"

_TIMESTAMP_FORMATS = (TIMESTAMP_FORMAT, "%d/%m/%Y %H:%M:%S", "%m/%d/%Y %H:%M:%S", "%Y-%m-%dT%H:%M:%S")

# Headers written by earlier collector versions.
LEGACY_SYSTEM_COLUMNS = {
    "Time": "timestamp",
    "CPU Usage (%)": "cpuUtilPct",
    "CPU Utilization": "cpuUtilPct",
    "CPU Frequency (MHz)": "cpuFreqMHz",
    "CPU Speed (MHz)": "cpuFreqMHz",
    "% Processor Performance": "cpuPerfPct",
    "CPU Performance (%)": "cpuPerfPct",
    "RAM Used (MB)": "ramUsedMB",
    "Memory Used (MB)": "ramUsedMB",
    "RAM Available (MB)": "ramAvailMB",
    "Available MBytes": "ramAvailMB",
    "Disk Transfers/sec": "diskTransfersPerSec",
    "Disk IO": "diskTransfersPerSec",
    "Network Bytes/sec": "netBytesPerSec",
    "Network Bytes Total/sec": "netBytesPerSec",
    "Battery (%)": "batteryPct",
    "Battery Percentage": "batteryPct",
    "Brightness": "screenBrightness",
    "Screen Brightness (%)": "screenBrightness",
    "CPU Temperature": "cpuTempRaw",
    "Temperature": "cpuTempRaw",
    "GPU Temperature": "gpuTempC",
    "Power Scheme": "powerScheme",
    "Power Plan": "powerScheme",
    "Power Status": "powerStatus",
    "Power Source": "powerStatus",
}

LEGACY_PROCESS_COLUMNS = {
    "Time": "timestamp",
    "Process": "processName",
    "Process Name": "processName",
    "Name": "processName",
    "PID": "processId",
    "ID Process": "processId",
    "CPU Usage (%)": "cpuPctRaw",
    "CPU (%)": "cpuPctRaw",
    "% Processor Time": "cpuPctRaw",
    "Memory (MB)": "ramMB",
    "RAM (MB)": "ramMB",
    "Working Set (MB)": "ramMB",
    "IO Read Bytes/sec": "ioReadBytesPerSec",
    "Disk Read (B/s)": "ioReadBytesPerSec",
    "IO Write Bytes/sec": "ioWriteBytesPerSec",
    "Disk Write (B/s)": "ioWriteBytesPerSec",
    "GPU Dedicated (MB)": "gpuDedicatedMB",
    "GPU Shared (MB)": "gpuSharedMB",
}

SYSTEM_METRIC_COLUMNS = tuple(c for c in SYSTEM_COLUMNS if c not in ("timestamp", "powerScheme", "powerStatus"))
PROCESS_METRIC_COLUMNS = tuple(c for c in PROCESS_COLUMNS if c not in ("timestamp", "processName", "processId"))

_KEY_RE = re.compile(r"[^a-z0-9]")


class SchemaError(ValueError):
    """A table lacks the columns a report needs."""


def _key(name: str) -> str:
    return _KEY_RE.sub("", name.lower())


def _build_lookup(canonical: tuple[str, ...], legacy: dict[str, str]) -> dict[str, str]:
    lookup = {_key(name): name for name in canonical}
    for old, new in legacy.items():
        lookup.setdefault(_key(old), new)
    return lookup


_LOOKUPS = {
    SYSTEM: _build_lookup(SYSTEM_COLUMNS, LEGACY_SYSTEM_COLUMNS),
    PROCESS: _build_lookup(PROCESS_COLUMNS, LEGACY_PROCESS_COLUMNS),
}


def normalize_columns(header: list[str], kind: str) -> list[str]:
    """Map *header* onto canonical names; unknown names pass through.

    If two headers map to the same canonical name the first wins and the
    second keeps its original spelling.
    """
    lookup = _LOOKUPS[kind]
    result: list[str] = []
    taken: set[str] = set()
    for name in header:
        stripped = name.strip()
        if stripped.startswith(GPU_COLUMN_PREFIX):
            canonical = stripped
        else:
            canonical = lookup.get(_key(stripped), stripped)
        if canonical in taken:
            canonical = stripped
        taken.add(canonical)
        result.append(canonical)
    return result


def parse_timestamp(text: str | None) -> datetime | None:
    if not text:
        return None
    text = text.strip()
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


@dataclass
class Table:
    """An in-memory copy of one persisted table."""

    path: Path
    kind: str
    columns: list[str]
    rows: list[dict[str, str]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def has(self, column: str) -> bool:
        return column in self.columns

    def numbers(self, column: str) -> list[float | None]:
        """Numeric view of *column*; placeholders and blanks become None."""
        if column not in self.columns:
            raise KeyError(column)
        return [parse_number(row.get(column)) for row in self.rows]

    def texts(self, column: str) -> list[str]:
        if column not in self.columns:
            raise KeyError(column)
        return [row.get(column) or "" for row in self.rows]

    def timestamps(self) -> list[datetime | None]:
        return [parse_timestamp(row.get("timestamp")) for row in self.rows]

    @property
    def gpu_columns(self) -> list[str]:
        return [c for c in self.columns if c.startswith(GPU_COLUMN_PREFIX)]


def _require(columns: list[str], path: Path, required: tuple[str, ...], metrics: tuple[str, ...]) -> None:
    missing = [c for c in required if c not in columns]
    if missing:
        raise SchemaError(f"{path.name}: missing required column(s) {', '.join(missing)}")
    present = [c for c in columns if c in metrics or c.startswith(GPU_COLUMN_PREFIX)]
    if not present:
        raise SchemaError(
            f"{path.name}: no metric columns found (expected at least one of {', '.join(metrics)})"
        )


def load_table(path: str | Path, kind: str = SYSTEM) -> Table:
    """Read a persisted table and validate its minimum schema."""
    path = Path(path)
    with open(path, newline="", encoding="utf-8-sig") as fh:
        reader = csv.reader(fh)
        header = next(reader, None)
        if not header:
            raise SchemaError(f"{path.name}: file is empty")
        columns = normalize_columns(header, kind)
        if kind == SYSTEM:
            _require(columns, path, ("timestamp",), SYSTEM_METRIC_COLUMNS)
        else:
            _require(columns, path, ("timestamp", "processName"), PROCESS_METRIC_COLUMNS)

        rows: list[dict[str, str]] = []
        skipped = 0
        for record in reader:
            if not record or not any(cell.strip() for cell in record):
                continue
            if len(record) > len(columns):
                skipped += 1
                continue
            rows.append(dict(zip(columns, record)))
    if skipped:
        logger.warning("%s: skipped %d malformed rows", path.name, skipped)
    renamed = [f"{old}->{new}" for old, new in zip(header, columns) if old != new]
    if renamed:
        logger.info("%s: mapped legacy columns %s", path.name, ", ".join(renamed))
    logger.info("Loaded %d %s rows from %s", len(rows), kind, path)
    return Table(path=path, kind=kind, columns=columns, rows=rows)


def load_system_table(path: str | Path) -> Table:
    return load_table(path, SYSTEM)


def load_process_table(path: str | Path) -> Table:
    return load_table(path, PROCESS)
