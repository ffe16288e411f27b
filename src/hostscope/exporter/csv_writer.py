"""Buffered CSV exporter – interval-driven, header-once, flush on shutdown.

Samples are kept in memory and written to two append-only tables (system
and process) every ``flush_interval_seconds``.  Each table has its own
buffer and its own last-flush marker.  :meth:`BufferedWriter.flush_all`
writes whatever is left exactly once, so a row that reached a buffer is
never lost on shutdown, only delayed by up to one flush interval.
"""

from __future__ import annotations

import csv
import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable

from ..collector.models import (
    GPU_COLUMN_PREFIX,
    PROCESS_COLUMNS,
    SYSTEM_COLUMNS,
    ProcessSample,
    SystemSample,
)
from .base import BaseExporter

logger = logging.getLogger(__name__)


def _read_header(path: Path) -> list[str] | None:
    """Return the header of an existing non-empty table, else None."""
    if not path.exists() or path.stat().st_size == 0:
        return None
    with open(path, newline="", encoding="utf-8") as fh:
        return next(csv.reader(fh), None)


class _Table:
    """One append-only CSV file and the column set already on disk."""

    def __init__(self, path: Path, base_columns: tuple[str, ...], dynamic_prefix: str | None = None) -> None:
        self.path = path
        self._base_columns = list(base_columns)
        self._dynamic_prefix = dynamic_prefix
        self._columns: list[str] | None = None

    def _new_columns(self, rows: list[dict[str, str]], known: list[str]) -> list[str]:
        seen = set(known)
        extra: list[str] = []
        for row in rows:
            for key in row:
                if key not in seen:
                    seen.add(key)
                    extra.append(key)
        return extra

    def write(self, rows: list[dict[str, str]]) -> None:
        if not rows:
            return
        if self._columns is None:
            self._columns = _read_header(self.path)

        if self._columns is None:
            extra = self._new_columns(rows, self._base_columns)
            columns = self._base_columns + sorted(extra)
            try:
                self._write_rows(rows, columns, header=True, mode="w")
            except Exception:
                # discard a partial first write so the retry starts with the header
                if self.path.is_file():
                    self.path.unlink()
                raise
            self._columns = columns
            return

        extra = self._new_columns(rows, self._columns)
        if extra:
            self._widen(extra)
        self._write_rows(rows, self._columns, header=False, mode="a")

    def _write_rows(self, rows: list[dict[str, str]], columns: list[str], *, header: bool, mode: str) -> None:
        with open(self.path, mode, newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=columns, restval="")
            if header:
                writer.writeheader()
            writer.writerows(rows)
            fh.flush()

    def _widen(self, extra: list[str]) -> None:
        """Rewrite the file once with additional (dynamic) columns."""
        assert self._columns is not None
        if self._dynamic_prefix is not None:
            unexpected = [c for c in extra if not c.startswith(self._dynamic_prefix)]
            if unexpected:
                raise ValueError(f"unexpected columns for {self.path.name}: {unexpected}")
        columns = self._columns + sorted(extra)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(self.path, newline="", encoding="utf-8") as src, \
                open(tmp_path, "w", newline="", encoding="utf-8") as dst:
            writer = csv.DictWriter(dst, fieldnames=columns, restval="")
            writer.writeheader()
            writer.writerows(csv.DictReader(src))
        os.replace(tmp_path, self.path)
        logger.info("Widened %s with columns %s", self.path.name, ", ".join(sorted(extra)))
        self._columns = columns


class BufferedWriter(BaseExporter):
    """Accumulates samples and persists them on a fixed flush interval.

    All buffer access goes through one lock so an append can never land in
    a batch that is being written and then cleared.
    """

    def __init__(
        self,
        system_path: str | Path,
        process_path: str | Path,
        flush_interval_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._system = _Table(Path(system_path), SYSTEM_COLUMNS, GPU_COLUMN_PREFIX)
        self._process = _Table(Path(process_path), PROCESS_COLUMNS)
        self._flush_interval = flush_interval_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._system_rows: list[dict[str, str]] = []
        self._process_rows: list[dict[str, str]] = []
        start = clock()
        self._last_system_flush = start
        self._last_process_flush = start
        self.rows_written = {"system": 0, "process": 0}
        logger.info("BufferedWriter initialized → %s, %s", self._system.path, self._process.path)

    @property
    def system_path(self) -> Path:
        return self._system.path

    @property
    def process_path(self) -> Path:
        return self._process.path

    @property
    def pending(self) -> tuple[int, int]:
        with self._lock:
            return len(self._system_rows), len(self._process_rows)

    def append_system(self, sample: SystemSample) -> None:
        row = sample.to_row()
        with self._lock:
            self._system_rows.append(row)

    def append_processes(self, samples: list[ProcessSample]) -> None:
        rows = [s.to_row() for s in samples]
        with self._lock:
            self._process_rows.extend(rows)

    def _flush_system(self, now: float) -> int:
        count = len(self._system_rows)
        if count:
            self._system.write(self._system_rows)
            self._system_rows = []
            self.rows_written["system"] += count
        self._last_system_flush = now
        return count

    def _flush_process(self, now: float) -> int:
        count = len(self._process_rows)
        if count:
            self._process.write(self._process_rows)
            self._process_rows = []
            self.rows_written["process"] += count
        self._last_process_flush = now
        return count

    def maybe_flush(self, now: float | None = None) -> int:
        """Flush each table whose interval has elapsed."""
        now = self._clock() if now is None else now
        written = 0
        with self._lock:
            if now - self._last_system_flush >= self._flush_interval:
                written += self._flush_system(now)
            if now - self._last_process_flush >= self._flush_interval:
                written += self._flush_process(now)
        if written:
            logger.debug("Flushed %d rows", written)
        return written

    def flush_all(self) -> int:
        """Write everything still buffered in both tables.

        Each table is attempted even if the other fails.  A failed write
        leaves that table's rows buffered and the first error is re-raised
        once both have been tried, so a retry never duplicates rows that
        already reached disk.
        """
        now = self._clock()
        written = 0
        error: Exception | None = None
        with self._lock:
            for table, flush in (("system", self._flush_system), ("process", self._flush_process)):
                try:
                    written += flush(now)
                except Exception as exc:
                    logger.error("Flushing the %s table failed: %s", table, exc)
                    if error is None:
                        error = exc
        if written:
            logger.info("Flushed %d remaining rows", written)
        if error is not None:
            raise error
        return written
