"""Per-process enumeration – one ProcessSample per running process per tick."""

from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import datetime
from typing import Callable

import psutil

from .models import ProcessSample

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


def assign_instance_names(entries: list[tuple[int, str]]) -> dict[int, str]:
    """Give concurrent instances of one image distinct names.

    The lowest PID keeps the bare name; the others become ``name#1``,
    ``name#2`` … in PID order, matching how per-instance performance
    counters are named.
    """
    seen: Counter[str] = Counter()
    names: dict[int, str] = {}
    for pid, name in sorted(entries):
        index = seen[name]
        names[pid] = name if index == 0 else f"{name}#{index}"
        seen[name] += 1
    return names


class ProcessCollector:
    """Collects CPU, memory, I/O and GPU memory for every process.

    ``psutil.Process`` objects are cached by PID so ``cpu_percent`` measures
    the interval since the previous tick; I/O counters are differenced the
    same way to give bytes per second.  A process seen for the first time
    has no interval yet, so its CPU and I/O cells stay empty.  CPU is left
    raw (100% per logical core) and normalised only at report time.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._proc_cache: dict[int, psutil.Process] = {}
        self._prev_io: dict[int, tuple[float, int, int]] = {}

    def _get_proc(self, pid: int) -> psutil.Process | None:
        """Return a cached Process object, creating one if necessary."""
        proc = self._proc_cache.get(pid)
        if proc is None:
            try:
                proc = psutil.Process(pid)
                # prime cpu_percent so the next call returns non-zero
                proc.cpu_percent(interval=None)
                self._proc_cache[pid] = proc
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                return None
        return proc

    def _io_rates(self, pid: int, proc: psutil.Process) -> tuple[float | None, float | None]:
        try:
            io = proc.io_counters()
        except (psutil.AccessDenied, AttributeError, NotImplementedError):
            # io_counters() is missing on some platforms and for protected processes
            return None, None
        now = self._clock()
        previous = self._prev_io.get(pid)
        self._prev_io[pid] = (now, io.read_bytes, io.write_bytes)
        if previous is None:
            return None, None
        then, prev_read, prev_write = previous
        dt = now - then
        if dt <= 0:
            return None, None
        return (
            max(io.read_bytes - prev_read, 0) / dt,
            max(io.write_bytes - prev_write, 0) / dt,
        )

    def _sample(
        self,
        timestamp: datetime,
        pid: int,
        name: str,
        gpu_dedicated: dict[str, float] | None,
        gpu_shared: dict[str, float] | None,
    ) -> ProcessSample | None:
        first_seen = pid not in self._proc_cache
        proc = self._get_proc(pid)
        if proc is None:
            return None
        sample = ProcessSample(timestamp=timestamp, process_name=name, pid=pid)
        try:
            with proc.oneshot():
                # the priming call in _get_proc is the baseline; no interval yet
                if not first_seen:
                    try:
                        sample.cpu_pct_raw = proc.cpu_percent(interval=None)
                    except psutil.AccessDenied:
                        pass
                try:
                    sample.ram_mb = proc.memory_info().rss / _MB
                except psutil.AccessDenied:
                    pass
                sample.io_read_bps, sample.io_write_bps = self._io_rates(pid, proc)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            self._forget(pid)
            return None
        key = str(pid)
        if gpu_dedicated is not None:
            sample.gpu_dedicated_mb = gpu_dedicated.get(key, 0.0)
        if gpu_shared is not None:
            sample.gpu_shared_mb = gpu_shared.get(key, 0.0)
        return sample

    def _forget(self, pid: int) -> None:
        self._proc_cache.pop(pid, None)
        self._prev_io.pop(pid, None)

    def collect(
        self,
        timestamp: datetime,
        gpu_dedicated: dict[str, float] | None = None,
        gpu_shared: dict[str, float] | None = None,
    ) -> list[ProcessSample]:
        """Sample every visible process.

        *gpu_dedicated* / *gpu_shared* map PID strings to MB; None means the
        GPU memory metric itself was unavailable this tick.
        """
        entries: list[tuple[int, str]] = []
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                name = proc.info.get("name") or f"pid{proc.info['pid']}"
                entries.append((proc.info["pid"], name))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        # Evict stale entries from cache
        live = {pid for pid, _ in entries}
        for stale_pid in [pid for pid in self._proc_cache if pid not in live]:
            self._forget(stale_pid)

        samples: list[ProcessSample] = []
        for pid, name in assign_instance_names(entries).items():
            try:
                sample = self._sample(timestamp, pid, name, gpu_dedicated, gpu_shared)
            except Exception:  # noqa: BLE001 - one bad process must not cost the tick
                logger.debug("Sampling pid %s (%s) failed", pid, name, exc_info=True)
                sample = ProcessSample(timestamp=timestamp, process_name=name, pid=pid)
            if sample is not None:
                samples.append(sample)
        return samples
