"""Helpers for metric sources backed by external command-line tools.

Every call carries its own timeout so a hung provider only costs one
metric for one tick.  A missing executable is reported as
:class:`SourceNotPresent` so the resolver stops trying it for the run.
"""

from __future__ import annotations

import csv
import io
import shutil
import subprocess
import sys

from .base import MetricSource, SourceError, SourceNotPresent, parse_number

DEFAULT_TIMEOUT = 5.0


def require_platform(*prefixes: str) -> None:
    """Raise SourceNotPresent unless ``sys.platform`` starts with one of *prefixes*."""
    if not sys.platform.startswith(prefixes):
        raise SourceNotPresent(f"not available on {sys.platform}")


def run_command(args: list[str], timeout: float = DEFAULT_TIMEOUT) -> str:
    """Run *args* and return stdout text."""
    if shutil.which(args[0]) is None:
        raise SourceNotPresent(f"{args[0]} not found")
    try:
        proc = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise SourceError(f"{args[0]} timed out after {timeout:.1f}s") from exc
    except OSError as exc:
        raise SourceError(f"{args[0]} failed to start: {exc}") from exc
    if proc.returncode != 0:
        raise SourceError(f"{args[0]} exited with {proc.returncode}: {proc.stderr.strip()[:200]}")
    return proc.stdout


def run_powershell(command: str, timeout: float = DEFAULT_TIMEOUT) -> str:
    require_platform("win")
    return run_command(["powershell", "-NoProfile", "-NonInteractive", "-Command", command], timeout)


# CIM errors meaning the class or its provider does not exist on this machine
_WMI_MISSING_MARKERS = ("invalid class", "not supported", "0x80041010", "0x8004100c")


def wmi_class_missing(exc: SourceError) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _WMI_MISSING_MARKERS)


def run_wmi(command: str, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Run a CIM query through PowerShell.

    Only a missing class is reported as :class:`SourceNotPresent`; timeouts
    and other failures stay transient :class:`SourceError`s.
    """
    try:
        return run_powershell(command, timeout)
    except SourceNotPresent:
        raise
    except SourceError as exc:
        if wmi_class_missing(exc):
            raise SourceNotPresent(str(exc)) from exc
        raise


def parse_typeperf(output: str) -> dict[str, str]:
    """Parse one ``typeperf -sc 1`` CSV sample into ``{counter_path: raw_value}``.

    The first CSV line is the header (a PDH-CSV marker followed by counter
    paths) and the second holds the sample; anything else is status text.
    """
    lines = [line for line in output.splitlines() if line.startswith('"')]
    if len(lines) < 2:
        raise SourceError("typeperf produced no sample")
    rows = list(csv.reader(io.StringIO("\n".join(lines[:2]))))
    header, values = rows[0], rows[1]
    return {path: value for path, value in zip(header[1:], values[1:])}


def read_counter(path: str, timeout: float = DEFAULT_TIMEOUT) -> dict[str, str]:
    """Sample a Windows performance counter path (wildcards allowed)."""
    require_platform("win")
    return parse_typeperf(run_command(["typeperf", path, "-sc", "1"], timeout))


def counter_instance(path: str) -> str:
    """Extract the instance name from ``\\\\HOST\\Object(instance)\\Counter``."""
    start = path.find("(")
    end = path.rfind(")")
    if start == -1 or end <= start:
        return ""
    return path[start + 1:end]


def parse_nvidia_csv(output: str) -> list[list[str]]:
    """Parse ``nvidia-smi --format=csv,noheader,nounits`` output."""
    rows: list[list[str]] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        rows.append([cell.strip() for cell in line.split(",")])
    return rows


def query_nvidia(fields: str, query: str = "--query-gpu", timeout: float = DEFAULT_TIMEOUT) -> list[list[str]]:
    output = run_command(
        ["nvidia-smi", f"{query}={fields}", "--format=csv,noheader,nounits"],
        timeout,
    )
    return parse_nvidia_csv(output)


class CounterSource(MetricSource):
    """A Windows performance counter, summed over all matching instances."""

    def __init__(self, path: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._path = path
        self._timeout = timeout

    @property
    def name(self) -> str:
        return f"typeperf:{self._path}"

    def read(self) -> float:
        values = read_counter(self._path, self._timeout)
        numbers = [parse_number(v) for v in values.values()]
        numbers = [n for n in numbers if n is not None]
        if not numbers:
            raise SourceError(f"no numeric value for {self._path}")
        return sum(numbers)
