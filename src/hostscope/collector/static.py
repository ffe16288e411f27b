"""One-time discovery of machine facts used to label and interpret a run."""

from __future__ import annotations

import logging
import re
import socket
from pathlib import Path
from typing import Callable

import psutil

from .base import NOT_PRESENT, SourceError, parse_text
from .models import StaticContext
from .shell import query_nvidia, run_powershell

logger = logging.getLogger(__name__)

DMI_DIR = Path("/sys/class/dmi/id")

_FILENAME_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def _dmi(field: str) -> Callable[[], str]:
    def read() -> str:
        return (DMI_DIR / field).read_text(encoding="utf-8")
    return read


def _wmi(expression: str) -> Callable[[], str]:
    def read() -> str:
        return run_powershell(expression)
    return read


def _first_text(candidates: list[Callable[[], str]]) -> str | None:
    for candidate in candidates:
        try:
            text = parse_text(candidate())
        except (OSError, SourceError) as exc:
            logger.debug("static probe failed: %s", exc)
            continue
        if text and text.lower() not in ("to be filled by o.e.m.", "default string", "system serial number"):
            return text
    return None


def safe_filename_part(text: str) -> str:
    return _FILENAME_UNSAFE.sub("_", text).strip("_") or "unknown"


def discover_serial_number() -> str:
    serial = _first_text([
        _wmi("(Get-CimInstance Win32_BIOS).SerialNumber"),
        _dmi("product_serial"),
        _dmi("board_serial"),
    ])
    return safe_filename_part(serial or socket.gethostname())


def discover_system_model() -> str:
    return _first_text([
        _wmi("(Get-CimInstance Win32_ComputerSystem).Model"),
        _dmi("product_name"),
        _dmi("product_version"),
    ]) or NOT_PRESENT


def discover_gpus() -> tuple[str, ...]:
    try:
        return tuple(row[0] for row in query_nvidia("name") if row)
    except SourceError:
        pass
    try:
        output = run_powershell("(Get-CimInstance Win32_VideoController).Name")
    except SourceError:
        return ()
    return tuple(line.strip() for line in output.splitlines() if line.strip())


def discover_disks() -> tuple[str, ...]:
    disks: list[str] = []
    for part in psutil.disk_partitions(all=False):
        try:
            usage = psutil.disk_usage(part.mountpoint)
        except OSError:
            continue
        disks.append(f"{part.device} {part.fstype} {usage.total / 1024 ** 3:.0f}GB")
    return tuple(disks)


def discover_static_context() -> StaticContext:
    """Resolve machine facts once; failures here never abort the run."""
    freq = None
    try:
        freq = psutil.cpu_freq()
    except (NotImplementedError, FileNotFoundError):
        logger.debug("cpu_freq unavailable")
    context = StaticContext(
        serial_number=discover_serial_number(),
        system_model=discover_system_model(),
        total_ram_mb=psutil.virtual_memory().total / (1024 * 1024),
        max_clock_mhz=(freq.max or None) if freq is not None else None,
        logical_cores=psutil.cpu_count(logical=True) or 1,
        gpus=discover_gpus(),
        disks=discover_disks(),
    )
    logger.info(
        "Static context: serial=%s model=%s ram=%.0fMB max_clock=%s cores=%d gpus=%s",
        context.serial_number,
        context.system_model,
        context.total_ram_mb or 0,
        context.max_clock_mhz,
        context.logical_cores,
        ", ".join(context.gpus) or "-",
    )
    return context
