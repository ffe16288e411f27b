"""Temperature sources.

CPU temperature is reported in tenths of a kelvin, the unit ACPI thermal
zones use natively.  Sources with a different native unit convert exactly
and never round; Celsius conversion happens only at report time.
"""

from __future__ import annotations

from pathlib import Path

import psutil

from .base import MetricSource, SourceError, SourceNotPresent, parse_number
from .shell import query_nvidia, run_wmi

THERMAL_DIR = Path("/sys/class/thermal")

KELVIN_OFFSET_DECI = 2731.5

# zone types that track the CPU package, most specific first
_CPU_ZONE_TYPES = ("x86_pkg_temp", "cpu-thermal", "cpu_thermal", "soc_thermal", "acpitz")
_CPU_SENSOR_NAMES = ("coretemp", "k10temp", "zenpower", "cpu_thermal", "cpu-thermal", "acpitz")


def celsius_to_decikelvin(celsius: float) -> float:
    return celsius * 10.0 + KELVIN_OFFSET_DECI


class AcpiThermalZoneSource(MetricSource):
    """``MSAcpi_ThermalZoneTemperature`` via WMI, hottest zone."""

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "wmi.MSAcpi_ThermalZoneTemperature"

    def read(self) -> float:
        output = run_wmi(
            "(Get-CimInstance -Namespace root/WMI -ClassName MSAcpi_ThermalZoneTemperature "
            "-ErrorAction Stop).CurrentTemperature",
            self._timeout,
        )
        values = [parse_number(line) for line in output.split()]
        values = [v for v in values if v is not None]
        if not values:
            raise SourceError(f"no thermal zone reading in {output.strip()!r}")
        return max(values)


class SysfsThermalZoneSource(MetricSource):
    """Linux thermal zones (millidegrees Celsius)."""

    def __init__(self, root: Path = THERMAL_DIR) -> None:
        self._root = root

    @property
    def name(self) -> str:
        return "sysfs.thermal_zone"

    def _pick_zone(self) -> Path:
        zones = sorted(self._root.glob("thermal_zone*")) if self._root.is_dir() else []
        if not zones:
            raise SourceNotPresent("no thermal zones")
        by_type: dict[str, Path] = {}
        for zone in zones:
            try:
                by_type.setdefault((zone / "type").read_text(encoding="utf-8").strip(), zone)
            except OSError:
                continue
        for zone_type in _CPU_ZONE_TYPES:
            if zone_type in by_type:
                return by_type[zone_type]
        return zones[0]

    def read(self) -> float:
        zone = self._pick_zone()
        try:
            text = (zone / "temp").read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise SourceError(f"cannot read {zone}/temp: {exc}") from exc
        millidegrees = parse_number(text)
        if millidegrees is None:
            raise SourceError(f"non-numeric zone temperature {text!r}")
        return millidegrees / 100.0 + KELVIN_OFFSET_DECI


class PsutilTemperatureSource(MetricSource):

    @property
    def name(self) -> str:
        return "psutil.sensors_temperatures"

    def read(self) -> float:
        try:
            sensors = psutil.sensors_temperatures()
        except (AttributeError, NotImplementedError) as exc:
            raise SourceNotPresent("temperature sensors not supported") from exc
        if not sensors:
            raise SourceNotPresent("no temperature sensors")
        for chip in _CPU_SENSOR_NAMES:
            entries = sensors.get(chip)
            if not entries:
                continue
            package = [e for e in entries if e.label.lower().startswith(("package", "tctl", "tdie"))]
            return celsius_to_decikelvin((package or entries)[0].current)
        first = next(iter(sensors.values()))
        if not first:
            raise SourceError("empty sensor list")
        return celsius_to_decikelvin(first[0].current)


class NvidiaTemperatureSource(MetricSource):
    """Hottest NVIDIA GPU core temperature in Celsius."""

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "nvidia-smi.temperature"

    def read(self) -> float:
        rows = query_nvidia("temperature.gpu", timeout=self._timeout)
        values = [parse_number(row[0]) for row in rows if row]
        values = [v for v in values if v is not None]
        if not values:
            raise SourceError("nvidia-smi reported no temperature")
        return max(values)
