"""Battery, display brightness and power plan sources."""

from __future__ import annotations

import re
from pathlib import Path

import psutil

from .base import MetricSource, SourceError, SourceNotPresent, parse_number
from .shell import require_platform, run_command, run_wmi

POWER_SUPPLY_DIR = Path("/sys/class/power_supply")
BACKLIGHT_DIR = Path("/sys/class/backlight")
PLATFORM_PROFILE = Path("/sys/firmware/acpi/platform_profile")


def _read_sysfs_number(path: Path) -> float:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError as exc:
        raise SourceNotPresent(f"{path} missing") from exc
    except OSError as exc:
        raise SourceError(f"cannot read {path}: {exc}") from exc
    number = parse_number(text)
    if number is None:
        raise SourceError(f"{path} holds non-numeric {text!r}")
    return number


def _battery_dirs(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    return sorted(p for p in root.iterdir() if p.name.upper().startswith("BAT"))


def _sensors_battery():
    try:
        return psutil.sensors_battery()
    except (AttributeError, NotImplementedError, FileNotFoundError):
        return None


class BatteryPercentSource(MetricSource):
    """Direct charge percentage from the OS battery API."""

    @property
    def name(self) -> str:
        return "psutil.sensors_battery"

    def read(self) -> float:
        battery = _sensors_battery()
        if battery is None:
            raise SourceNotPresent("no battery reported")
        return battery.percent


class SysfsBatteryCapacitySource(MetricSource):
    """Charge derived from the remaining/full capacity ratio in sysfs."""

    def __init__(self, root: Path = POWER_SUPPLY_DIR) -> None:
        self._root = root

    @property
    def name(self) -> str:
        return "sysfs.power_supply"

    def read(self) -> float:
        batteries = _battery_dirs(self._root)
        if not batteries:
            raise SourceNotPresent("no battery in sysfs")
        remaining = full = 0.0
        for bat in batteries:
            for now_name, full_name in (("energy_now", "energy_full"), ("charge_now", "charge_full")):
                if (bat / now_name).exists():
                    remaining += _read_sysfs_number(bat / now_name)
                    full += _read_sysfs_number(bat / full_name)
                    break
        if full <= 0:
            raise SourceError("battery full-charge capacity unknown")
        return remaining / full * 100.0


class WmiBatteryCapacitySource(MetricSource):
    """Charge derived from WMI remaining/full-charge capacity on Windows."""

    _SCRIPT = (
        "$r=(Get-CimInstance -Namespace root/WMI -ClassName BatteryStatus -ErrorAction Stop).RemainingCapacity;"
        "$f=(Get-CimInstance -Namespace root/WMI -ClassName BatteryFullChargedCapacity -ErrorAction Stop).FullChargedCapacity;"
        "Write-Output \"$r,$f\""
    )

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "wmi.BatteryStatus"

    def read(self) -> float:
        output = run_wmi(self._SCRIPT, self._timeout).strip()
        remaining_text, _, full_text = output.partition(",")
        remaining = parse_number(remaining_text)
        full = parse_number(full_text)
        if remaining is None or not full:
            raise SourceError(f"unexpected battery capacity output {output!r}")
        return remaining / full * 100.0


class PowerStatusSource(MetricSource):
    """'AC' or 'Battery', depending on whether the charger is plugged in."""

    @property
    def name(self) -> str:
        return "psutil.sensors_battery.power_plugged"

    def read(self) -> str:
        battery = _sensors_battery()
        if battery is None:
            raise SourceNotPresent("no battery reported")
        if battery.power_plugged is None:
            raise SourceError("power source undetermined")
        return "AC" if battery.power_plugged else "Battery"


class SysfsBrightnessSource(MetricSource):
    """Backlight level as a percentage of its maximum."""

    def __init__(self, root: Path = BACKLIGHT_DIR) -> None:
        self._root = root

    @property
    def name(self) -> str:
        return "sysfs.backlight"

    def read(self) -> float:
        if not self._root.is_dir():
            raise SourceNotPresent("no backlight class")
        devices = sorted(self._root.iterdir())
        if not devices:
            raise SourceNotPresent("no backlight device")
        device = devices[0]
        maximum = _read_sysfs_number(device / "max_brightness")
        if maximum <= 0:
            raise SourceError("max_brightness is zero")
        return _read_sysfs_number(device / "brightness") / maximum * 100.0


class WmiBrightnessSource(MetricSource):

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "wmi.WmiMonitorBrightness"

    def read(self) -> str:
        # external monitors do not expose the class
        return run_wmi(
            "(Get-CimInstance -Namespace root/WMI -ClassName WmiMonitorBrightness "
            "-ErrorAction Stop).CurrentBrightness",
            self._timeout,
        ).strip()


_SCHEME_RE = re.compile(r"\(([^)]+)\)\s*$")


def parse_active_scheme(output: str) -> str:
    """Extract the plan name from ``powercfg /getactivescheme`` output."""
    match = _SCHEME_RE.search(output.strip())
    if not match:
        raise SourceError(f"unrecognised powercfg output {output.strip()!r}")
    return match.group(1).strip()


class PowercfgSchemeSource(MetricSource):

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "powercfg"

    def read(self) -> str:
        require_platform("win")
        return parse_active_scheme(run_command(["powercfg", "/getactivescheme"], self._timeout))


class PlatformProfileSource(MetricSource):
    """ACPI platform profile (e.g. ``balanced``) on Linux."""

    def __init__(self, path: Path = PLATFORM_PROFILE) -> None:
        self._path = path

    @property
    def name(self) -> str:
        return "sysfs.platform_profile"

    def read(self) -> str:
        try:
            return self._path.read_text(encoding="utf-8").strip()
        except FileNotFoundError as exc:
            raise SourceNotPresent("no platform profile") from exc


class PowerProfilesCtlSource(MetricSource):

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "powerprofilesctl"

    def read(self) -> str:
        require_platform("linux")
        return run_command(["powerprofilesctl", "get"], self._timeout).strip()
