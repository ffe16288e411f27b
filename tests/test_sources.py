"""Tests for concrete metric sources and their output parsers."""

import contextlib
from datetime import datetime
from types import SimpleNamespace

import psutil
import pytest

from hostscope.collector import shell
from hostscope.collector.base import SourceError, SourceNotPresent
from hostscope.collector.disk import RateSource
from hostscope.collector.gpu import (
    group_engine_utilization,
    group_process_memory,
    parse_engine_instance,
)
from hostscope.collector.models import gpu_engine_column
from hostscope.collector.power import (
    SysfsBatteryCapacitySource,
    SysfsBrightnessSource,
    WmiBatteryCapacitySource,
    WmiBrightnessSource,
    parse_active_scheme,
)
from hostscope.collector.process import ProcessCollector, assign_instance_names
from hostscope.collector.resolver import (
    NUMERIC,
    STATUS_NOT_PRESENT,
    STATUS_OK,
    STATUS_UNAVAILABLE,
    MetricChain,
    MetricResolver,
)
from hostscope.collector.shell import (
    counter_instance,
    parse_nvidia_csv,
    parse_typeperf,
    wmi_class_missing,
)
from hostscope.collector.thermal import SysfsThermalZoneSource, celsius_to_decikelvin

TYPEPERF_OUTPUT = '''
"(PDH-CSV 4.0)","\\\\HOST\\Processor(_Total)\\% Processor Time"
"10/16/2026 12:00:01.123","12.500000"
Exiting, please wait...
The command completed successfully.
'''

ENGINE_PATH = "\\\\HOST\\GPU Engine({})\\Utilization Percentage"
ADAPTER = "luid_0x00000000_0x0000D1C3_phys_0"


class FakeCounter(RateSource):
    def __init__(self, values, times):
        self._values = iter(values)
        self._times = iter(times)
        super().__init__(clock=lambda: next(self._times))

    @property
    def name(self):
        return "fake"

    def counter(self):
        return next(self._values)


def test_parse_typeperf():
    values = parse_typeperf(TYPEPERF_OUTPUT)
    assert values == {"\\\\HOST\\Processor(_Total)\\% Processor Time": "12.500000"}


def test_parse_typeperf_without_sample():
    with pytest.raises(SourceError):
        parse_typeperf("Error: No valid counters.\n")


def test_counter_instance():
    assert counter_instance("\\\\HOST\\Process(chrome#2)\\% Processor Time") == "chrome#2"
    assert counter_instance("\\\\HOST\\Memory\\Available MBytes") == ""


def test_parse_nvidia_csv():
    assert parse_nvidia_csv("0, 35\n1, 0\n\n") == [["0", "35"], ["1", "0"]]


def test_parse_engine_instance():
    instance = f"pid_1234_{ADAPTER}_eng_0_engtype_3D"
    assert parse_engine_instance(instance) == (ADAPTER, "3D")
    assert parse_engine_instance("garbage") is None


def test_group_engine_utilization_sums_by_adapter_and_type():
    values = {
        ENGINE_PATH.format(f"pid_1_{ADAPTER}_eng_0_engtype_3D"): "10.0",
        ENGINE_PATH.format(f"pid_2_{ADAPTER}_eng_0_engtype_3D"): "5.5",
        ENGINE_PATH.format(f"pid_2_{ADAPTER}_eng_3_engtype_VideoDecode"): "0.0",
        ENGINE_PATH.format(f"pid_3_{ADAPTER}_eng_1_engtype_Copy"): "N/A",
    }
    grouped = group_engine_utilization(values)
    assert grouped == {gpu_engine_column("3D", ADAPTER): 15.5}
    assert list(grouped)[0].startswith("gpu_3D_")


def test_group_process_memory_in_mb():
    path = "\\\\HOST\\GPU Process Memory({})\\Dedicated Usage"
    values = {
        path.format(f"pid_42_{ADAPTER}"): str(100 * 1024 * 1024),
        path.format("pid_42_luid_0x00000000_0x0000AAAA_phys_0"): str(28 * 1024 * 1024),
        path.format(f"pid_7_{ADAPTER}"): "0",
    }
    assert group_process_memory(values) == {"42": 128.0, "7": 0.0}


def test_parse_active_scheme():
    output = "Power Scheme GUID: 381b4222-f694-41f0-9685-ff5bb260df2e  (Balanced)\n"
    assert parse_active_scheme(output) == "Balanced"
    with pytest.raises(SourceError):
        parse_active_scheme("nothing useful")


def test_assign_instance_names_in_pid_order():
    names = assign_instance_names([(30, "app"), (10, "app"), (20, "app"), (5, "other")])
    assert names == {5: "other", 10: "app", 20: "app#1", 30: "app#2"}


def test_rate_source_first_read_is_baseline():
    source = FakeCounter(values=[100, 150, 250], times=[0.0, 1.0, 3.0])
    assert source.read() is None
    assert source.read() == 50.0
    assert source.read() == 50.0


def test_rate_source_counter_reset():
    source = FakeCounter(values=[100, 10, 30], times=[0.0, 1.0, 2.0])
    source.read()
    assert source.read() is None
    assert source.read() == 20.0


def test_sysfs_battery_capacity_ratio(tmp_path):
    bat = tmp_path / "BAT0"
    bat.mkdir()
    (bat / "energy_now").write_text("30000000\n")
    (bat / "energy_full").write_text("40000000\n")
    (tmp_path / "AC").mkdir()
    assert SysfsBatteryCapacitySource(tmp_path).read() == 75.0


def test_sysfs_battery_absent(tmp_path):
    with pytest.raises(SourceNotPresent):
        SysfsBatteryCapacitySource(tmp_path).read()
    with pytest.raises(SourceNotPresent):
        SysfsBatteryCapacitySource(tmp_path / "missing").read()


def test_sysfs_brightness(tmp_path):
    device = tmp_path / "intel_backlight"
    device.mkdir()
    (device / "brightness").write_text("480")
    (device / "max_brightness").write_text("960")
    assert SysfsBrightnessSource(tmp_path).read() == 50.0


def test_sysfs_thermal_zone_reports_decikelvin(tmp_path):
    for index, (zone_type, temp) in enumerate([("acpitz", "40000"), ("x86_pkg_temp", "52500")]):
        zone = tmp_path / f"thermal_zone{index}"
        zone.mkdir()
        (zone / "type").write_text(zone_type + "\n")
        (zone / "temp").write_text(temp + "\n")
    raw = SysfsThermalZoneSource(tmp_path).read()
    assert raw == pytest.approx(celsius_to_decikelvin(52.5))
    assert raw == pytest.approx(3256.5)


def test_sysfs_thermal_zone_absent(tmp_path):
    with pytest.raises(SourceNotPresent):
        SysfsThermalZoneSource(tmp_path).read()


def test_rate_source_requires_counter():
    class NoCounter(RateSource):
        @property
        def name(self):
            return "none"

    with pytest.raises(TypeError):
        NoCounter()


# ---------------------------------------------------------------------------
# WMI sources: transient failures versus absent classes
# ---------------------------------------------------------------------------

class ScriptedPowerShell:
    """Replays queued outcomes; the last one repeats."""

    def __init__(self, *outcomes):
        self._outcomes = list(outcomes)
        self.calls = 0

    def __call__(self, command, timeout=5.0):
        self.calls += 1
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_wmi_class_missing():
    assert wmi_class_missing(SourceError('powershell exited with 1: Get-CimInstance : Invalid class "BatteryStatus"'))
    assert wmi_class_missing(SourceError("powershell exited with 1: Not supported"))
    assert not wmi_class_missing(SourceError("powershell timed out after 5.0s"))
    assert not wmi_class_missing(SourceError("powershell exited with 1: Access denied"))


def test_wmi_timeout_is_retried_next_tick(monkeypatch):
    script = ScriptedPowerShell(SourceError("powershell timed out after 5.0s"), "40,50\n")
    monkeypatch.setattr(shell, "run_powershell", script)
    resolver = MetricResolver([MetricChain("battery_pct", NUMERIC, [WmiBatteryCapacitySource()])])

    first = resolver.resolve("battery_pct")
    assert first.status == STATUS_UNAVAILABLE
    assert first.value is None

    second = resolver.resolve("battery_pct")
    assert second.status == STATUS_OK
    assert second.value == 80.0
    assert script.calls == 2


def test_wmi_failed_exit_is_transient(monkeypatch):
    script = ScriptedPowerShell(SourceError("powershell exited with 1: RPC server unavailable"), "70\n")
    monkeypatch.setattr(shell, "run_powershell", script)
    resolver = MetricResolver([MetricChain("screen_brightness", NUMERIC, [WmiBrightnessSource()])])

    assert resolver.resolve("screen_brightness").status == STATUS_UNAVAILABLE
    assert resolver.resolve("screen_brightness").value == 70.0


def test_wmi_missing_class_drops_source(monkeypatch):
    script = ScriptedPowerShell(
        SourceError('powershell exited with 1: Get-CimInstance : Invalid class "WmiMonitorBrightness"')
    )
    monkeypatch.setattr(shell, "run_powershell", script)
    resolver = MetricResolver([MetricChain("screen_brightness", NUMERIC, [WmiBrightnessSource()])])

    for _ in range(3):
        result = resolver.resolve("screen_brightness")
        assert result.status == STATUS_NOT_PRESENT
        assert result.value == "N/A"
    assert script.calls == 1


# ---------------------------------------------------------------------------
# Process collector
# ---------------------------------------------------------------------------

class SimClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class FakeProcess:
    """Busy process: CPU reads 0.0 until time has passed since the last call."""

    def __init__(self, pid, clock):
        self.pid = pid
        self._clock = clock
        self._last_cpu_call = None

    def cpu_percent(self, interval=None):
        previous, self._last_cpu_call = self._last_cpu_call, self._clock()
        if previous is None or previous == self._last_cpu_call:
            return 0.0
        return 75.0

    def memory_info(self):
        return SimpleNamespace(rss=64 * 1024 * 1024)

    def io_counters(self):
        return SimpleNamespace(read_bytes=int(1000 * self._clock()), write_bytes=0)

    def oneshot(self):
        return contextlib.nullcontext()


def test_process_first_observation_has_no_cpu_reading(monkeypatch):
    clock = SimClock()
    monkeypatch.setattr(psutil, "Process", lambda pid: FakeProcess(pid, clock))
    monkeypatch.setattr(
        psutil, "process_iter", lambda attrs=None: [SimpleNamespace(info={"pid": 7, "name": "spin"})]
    )
    collector = ProcessCollector(clock=clock)

    (first,) = collector.collect(datetime(2026, 10, 16, 12, 0, 0))
    assert first.process_name == "spin"
    assert first.cpu_pct_raw is None
    assert first.io_read_bps is None
    assert first.ram_mb == 64.0

    clock.now += 1.0
    (second,) = collector.collect(datetime(2026, 10, 16, 12, 0, 1))
    assert second.cpu_pct_raw == 75.0
    assert second.io_read_bps == 1000.0
