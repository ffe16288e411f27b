"""Tests for the analyzer module."""

import csv
import json
from datetime import datetime
from pathlib import Path

import pytest

from hostscope.analyzer.derived import (
    PowerModel,
    capacity_percent,
    derive_rows,
    estimated_frequency_mhz,
    temperature_celsius,
)
from hostscope.analyzer.loader import (
    SchemaError,
    load_process_table,
    load_system_table,
    normalize_columns,
    PROCESS,
    SYSTEM,
)
from hostscope.analyzer.processes import ProcessAggregator, base_name, normalized_cpu
from hostscope.analyzer.report import build_report, save_report
from hostscope.analyzer.summary import summarize, summarize_columns
from hostscope.collector.models import StaticContext
from hostscope.config import AnalyzerConfig, PowerPolicyConfig

T = "2026-10-16 10:00:0{}"


def _write_csv(path: Path, header: list[str], rows: list[list[object]]) -> Path:
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(header)
        writer.writerows(rows)
    return path


def _system_csv(tmp_path: Path) -> Path:
    return _write_csv(
        tmp_path / "SN_100000_16102026.csv",
        ["timestamp", "cpuUtilPct", "cpuPerfPct", "ramUsedMB", "ramAvailMB", "batteryPct", "cpuTempRaw", "gpu_3D_x", "extra"],
        [
            [T.format(0), "10", "50", "2048", "6144", "N/A", "3131.5", "5", "a"],
            [T.format(1), "", "100", "4096", "4096", "N/A", "", "", "b"],
            [T.format(2), "120", "", "Error", "", "N/A", "3231.5", "15", "c"],
        ],
    )


def _process_csv(tmp_path: Path) -> Path:
    header = ["timestamp", "processName", "processId", "cpuPctRaw", "ramMB", "ioReadBytesPerSec",
              "ioWriteBytesPerSec", "gpuDedicatedMB", "gpuSharedMB"]
    return _write_csv(
        tmp_path / "SN_100000_16102026_process.csv",
        header,
        [
            [T.format(0), "app", 1, 10, 100, 0, 0, 0, 0],
            [T.format(0), "app#1", 2, 10, 50, 0, 0, 0, 0],
            [T.format(0), "app#2", 3, 10, 25, 0, 0, 0, 0],
            [T.format(0), "solo", 4, 80, 500, 0, 0, 0, 0],
            [T.format(1), "app", 1, 20, 100, 0, 0, 0, 0],
            [T.format(1), "app#1", 2, 5, 50, 0, 0, 0, 0],
            [T.format(1), "solo", 4, 40, 500, 0, 0, 0, 0],
            [T.format(2), "idle", 9, "", 10, 0, 0, 0, 0],
        ],
    )


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def test_load_system_table_keeps_unknown_columns(tmp_path):
    table = load_system_table(_system_csv(tmp_path))
    assert len(table) == 3
    assert table.has("extra")
    assert table.gpu_columns == ["gpu_3D_x"]
    assert table.numbers("cpuUtilPct") == [10.0, None, 120.0]
    assert table.numbers("batteryPct") == [None, None, None]
    assert table.timestamps()[0] == datetime(2026, 10, 16, 10, 0, 0)


def test_legacy_columns_are_mapped(tmp_path):
    path = _write_csv(
        tmp_path / "old.csv",
        ["Timestamp", "CPU Usage (%)", "RAM Used (MB)", "Battery Percentage", "cpu_freq_mhz"],
        [[T.format(0), "12", "1000", "90", "2400"]],
    )
    table = load_system_table(path)
    assert table.columns == ["timestamp", "cpuUtilPct", "ramUsedMB", "batteryPct", "cpuFreqMHz"]
    assert table.numbers("batteryPct") == [90.0]


def test_normalize_columns_first_mapping_wins():
    assert normalize_columns(["timestamp", "Time"], SYSTEM) == ["timestamp", "Time"]
    assert normalize_columns(["Process Name", "PID"], PROCESS) == ["processName", "processId"]


def test_missing_timestamp_fails_fast(tmp_path):
    path = _write_csv(tmp_path / "bad.csv", ["cpuUtilPct"], [["1"]])
    with pytest.raises(SchemaError, match="timestamp"):
        load_system_table(path)


def test_no_metric_column_fails_fast(tmp_path):
    path = _write_csv(tmp_path / "bad.csv", ["timestamp", "notes"], [[T.format(0), "x"]])
    with pytest.raises(SchemaError, match="no metric columns"):
        load_system_table(path)


def test_empty_file_fails_fast(tmp_path):
    path = tmp_path / "empty.csv"
    path.write_text("")
    with pytest.raises(SchemaError):
        load_system_table(path)


def test_process_table_requires_process_name(tmp_path):
    path = _write_csv(tmp_path / "p.csv", ["timestamp", "cpuPctRaw"], [[T.format(0), "1"]])
    with pytest.raises(SchemaError, match="processName"):
        load_process_table(path)


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

def test_summarize_mixed_series():
    result = summarize([10, None, 20, None, 30])
    assert result.available is True
    assert result.average == 20
    assert result.median == 20
    assert result.minimum == 10
    assert result.maximum == 30
    assert result.count == 3


def test_summarize_all_unavailable():
    result = summarize([None, "N/A", "", "Error"])
    assert result.available is False
    assert result.average is None
    assert result.count == 0
    assert summarize([]).available is False


def test_summarize_caps_before_aggregating():
    result = summarize([50, 150, 250], cap_at=100)
    assert result.maximum == 100
    assert result.average == pytest.approx(250 / 3)


def test_summarize_columns_missing_column_is_unavailable(tmp_path):
    table = load_system_table(_system_csv(tmp_path))
    stats = summarize_columns(table, ["cpuUtilPct", "netBytesPerSec"], caps={"cpuUtilPct": 100})
    assert stats["cpuUtilPct"].maximum == 100
    assert stats["netBytesPerSec"].available is False


# ---------------------------------------------------------------------------
# Derived values
# ---------------------------------------------------------------------------

def test_capacity_percent():
    assert capacity_percent(2048, 8192) == 25.00
    assert capacity_percent(2048, 0) is None
    assert capacity_percent(2048, None) is None
    assert capacity_percent(None, 8192) is None
    assert capacity_percent("1", "3") == 33.33


def test_estimated_frequency():
    assert estimated_frequency_mhz(3000, 80) == 2400.0
    assert estimated_frequency_mhz(3000, 120) == 3600.0
    assert estimated_frequency_mhz(None, 80) is None
    assert estimated_frequency_mhz(3000, "N/A") is None


def test_temperature_celsius():
    assert temperature_celsius(3131.5) == 40.0
    assert temperature_celsius("3231.5", offset_c=-2.5) == 47.5
    assert temperature_celsius("") is None
    assert temperature_celsius(0) is None


def test_power_model_is_deterministic_and_clamped():
    policy = PowerPolicyConfig(default_tdp_watts=20.0, tdp_by_model={"X1 Carbon": 15.0, "X1 Carbon Gen 11": 28.0})
    model = PowerModel(policy, "ThinkPad X1 Carbon Gen 11")
    assert model.tdp_watts == 28.0
    assert PowerModel(policy, "Unknown Box").tdp_watts == 20.0

    stamp = datetime(2026, 10, 16, 10, 0, 0)
    first = model.estimate(50.0, stamp)
    assert first == model.estimate(50.0, "2026-10-16 10:00:00")
    assert PowerModel(policy, "ThinkPad X1 Carbon Gen 11").estimate(50.0, stamp) == first

    for util in (0, 3, 20, 50, 90, 100, 500):
        watts = model.estimate(util, stamp)
        assert policy.min_fraction * 28.0 <= watts <= 1.5 * 28.0
    assert model.estimate(None, stamp) is None
    assert model.estimate(2, stamp) < model.estimate(60, stamp) < model.estimate(100, stamp)


def test_derive_rows(tmp_path):
    table = load_system_table(_system_csv(tmp_path))
    context = StaticContext(total_ram_mb=8192, max_clock_mhz=3000)
    rows = derive_rows(table, context)
    assert [r.ram_used_pct for r in rows] == [25.0, 50.0, None]
    assert [r.cpu_freq_est_mhz for r in rows] == [1500.0, 3000.0, None]
    assert [r.cpu_util_pct for r in rows] == [10.0, None, 100.0]
    assert [r.cpu_temp_c for r in rows] == [40.0, None, 50.0]
    assert rows[1].power_watts is None
    assert rows[0].power_watts is not None


def test_derive_rows_falls_back_to_used_plus_available(tmp_path):
    table = load_system_table(_system_csv(tmp_path))
    rows = derive_rows(table, StaticContext())
    assert rows[0].ram_used_pct == 25.0


# ---------------------------------------------------------------------------
# Process aggregation
# ---------------------------------------------------------------------------

def test_base_name():
    assert base_name("app#12") == "app"
    assert base_name("app") == "app"
    assert base_name("#1") == "#1"
    assert base_name("weird#name") == "weird#name"


def test_process_indexes(tmp_path):
    agg = ProcessAggregator(load_process_table(_process_csv(tmp_path)))
    assert agg.lookup("app#1", T.format(0))["processId"] == "2"
    assert agg.lookup("app#2", T.format(1)) is None
    assert agg.base_groups["app"] == ["app", "app#1", "app#2"]
    assert [p.timestamp for p in agg.series("app")] == [T.format(0), T.format(1)]


def test_aggregated_series_sums_present_instances(tmp_path):
    agg = ProcessAggregator(load_process_table(_process_csv(tmp_path)))
    series = agg.aggregated_series("app")
    assert [p.timestamp for p in series] == [T.format(0), T.format(1)]
    assert series[0].values["cpuPctRaw"] == 30
    assert series[0].values["ramMB"] == 175
    # app#2 absent at T+1 contributes zero, not null
    assert series[1].values["cpuPctRaw"] == 25
    assert list(agg.aggregated()) == ["app"]


def test_top_n_uses_per_process_averages(tmp_path):
    agg = ProcessAggregator(load_process_table(_process_csv(tmp_path)))
    top = agg.top_n(3)
    assert top[0] == ("solo", 60.0)
    assert top[1] == ("app", 15.0)
    assert "idle" not in dict(agg.averages())


def test_normalized_cpu():
    assert normalized_cpu(400.0, 8) == 50.0
    assert normalized_cpu(None, 8) is None


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def test_build_and_save_report(tmp_path):
    system = load_system_table(_system_csv(tmp_path))
    process = load_process_table(_process_csv(tmp_path))
    report = build_report(
        system,
        process,
        context=StaticContext(total_ram_mb=8192, max_clock_mhz=3000, logical_cores=4),
        config=AnalyzerConfig(top_n=2),
    )
    assert report.rows == 3
    assert report.start == T.format(0)
    assert report.statistics["cpuUtilPct"].maximum == 100
    assert report.statistics["netBytesPerSec"].available is False
    assert report.statistics["batteryPct"].available is False
    assert report.statistics["gpu_3D_x"].average == 10
    assert report.statistics["ramUsedPct"].available is True
    # two valid points each
    assert "cpuUtilPct" not in report.trends
    assert "cpuFreqEstMHz" not in report.trends
    assert len(report.trends["ramUsedPct"]) == 3
    assert [r.name for r in report.top_processes] == ["solo", "app"]
    assert report.top_processes[0].avg_cpu_pct == 15.0
    assert list(report.aggregated_processes) == ["app"]

    out = tmp_path / "report.json"
    save_report(report, out)
    data = json.loads(out.read_text())
    assert data["statistics"]["cpuUtilPct"]["available"] is True
    assert data["derived"][0]["timestamp"] == "2026-10-16 10:00:00"
