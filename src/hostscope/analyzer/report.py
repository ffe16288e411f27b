"""Report assembly – statistics, trend curves and process rankings.

The report is the structured hand-off to presentation: everything in it is
recomputed from the persisted tables on each run and nothing is written
back to them.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path

from ..collector.models import StaticContext
from ..config import AnalyzerConfig, PowerPolicyConfig
from .derived import DerivedRow, PowerModel, derive_rows
from .loader import SYSTEM_METRIC_COLUMNS, Table
from .processes import ProcessAggregator, ProcessPoint, normalized_cpu
from .summary import SeriesSummary, summarize, summarize_columns
from .trend import fit_trend

logger = logging.getLogger(__name__)

# derived series exposed alongside the raw columns
_DERIVED_SERIES = {
    "ramUsedPct": "ram_used_pct",
    "cpuFreqEstMHz": "cpu_freq_est_mhz",
    "cpuTempC": "cpu_temp_c",
    "powerWatts": "power_watts",
}

# raw columns that are not worth a trend line
_NO_TREND = {"cpuTempRaw", "batteryPct", "screenBrightness"}


@dataclass
class ProcessRank:
    name: str
    avg_cpu_pct_raw: float
    avg_cpu_pct: float | None


@dataclass
class Report:
    """Everything the presentation layer needs from one run."""

    system_path: str
    process_path: str = ""
    rows: int = 0
    start: str = ""
    end: str = ""
    tdp_watts: float = 0.0
    statistics: dict[str, SeriesSummary] = field(default_factory=dict)
    trends: dict[str, list[float | None]] = field(default_factory=dict)
    derived: list[DerivedRow] = field(default_factory=list)
    top_processes: list[ProcessRank] = field(default_factory=list)
    aggregated_processes: dict[str, list[ProcessPoint]] = field(default_factory=dict)


def fit_trends(series: dict[str, list[float | None]], max_workers: int = 4) -> dict[str, list[float | None]]:
    """Fit every series independently; series share no state."""
    names = list(series)
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        curves = list(pool.map(fit_trend, (series[n] for n in names)))
    return {name: curve for name, curve in zip(names, curves) if curve}


def build_report(
    system_table: Table,
    process_table: Table | None = None,
    *,
    context: StaticContext | None = None,
    power_policy: PowerPolicyConfig | None = None,
    config: AnalyzerConfig | None = None,
) -> Report:
    """Compute statistics, derived rows, trends and process views."""
    context = context or StaticContext()
    config = config or AnalyzerConfig()
    power_model = PowerModel(power_policy, context.system_model)

    report = Report(system_path=str(system_table.path), rows=len(system_table), tdp_watts=power_model.tdp_watts)
    if system_table.rows:
        report.start = system_table.rows[0].get("timestamp", "")
        report.end = system_table.rows[-1].get("timestamp", "")

    columns = list(SYSTEM_METRIC_COLUMNS) + system_table.gpu_columns
    report.statistics = summarize_columns(
        system_table,
        columns,
        caps={"cpuUtilPct": config.cpu_cap_pct},
    )

    report.derived = derive_rows(
        system_table,
        context,
        power_model,
        cpu_cap_pct=config.cpu_cap_pct,
        temperature_offset_c=config.temperature_offset_c,
    )
    derived_series = {
        name: [getattr(row, attr) for row in report.derived]
        for name, attr in _DERIVED_SERIES.items()
    }
    for name, values in derived_series.items():
        report.statistics[name] = summarize(values)

    trend_inputs = {
        column: system_table.numbers(column)
        for column in columns
        if system_table.has(column) and column not in _NO_TREND
    }
    trend_inputs.update(derived_series)
    report.trends = fit_trends(trend_inputs)

    if process_table is not None:
        report.process_path = str(process_table.path)
        aggregator = ProcessAggregator(process_table)
        report.top_processes = [
            ProcessRank(name, avg, normalized_cpu(avg, context.logical_cores))
            for name, avg in aggregator.top_n(config.top_n)
        ]
        report.aggregated_processes = aggregator.aggregated()

    logger.info(
        "Report built: %d rows, %d statistics, %d trend curves",
        report.rows,
        len(report.statistics),
        len(report.trends),
    )
    return report


def _json_default(value: object) -> str:
    return str(value)


def save_report(report: Report, path: str | Path) -> None:
    """Write the report to a JSON file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(asdict(report), fh, indent=2, default=_json_default)


def _fmt(value: float | None, digits: int = 1) -> str:
    if value is None:
        return "-"
    return f"{value:.{digits}f}"


def print_report(report: Report) -> None:
    """Pretty-print the report to the terminal using Rich."""
    from rich.console import Console
    from rich.table import Table as RichTable

    console = Console()
    console.print(f"[bold]{report.system_path}[/bold]  {report.start} → {report.end}  ({report.rows} rows)")
    console.print(f"Estimated TDP: {report.tdp_watts:.1f} W")

    table = RichTable(title="System metrics", show_lines=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Avg", justify="right")
    table.add_column("Median", justify="right")
    table.add_column("Min", justify="right")
    table.add_column("Max", justify="right")
    table.add_column("Samples", justify="right")
    table.add_column("Trend", justify="center")
    for name, stats in report.statistics.items():
        if not stats.available:
            table.add_row(name, "[dim]unavailable[/dim]", "", "", "", "0", "")
            continue
        table.add_row(
            name,
            _fmt(stats.average, 2),
            _fmt(stats.median, 2),
            _fmt(stats.minimum, 2),
            _fmt(stats.maximum, 2),
            str(stats.count),
            "✓" if name in report.trends else "",
        )
    console.print(table)

    if report.top_processes:
        top = RichTable(title="Top processes by CPU", show_lines=False)
        top.add_column("Process", style="green")
        top.add_column("Avg CPU (raw %)", justify="right")
        top.add_column("Avg CPU (% of machine)", justify="right")
        for rank in report.top_processes:
            top.add_row(rank.name, _fmt(rank.avg_cpu_pct_raw), _fmt(rank.avg_cpu_pct))
        console.print(top)

    if report.aggregated_processes:
        agg = RichTable(title="Multi-instance processes", show_lines=False)
        agg.add_column("Base name", style="magenta")
        agg.add_column("Samples", justify="right")
        agg.add_column("Peak CPU (raw %)", justify="right")
        agg.add_column("Peak RAM (MB)", justify="right")
        for base, points in report.aggregated_processes.items():
            cpu = [p.values.get("cpuPctRaw") or 0.0 for p in points]
            ram = [p.values.get("ramMB") or 0.0 for p in points]
            agg.add_row(base, str(len(points)), _fmt(max(cpu, default=None)), _fmt(max(ram, default=None)))
        console.print(agg)
