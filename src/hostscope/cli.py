"""CLI interface for hostscope."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path

from . import __version__
from .config import load_config

logger = logging.getLogger(__name__)


def _cmd_collect(args: argparse.Namespace) -> int:
    """Sample system and process metrics into CSV tables."""
    overrides = {}
    if args.output_dir:
        overrides["collector"] = {"output_dir": args.output_dir}
    cfg = load_config(args.config, overrides)

    from .collector.base import CollectorSetupError
    from .collector.sampler import Sampler, prepare_output_dir
    from .collector.static import discover_static_context
    from .exporter.base import table_paths
    from .exporter.csv_writer import BufferedWriter

    if args.duration < 0:
        logger.error("--duration must be >= 0")
        return 2

    try:
        output_dir = prepare_output_dir(cfg.collector.output_dir)
    except CollectorSetupError as exc:
        logger.error("%s", exc)
        return 1

    context = discover_static_context()
    system_path, process_path = table_paths(output_dir, context.serial_number, datetime.now())
    writer = BufferedWriter(system_path, process_path, cfg.collector.flush_interval_seconds)
    sampler = Sampler(cfg.collector, writer, context=context)

    def _handle_signal(_sig: int, _frame: object) -> None:
        sampler.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    if args.duration:
        print(f"hostscope collecting for {args.duration:g} min → {system_path.name}")
    else:
        print(f"hostscope collecting until interrupted → {system_path.name}")
        print("Press Ctrl+C to stop.\n")

    ticks = sampler.run(args.duration)
    print(f"\nCollection stopped after {ticks} samples.")
    print(f"  System table:  {system_path}")
    if cfg.collector.processes:
        print(f"  Process table: {process_path}")
    return 0


def _cmd_report(args: argparse.Namespace) -> int:
    """Analyse persisted tables and print/save a report."""
    cfg = load_config(args.config)
    if args.top is not None:
        cfg.analyzer.top_n = args.top

    from .analyzer.loader import SchemaError, load_process_table, load_system_table
    from .analyzer.report import build_report, print_report, save_report
    from .collector.models import StaticContext

    system_path = Path(args.system_table)
    process_path = Path(args.process_table) if args.process_table else None
    if process_path is None:
        sibling = system_path.with_name(f"{system_path.stem}_process{system_path.suffix}")
        if sibling.exists():
            process_path = sibling

    try:
        system_table = load_system_table(system_path)
        process_table = load_process_table(process_path) if process_path else None
    except (OSError, SchemaError) as exc:
        logger.error("%s", exc)
        return 1

    if args.local_context:
        from .collector.static import discover_static_context
        context = discover_static_context()
    else:
        context = StaticContext()
    context = StaticContext(
        serial_number=context.serial_number,
        system_model=args.model or context.system_model,
        total_ram_mb=args.total_ram_mb or context.total_ram_mb,
        max_clock_mhz=args.max_clock_mhz or context.max_clock_mhz,
        logical_cores=args.cores or context.logical_cores,
        gpus=context.gpus,
        disks=context.disks,
    )

    report = build_report(
        system_table,
        process_table,
        context=context,
        power_policy=cfg.power,
        config=cfg.analyzer,
    )

    output = args.output or cfg.analyzer.report_output or str(system_path.with_name(f"{system_path.stem}_report.json"))
    save_report(report, output)
    print(f"Report saved to {output}")

    if not args.no_table:
        print()
        print_report(report)
    return 0


def _cmd_version(_args: argparse.Namespace) -> int:
    print(f"hostscope {__version__}")
    return 0


def main(argv: list[str] | None = None) -> None:
    """Entry point for the hostscope CLI."""
    parser = argparse.ArgumentParser(
        prog="hostscope",
        description="Collect host telemetry into CSV tables and report on it",
    )
    parser.add_argument("--config", "-c", default=None, help="Path to hostscope.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    # collect
    collect_p = sub.add_parser("collect", help="Sample metrics until the duration elapses or Ctrl+C")
    collect_p.add_argument(
        "--duration", "-d", type=float, default=0.0,
        help="Minutes to run; 0 runs until interrupted (default: 0)",
    )
    collect_p.add_argument("--output-dir", default=None, help="Directory for the CSV tables")
    collect_p.set_defaults(func=_cmd_collect)

    # report
    report_p = sub.add_parser("report", help="Analyse a system table (and its process table)")
    report_p.add_argument("system_table", help="Path to the system CSV table")
    report_p.add_argument("--process-table", default=None, help="Path to the process CSV table")
    report_p.add_argument("--output", "-o", default=None, help="Report JSON path")
    report_p.add_argument("--no-table", action="store_true", help="Skip rich table output")
    report_p.add_argument("--top", type=int, default=None, help="Number of top processes to list")
    report_p.add_argument("--total-ram-mb", type=float, default=None, help="Declared total RAM")
    report_p.add_argument("--max-clock-mhz", type=float, default=None, help="Declared maximum CPU clock")
    report_p.add_argument("--cores", type=int, default=None, help="Logical core count for CPU normalisation")
    report_p.add_argument("--model", default=None, help="System model used for TDP lookup")
    report_p.add_argument(
        "--local-context", action="store_true",
        help="Fill undeclared machine facts from the machine running the report",
    )
    report_p.set_defaults(func=_cmd_report)

    # version
    ver_p = sub.add_parser("version", help="Print version")
    ver_p.set_defaults(func=_cmd_version)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    code = args.func(args)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
