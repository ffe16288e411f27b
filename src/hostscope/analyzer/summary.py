"""Whole-series statistics for persisted metrics."""

from __future__ import annotations

import statistics
from dataclasses import dataclass
from typing import Iterable

from ..collector.base import parse_number
from .loader import SYSTEM_METRIC_COLUMNS, Table


@dataclass
class SeriesSummary:
    """Average/median/min/max of one series, or ``available=False``."""

    average: float | None = None
    median: float | None = None
    minimum: float | None = None
    maximum: float | None = None
    count: int = 0
    available: bool = False


def summarize(series: Iterable[object], cap_at: float | None = None) -> SeriesSummary:
    """Summarise the numeric entries of *series*.

    Missing and non-numeric entries are dropped first.  *cap_at* clamps each
    value before aggregation so a single out-of-range reading cannot skew
    the extremes.
    """
    values: list[float] = []
    for item in series:
        number = parse_number(item)
        if number is None:
            continue
        if cap_at is not None:
            number = min(number, cap_at)
        values.append(number)
    if not values:
        return SeriesSummary()
    return SeriesSummary(
        average=statistics.fmean(values),
        median=statistics.median(values),
        minimum=min(values),
        maximum=max(values),
        count=len(values),
        available=True,
    )


def summarize_columns(
    table: Table,
    columns: Iterable[str] | None = None,
    caps: dict[str, float] | None = None,
) -> dict[str, SeriesSummary]:
    """Summarise each of *columns*; absent columns come back unavailable."""
    caps = caps or {}
    if columns is None:
        columns = [c for c in SYSTEM_METRIC_COLUMNS if table.has(c)] + table.gpu_columns
    result: dict[str, SeriesSummary] = {}
    for column in columns:
        if not table.has(column):
            result[column] = SeriesSummary()
            continue
        result[column] = summarize(table.numbers(column), cap_at=caps.get(column))
    return result
