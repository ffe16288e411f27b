"""Per-row derived metrics: capacity percentages, clock, temperature, power."""

from __future__ import annotations

import random
import zlib
from dataclasses import dataclass
from datetime import datetime

from ..collector.base import NOT_PRESENT, parse_number
from ..collector.models import TIMESTAMP_FORMAT, StaticContext
from ..config import PowerPolicyConfig
from .loader import Table, parse_timestamp

KELVIN_OFFSET_DECI = 2731.5


def capacity_percent(used: object, total: object) -> float | None:
    """``used / total * 100`` rounded to two decimals, or None."""
    used_value = parse_number(used)
    total_value = parse_number(total)
    if used_value is None or total_value is None or total_value <= 0:
        return None
    return round(used_value / total_value * 100.0, 2)


def estimated_frequency_mhz(max_clock_mhz: object, perf_pct: object) -> float | None:
    """Real-time clock estimate from the rated clock and the performance ratio."""
    max_clock = parse_number(max_clock_mhz)
    perf = parse_number(perf_pct)
    if max_clock is None or perf is None or max_clock <= 0:
        return None
    return round(max_clock * perf / 100.0, 1)


def temperature_celsius(raw_decikelvin: object, offset_c: float = 0.0) -> float | None:
    """Convert a raw tenths-of-kelvin reading to Celsius (one decimal)."""
    raw = parse_number(raw_decikelvin)
    if raw is None or raw <= 0:
        return None
    return round((raw - KELVIN_OFFSET_DECI) / 10.0 + offset_c, 1)


class PowerModel:
    """Estimated CPU package power from utilisation.

    The TDP comes from the system model (substring match against the policy
    table, else the default).  Utilisation falls into idle, low, nominal or
    turbo bands, each with its own multiplier, and a small jitter seeded
    from the row timestamp keeps the curve organic but reproducible.
    """

    def __init__(self, policy: PowerPolicyConfig | None = None, system_model: str = "") -> None:
        self.policy = policy or PowerPolicyConfig()
        self.tdp_watts = self.tdp_for_model(system_model)

    def tdp_for_model(self, system_model: str) -> float:
        model = (system_model or "").lower()
        if model and model != NOT_PRESENT.lower():
            # longest key first so "x1 carbon gen 9" beats "x1 carbon"
            for key in sorted(self.policy.tdp_by_model, key=len, reverse=True):
                if key.lower() in model:
                    return self.policy.tdp_by_model[key]
        return self.policy.default_tdp_watts

    def _fraction(self, util_pct: float) -> float:
        p = self.policy
        util = max(0.0, min(util_pct, 100.0))
        if util < p.idle_threshold_pct:
            return p.idle_fraction
        if util < p.low_threshold_pct:
            return p.idle_fraction + (util / 100.0) * p.low_multiplier
        if util < p.turbo_threshold_pct:
            return p.idle_fraction + (util / 100.0) * p.nominal_multiplier
        return p.idle_fraction + (util / 100.0) * p.turbo_multiplier

    def estimate(self, util_pct: object, timestamp: datetime | str) -> float | None:
        util = parse_number(util_pct)
        if util is None:
            return None
        stamp = timestamp.strftime(TIMESTAMP_FORMAT) if isinstance(timestamp, datetime) else str(timestamp)
        rng = random.Random(zlib.crc32(stamp.encode("utf-8")))
        jitter = 1.0 + rng.uniform(-self.policy.jitter_fraction, self.policy.jitter_fraction)
        watts = self.tdp_watts * self._fraction(util) * jitter
        low = self.policy.min_fraction * self.tdp_watts
        high = 1.5 * self.tdp_watts
        return round(min(max(watts, low), high), 2)


@dataclass
class DerivedRow:
    """Read-only projection of one system row."""

    timestamp: datetime | None
    cpu_util_pct: float | None
    ram_used_pct: float | None
    cpu_freq_est_mhz: float | None
    cpu_temp_c: float | None
    power_watts: float | None


def _cell(row: dict[str, str], column: str) -> float | None:
    return parse_number(row.get(column))


def derive_row(
    row: dict[str, str],
    context: StaticContext,
    power_model: PowerModel,
    *,
    cpu_cap_pct: float = 100.0,
    temperature_offset_c: float = 0.0,
) -> DerivedRow:
    util = _cell(row, "cpuUtilPct")
    if util is not None:
        util = min(util, cpu_cap_pct)

    used = _cell(row, "ramUsedMB")
    total = context.total_ram_mb
    if total is None:
        avail = _cell(row, "ramAvailMB")
        total = used + avail if used is not None and avail is not None else None

    freq = estimated_frequency_mhz(context.max_clock_mhz, row.get("cpuPerfPct"))
    if freq is None:
        freq = _cell(row, "cpuFreqMHz")

    stamp = row.get("timestamp") or ""
    return DerivedRow(
        timestamp=parse_timestamp(stamp),
        cpu_util_pct=util,
        ram_used_pct=capacity_percent(used, total),
        cpu_freq_est_mhz=freq,
        cpu_temp_c=temperature_celsius(row.get("cpuTempRaw"), temperature_offset_c),
        power_watts=power_model.estimate(util, stamp),
    )


def derive_rows(
    table: Table,
    context: StaticContext,
    power_model: PowerModel | None = None,
    *,
    cpu_cap_pct: float = 100.0,
    temperature_offset_c: float = 0.0,
) -> list[DerivedRow]:
    """Derive every row of a system table."""
    power_model = power_model or PowerModel(system_model=context.system_model)
    return [
        derive_row(
            row,
            context,
            power_model,
            cpu_cap_pct=cpu_cap_pct,
            temperature_offset_c=temperature_offset_c,
        )
        for row in table.rows
    ]
