"""Configuration loading and validation for hostscope."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class CollectorConfig:
    """Sampling loop and persistence settings."""

    sample_interval_seconds: float = 1.0
    flush_interval_seconds: float = 10.0
    source_timeout_seconds: float = 2.0
    output_dir: str = "."
    processes: bool = True
    gpu: bool = True
    max_workers: int = 8


@dataclass
class PowerPolicyConfig:
    """Coefficients for the estimated CPU power curve.

    None of these are authoritative; they are policy knobs and can be tuned
    per fleet without touching code.
    """

    default_tdp_watts: float = 15.0
    tdp_by_model: dict[str, float] = field(default_factory=dict)
    idle_threshold_pct: float = 5.0
    low_threshold_pct: float = 30.0
    turbo_threshold_pct: float = 85.0
    idle_fraction: float = 0.12
    low_multiplier: float = 0.55
    nominal_multiplier: float = 0.9
    turbo_multiplier: float = 1.3
    jitter_fraction: float = 0.04
    min_fraction: float = 0.08


@dataclass
class AnalyzerConfig:
    """Report generation settings."""

    top_n: int = 5
    cpu_cap_pct: float = 100.0
    temperature_offset_c: float = 0.0
    report_output: str = ""


@dataclass
class HostScopeConfig:
    """Top-level hostscope configuration."""

    collector: CollectorConfig = field(default_factory=CollectorConfig)
    power: PowerPolicyConfig = field(default_factory=PowerPolicyConfig)
    analyzer: AnalyzerConfig = field(default_factory=AnalyzerConfig)


_ENV_MAP: dict[str, tuple[tuple[str, ...], type]] = {
    "HOSTSCOPE_SAMPLE_INTERVAL": (("collector", "sample_interval_seconds"), float),
    "HOSTSCOPE_FLUSH_INTERVAL": (("collector", "flush_interval_seconds"), float),
    "HOSTSCOPE_SOURCE_TIMEOUT": (("collector", "source_timeout_seconds"), float),
    "HOSTSCOPE_OUTPUT_DIR": (("collector", "output_dir"), str),
    "HOSTSCOPE_DEFAULT_TDP": (("power", "default_tdp_watts"), float),
    "HOSTSCOPE_TOP_N": (("analyzer", "top_n"), int),
}


def _merge_dict(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *source* into *target*."""
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_dict(target[key], value)
        else:
            target[key] = value
    return target


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides using the HOSTSCOPE_ prefix."""
    for env_key, (path, caster) in _ENV_MAP.items():
        value = os.environ.get(env_key)
        if value is None:
            continue
        obj = data
        for part in path[:-1]:
            obj = obj.setdefault(part, {})
        obj[path[-1]] = caster(value)
    return data


def _section(cls: type, data: dict[str, Any]) -> Any:
    return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def _dict_to_config(data: dict[str, Any]) -> HostScopeConfig:
    """Convert a raw dictionary to a HostScopeConfig dataclass."""
    power_data = dict(data.get("power") or {})
    if "tdp_by_model" in power_data:
        power_data["tdp_by_model"] = {
            str(k): float(v) for k, v in (power_data["tdp_by_model"] or {}).items()
        }
    return HostScopeConfig(
        collector=_section(CollectorConfig, data.get("collector") or {}),
        power=_section(PowerPolicyConfig, power_data),
        analyzer=_section(AnalyzerConfig, data.get("analyzer") or {}),
    )


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> HostScopeConfig:
    """Load configuration from a YAML file with environment overrides.

    Looks for ``hostscope.yaml`` in the current directory if *path* is None.
    *overrides* (nested like the YAML document) win over both the file and
    the environment; the CLI uses it for command-line flags.
    """
    data: dict[str, Any] = {}
    if path is None:
        path = Path("hostscope.yaml")
    else:
        path = Path(path)

    if path.exists():
        with open(path, encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh)
            if isinstance(loaded, dict):
                data = loaded

    data = _apply_env_overrides(data)
    if overrides:
        _merge_dict(data, overrides)
    return _dict_to_config(data)
