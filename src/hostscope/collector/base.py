"""Base interface for metric sources and value validation."""

from __future__ import annotations

import abc
import math
import re
from typing import Any, Callable

#: Written for metrics whose source does not exist on this machine.
NOT_PRESENT = "N/A"

PLACEHOLDERS = frozenset({"", "n/a", "na", "error", "unknown", "none", "null", "-", "nan", "[not supported]"})

_NUMERIC_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


class SourceError(Exception):
    """A source exists but failed to produce a value this time."""


class SourceNotPresent(SourceError):
    """The source does not exist on this machine; never retried."""


class CollectorSetupError(RuntimeError):
    """Fatal setup problem detected before sampling starts."""


class MetricSource(abc.ABC):
    """One concrete provider of a single telemetry value.

    :meth:`read` returns the raw value (number, numeric string, text or a
    mapping for multi-valued metrics).  It raises :class:`SourceNotPresent`
    when the provider cannot exist here (wrong platform, no device) and any
    other exception for a transient failure.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Source name used in logs."""

    @abc.abstractmethod
    def read(self) -> Any:
        """Query the provider once."""


class FunctionSource(MetricSource):
    """Adapts a plain callable to the :class:`MetricSource` interface."""

    def __init__(self, name: str, func: Callable[[], Any]) -> None:
        self._name = name
        self._func = func

    @property
    def name(self) -> str:
        return self._name

    def read(self) -> Any:
        return self._func()


def is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower() in PLACEHOLDERS


def parse_number(value: Any) -> float | None:
    """Return *value* as a finite float, or None if it is not a real number.

    Strings must look numeric; placeholders such as ``"N/A"`` or ``"Error"``
    are rejected rather than coerced.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip().strip('"')
        if not _NUMERIC_RE.match(text):
            return None
        number = float(text)
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if is_placeholder(text):
        return None
    return text


def parse_mapping(value: Any) -> dict[str, float] | None:
    """Validate a multi-valued reading, keeping only positive finite entries."""
    if not isinstance(value, dict):
        return None
    result: dict[str, float] = {}
    for key, raw in value.items():
        number = parse_number(raw)
        if number is not None and number > 0:
            result[str(key)] = number
    return result
