"""Network throughput sources."""

from __future__ import annotations

import time
from typing import Callable

import psutil

from .base import SourceNotPresent
from .disk import RateSource


class NetworkThroughputSource(RateSource):
    """Bytes sent plus received per second, loopback excluded."""

    def __init__(self, interface: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(clock)
        self._interface = interface

    @property
    def name(self) -> str:
        return "psutil.net_io_counters"

    def counter(self) -> float:
        counters = psutil.net_io_counters(pernic=True)
        if not counters:
            raise SourceNotPresent("no network interfaces")
        if self._interface and self._interface in counters:
            interfaces = [self._interface]
        else:
            interfaces = [name for name in counters if name != "lo" and not name.startswith("Loopback")]
        return float(sum(counters[i].bytes_sent + counters[i].bytes_recv for i in interfaces))
