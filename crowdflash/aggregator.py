"""
Metrics aggregator - rollup statistics for the admin console.

Metrics are derived from the registry every time they are needed; nothing
is cached, so a recompute is always safe to repeat.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable

from crowdflash.registry import ConnectionRegistry

# Placeholder health signal shown while devices are connected. Not measured.
STABILITY_PLACEHOLDER = 99.8


@dataclass(frozen=True)
class Metrics:
    active_users: int
    avg_battery: int
    stability: float
    timestamp: int  # Epoch milliseconds

    def to_message(self) -> dict:
        return {
            "type": "metrics",
            "activeUsers": self.active_users,
            "avgBattery": self.avg_battery,
            "stability": self.stability,
            "timestamp": self.timestamp,
        }


def _round_half_up(value: float) -> int:
    """Round halves up (42.5 -> 43), unlike the built-in round()."""
    return int(math.floor(value + 0.5))


class MetricsAggregator:
    """Computes :class:`Metrics` from a :class:`ConnectionRegistry`."""

    def __init__(self, registry: ConnectionRegistry, clock: Callable[[], float] = time.time):
        self._registry = registry
        self._clock = clock
        self.computations = 0

    def compute(self) -> Metrics:
        clients = self._registry.clients()
        reported = [c.battery for c in clients if c.battery is not None]
        avg_battery = _round_half_up(sum(reported) / len(reported)) if reported else 0
        self.computations += 1
        return Metrics(
            active_users=len(clients),
            avg_battery=avg_battery,
            stability=STABILITY_PLACEHOLDER if clients else 0,
            timestamp=int(self._clock() * 1000),
        )
