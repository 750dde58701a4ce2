"""Metrics sinks.

Components emit named timings and counters (``clone.duration``,
``deploy.rollback_count``, ...) to an injected sink. Exporting them anywhere
is left to the embedding application.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Protocol

from loguru import logger


class MetricsSink(Protocol):
    def timing(self, name: str, seconds: float) -> None: ...

    def increment(self, name: str, value: int = 1) -> None: ...


class NullMetrics:
    """Discards everything."""

    def timing(self, name: str, seconds: float) -> None:
        pass

    def increment(self, name: str, value: int = 1) -> None:
        pass


class LoggingMetrics:
    """Writes every metric to the debug log."""

    def timing(self, name: str, seconds: float) -> None:
        logger.debug(f"metric {name}={seconds * 1000:.1f}ms")

    def increment(self, name: str, value: int = 1) -> None:
        logger.debug(f"metric {name}+={value}")


class InMemoryMetrics:
    """Keeps metrics in memory, for tests and status output."""

    def __init__(self) -> None:
        self.timings: dict[str, list[float]] = defaultdict(list)
        self.counters: dict[str, int] = defaultdict(int)

    def timing(self, name: str, seconds: float) -> None:
        self.timings[name].append(seconds)

    def increment(self, name: str, value: int = 1) -> None:
        self.counters[name] += value

    def count(self, name: str) -> int:
        return self.counters.get(name, 0)
