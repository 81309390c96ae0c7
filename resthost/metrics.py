# FILE: resthost/metrics.py
# Prometheus-backed meters and timers for resthost.
#
# Every Metrics instance owns its CollectorRegistry so that several hosts
# (or several test apps) can live in one process without duplicate
# registration errors. Two instruments carry all samples:
#   - <prefix>_events_total{key, name}     : meters
#   - <prefix>_duration_seconds{key, name} : timers
# "key" is the dotted metric path (e.g. "widgets-list.http.duration") and
# "name" the event tag given when recording (e.g. "HTTP_API_DURATION").

from __future__ import annotations

import logging
import re
import time
from typing import Optional, Sequence

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

_LATENCY_BUCKETS = (0.001, 0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500, 1.0, 2.5, 5.0)


def _metric_namespace(prefix: str) -> str:
    ns = re.sub(r"[^a-zA-Z0-9_]", "_", prefix or "resthost")
    if not re.match(r"[a-zA-Z_]", ns):
        ns = "_" + ns
    return ns


def _key_label(key: Sequence[str]) -> str:
    return ".".join(str(k) for k in key if k is not None and str(k) != "")


class Meter:
    """A counter bound to one metric key."""

    def __init__(self, counter: Counter, key: Sequence[str]):
        self._counter = counter
        self.key = _key_label(key)

    def record(self, n: float = 1, *, name: Optional[str] = None) -> None:
        self._counter.labels(key=self.key, name=name or "").inc(n)


class Timer:
    """
    Started on construction; ``record`` observes the elapsed time once.

    Later calls are ignored and return None so that a timer shared by several
    completion paths cannot double count.
    """

    def __init__(self, histogram: Histogram, key: Sequence[str]):
        self._hist = histogram
        self.key = _key_label(key)
        self._t0 = time.perf_counter()
        self._recorded = False

    @property
    def recorded(self) -> bool:
        return self._recorded

    def record(self, *, name: Optional[str] = None) -> Optional[float]:
        if self._recorded:
            return None
        self._recorded = True
        elapsed = max(0.0, time.perf_counter() - self._t0)
        self._hist.labels(key=self.key, name=name or "").observe(elapsed)
        return elapsed


class Metrics:
    """
    Metrics backend handed to every component of a host.

    Usage:

        metrics = Metrics(prefix="resthost")
        metrics.meter(["widgets-list", "http", "errors"]).record(1, name="HTTP_API_ERRORS")
        timer = metrics.timer(["widgets-list", "http", "duration"])
        ...
        timer.record(name="HTTP_API_DURATION")
    """

    def __init__(self, prefix: str = "resthost", *, registry: Optional[CollectorRegistry] = None):
        self.prefix = prefix
        self.registry = registry if registry is not None else CollectorRegistry()
        self._ns = _metric_namespace(prefix)

        self._events = Counter(
            f"{self._ns}_events",
            "Events recorded by resthost meters",
            ["key", "name"],
            registry=self.registry,
        )
        self._durations = Histogram(
            f"{self._ns}_duration_seconds",
            "Durations recorded by resthost timers (s)",
            ["key", "name"],
            buckets=_LATENCY_BUCKETS,
            registry=self.registry,
        )

        # Provider-level authorization instruments (shared by all routes).
        self.authorization_checks = self.meter(["authorization", "checks"])
        self.authorization_errors = self.meter(["authorization", "errors"])

    # ------------------------------------------------------------------ #
    # Factories
    # ------------------------------------------------------------------ #

    def meter(self, key: Sequence[str]) -> Meter:
        return Meter(self._events, key)

    def timer(self, key: Sequence[str]) -> Timer:
        return Timer(self._durations, key)

    def authorization_timer(self) -> Timer:
        return self.timer(["authorization", "duration"])

    # ------------------------------------------------------------------ #
    # Read side (exposition / introspection)
    # ------------------------------------------------------------------ #

    def count(self, key: Sequence[str], name: str = "") -> float:
        """Current value of a meter, 0.0 when it never recorded."""
        v = self.registry.get_sample_value(
            f"{self._ns}_events_total",
            {"key": _key_label(key), "name": name},
        )
        return v or 0.0

    def observations(self, key: Sequence[str], name: str = "") -> float:
        """Number of timer observations for a key/name pair."""
        v = self.registry.get_sample_value(
            f"{self._ns}_duration_seconds_count",
            {"key": _key_label(key), "name": name},
        )
        return v or 0.0

    def exposition(self) -> bytes:
        return generate_latest(self.registry)

    content_type = CONTENT_TYPE_LATEST


__all__ = ["Meter", "Timer", "Metrics"]
