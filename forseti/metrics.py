"""Small metrics registry rendered in the Prometheus text exposition format."""

from __future__ import annotations

import bisect
import math
import threading
from typing import Iterable

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    """Return ``count`` bucket bounds, the first ``start``, each ``factor`` times the previous."""
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start value")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    buckets = []
    for _ in range(count):
        buckets.append(start)
        start *= factor
    return buckets


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    text = repr(float(value))
    return text[:-2] if text.endswith(".0") else text


def _escape(text: str, quote: bool = False) -> str:
    text = text.replace("\\", "\\\\").replace("\n", "\\n")
    return text.replace('"', '\\"') if quote else text


def _labels(pairs: Iterable[tuple[str, str]]) -> str:
    body = ",".join(f'{key}="{_escape(value, quote=True)}"' for key, value in pairs)
    return f"{{{body}}}" if body else ""


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help: str, namespace: str = "", subsystem: str = "") -> None:
        self.name = "_".join(part for part in (namespace, subsystem, name) if part)
        self.help = help
        self._lock = threading.Lock()

    def _samples(self) -> list[str]:
        return []

    def _render(self) -> list[str]:
        return [f"# HELP {self.name} {_escape(self.help)}", f"# TYPE {self.name} {self.kind}", *self._samples()]


class Counter(_Metric):
    """A value that only goes up."""

    kind = "counter"

    def __init__(self, name: str, help: str, namespace: str = "", subsystem: str = "") -> None:
        super().__init__(name, help, namespace, subsystem)
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount

    def _samples(self) -> list[str]:
        return [f"{self.name} {_format_value(self._value)}"]


class Gauge(_Metric):
    """A value that goes up and down."""

    kind = "gauge"

    def __init__(self, name: str, help: str, namespace: str = "", subsystem: str = "") -> None:
        super().__init__(name, help, namespace, subsystem)
        self._value = 0.0

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value -= amount

    def _samples(self) -> list[str]:
        return [f"{self.name} {_format_value(self._value)}"]


class Histogram(_Metric):
    """Observations counted into buckets, optionally split by labels."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        buckets: Iterable[float] | None = None,
        namespace: str = "",
        subsystem: str = "",
        label_names: Iterable[str] = (),
    ) -> None:
        super().__init__(name, help, namespace, subsystem)
        bounds = [float(b) for b in (DEFAULT_BUCKETS if buckets is None else buckets)]
        if bounds and math.isinf(bounds[-1]):
            bounds.pop()
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be in increasing order")
        self.buckets = tuple(bounds)
        self.label_names = tuple(label_names)
        self._series: dict[tuple[str, ...], list] = {}

    def _key(self, labels: dict[str, str]) -> tuple[str, ...]:
        if set(labels) != set(self.label_names):
            raise ValueError(f"expected labels {sorted(self.label_names)}, got {sorted(labels)}")
        return tuple(str(labels[name]) for name in self.label_names)

    def observe(self, value: float, **kwargs: str) -> None:
        key = self._key(kwargs)
        with self._lock:
            series = self._series.setdefault(key, [[0] * (len(self.buckets) + 1), 0.0, 0])
            series[0][bisect.bisect_left(self.buckets, value)] += 1
            series[1] += value
            series[2] += 1

    def sample_count(self, **kwargs: str) -> int:
        series = self._series.get(self._key(kwargs))
        return series[2] if series else 0

    def sample_sum(self, **kwargs: str) -> float:
        series = self._series.get(self._key(kwargs))
        return series[1] if series else 0.0

    def _samples(self) -> list[str]:
        lines = []
        with self._lock:
            series_items = sorted((key, (list(s[0]), s[1], s[2])) for key, s in self._series.items())
        if not series_items and not self.label_names:
            series_items = [((), ([0] * (len(self.buckets) + 1), 0.0, 0))]
        for key, (counts, total, count) in series_items:
            pairs = sorted(zip(self.label_names, key))
            cumulative = 0
            for bound, hits in zip((*self.buckets, math.inf), counts):
                cumulative += hits
                labels = _labels([*pairs, ("le", _format_value(bound))])
                lines.append(f"{self.name}_bucket{labels} {cumulative}")
            lines.append(f"{self.name}_sum{_labels(pairs)} {_format_value(total)}")
            lines.append(f"{self.name}_count{_labels(pairs)} {count}")
        return lines


class Registry:
    """A set of uniquely named metrics."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric: _Metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"duplicate metrics collector registration attempted: {metric.name}")
            self._metrics[metric.name] = metric

    def render(self) -> str:
        with self._lock:
            metrics = [self._metrics[name] for name in sorted(self._metrics)]
        lines = [line for metric in metrics for line in metric._render()]
        return "\n".join(lines) + "\n" if lines else ""


def _loading_duration(subsystem: str) -> Histogram:
    return Histogram(
        "load_durations_seconds",
        "http request latency distributions.",
        buckets=exponential_buckets(0.001, 1.5, 15),
        namespace="forseti",
        subsystem=subsystem,
    )


def _loading_errors(subsystem: str) -> Counter:
    return Counter(
        "loading_errors", "current number of http request being served", namespace="forseti", subsystem=subsystem
    )


DEPARTURE_LOADING_DURATION = _loading_duration("departures")
DEPARTURE_LOADING_ERRORS = _loading_errors("departures")
EQUIPMENTS_LOADING_DURATION = _loading_duration("equipments")
EQUIPMENTS_LOADING_ERRORS = _loading_errors("equipments")
PARKINGS_LOADING_DURATION = _loading_duration("parkings")
PARKINGS_LOADING_ERRORS = _loading_errors("parkings")
FREE_FLOATINGS_LOADING_DURATION = _loading_duration("free_floatings")
FREE_FLOATINGS_LOADING_ERRORS = _loading_errors("free_floatings")