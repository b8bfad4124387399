"""Counter and distribution metrics keyed by label values."""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from time import perf_counter
from typing import Dict, Iterable, Iterator, Mapping, Tuple

LabelValues = Tuple[str, ...]
Sample = Tuple[str, LabelValues, float]


class Metric(ABC):
    """A named metric whose values are partitioned by a fixed label set."""

    kind: str = "untyped"

    def __init__(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> None:
        self.name = name
        self.description = description
        self.label_names: Tuple[str, ...] = tuple(label_names or ())
        self._lock = Lock()

    def _key(self, labels: Mapping[str, str] | None) -> LabelValues:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"Metric '{self.name}' got unexpected labels {sorted(unknown)}")
        missing = [label for label in self.label_names if label not in labels]
        if missing:
            raise ValueError(f"Metric '{self.name}' is missing labels {missing}")
        return tuple(str(labels[label]) for label in self.label_names)

    @abstractmethod
    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        """Current values per label combination."""

    @abstractmethod
    def samples(self) -> Iterator[Sample]:
        """Yield ``(suffix, label values, value)`` rows for exposition."""


class CounterMetric(Metric):
    kind = "counter"

    def __init__(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._counts: Dict[LabelValues, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, *, labels: Mapping[str, str] | None = None) -> None:
        if amount < 0:
            raise ValueError(f"Counter '{self.name}' cannot decrease")
        key = self._key(labels)
        with self._lock:
            self._counts[key] += amount

    def value(self, *, labels: Mapping[str, str] | None = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._counts.get(key, 0.0)

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        with self._lock:
            return {key: {"value": count} for key, count in self._counts.items()}

    def samples(self) -> Iterator[Sample]:
        for key, values in self.snapshot().items():
            yield "", key, values["value"]


@dataclass
class DistributionStats:
    count: int = 0
    total: float = 0.0
    low: float | None = None
    high: float | None = None

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.low = value if self.low is None else min(self.low, value)
        self.high = value if self.high is None else max(self.high, value)

    def as_dict(self) -> Dict[str, float]:
        return {
            "count": float(self.count),
            "sum": self.total,
            "min": self.low or 0.0,
            "max": self.high or 0.0,
            "avg": self.total / self.count if self.count else 0.0,
        }


class DistributionMetric(Metric):
    """Running count/sum/min/max of observed values, exported as a summary."""

    kind = "summary"

    def __init__(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._stats: Dict[LabelValues, DistributionStats] = defaultdict(DistributionStats)

    def observe(self, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._stats[key].add(value)

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        with self._lock:
            return {key: stats.as_dict() for key, stats in self._stats.items()}

    def samples(self) -> Iterator[Sample]:
        for key, values in self.snapshot().items():
            yield "_count", key, values["count"]
            yield "_sum", key, values["sum"]


@contextmanager
def track_duration(metric: DistributionMetric, *, labels: Mapping[str, str] | None = None) -> Iterator[None]:
    """Observe the wall time of the ``with`` body in seconds, even when it raises."""

    started = perf_counter()
    try:
        yield
    finally:
        metric.observe(perf_counter() - started, labels=labels)
