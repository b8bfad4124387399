"""Process-wide registry of named metrics."""
from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Callable, Dict, Iterable, Iterator, Mapping, Tuple, Type, TypeVar

from .base import CounterMetric, DistributionMetric, Metric, track_duration
from .definitions import MetricDefinition

MetricT = TypeVar("MetricT", bound=Metric)

_KINDS: Dict[str, Type[Metric]] = {
    "counter": CounterMetric,
    "distribution": DistributionMetric,
}


class MetricsRegistry:
    """Holds one metric instance per name.

    Lookups create the metric on first use, so call sites do not depend on
    :func:`~hoteldesk.metrics.register_default_metrics` having run first.
    """

    def __init__(self) -> None:
        self._metrics: Dict[str, Metric] = {}
        self._lock = Lock()

    def register(self, definition: MetricDefinition) -> Metric:
        metric_type = _KINDS.get(definition.metric_type)
        if metric_type is None:
            raise ValueError(f"Unsupported metric type: {definition.metric_type}")
        return self._lookup(
            definition.name,
            metric_type,
            lambda: metric_type(
                definition.name, description=definition.description, label_names=definition.label_names
            ),
        )

    def counter(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> CounterMetric:
        return self._lookup(
            name, CounterMetric, lambda: CounterMetric(name, description=description, label_names=label_names)
        )

    def distribution(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> DistributionMetric:
        return self._lookup(
            name,
            DistributionMetric,
            lambda: DistributionMetric(name, description=description, label_names=label_names),
        )

    def metrics(self) -> Tuple[Metric, ...]:
        with self._lock:
            return tuple(self._metrics.values())

    def snapshot(self) -> Dict[str, Mapping[Tuple[str, ...], Mapping[str, float]]]:
        return {metric.name: metric.snapshot() for metric in self.metrics()}

    @contextmanager
    def time_distribution(
        self,
        name: str,
        *,
        label_names: Iterable[str] | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> Iterator[None]:
        with track_duration(self.distribution(name, label_names=label_names), labels=labels):
            yield

    def _lookup(self, name: str, metric_type: Type[MetricT], factory: Callable[[], MetricT]) -> MetricT:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = factory()
        if not isinstance(metric, metric_type):
            raise TypeError(f"Metric '{name}' is already registered as a {metric.kind}")
        return metric
