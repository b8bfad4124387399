"""In-process metrics for ticket lifecycle and realtime delivery."""
from .definitions import DEFAULT_METRIC_DEFINITIONS, MetricDefinition
from .exporters import PrometheusExporter
from .registry import MetricsRegistry

metrics_registry = MetricsRegistry()


def register_default_metrics(registry: MetricsRegistry | None = None) -> None:
    """Create every default metric so ``/metrics`` lists them before first use."""
    target = registry or metrics_registry
    for definition in DEFAULT_METRIC_DEFINITIONS:
        target.register(definition)


register_default_metrics()

__all__ = [
    "MetricDefinition",
    "MetricsRegistry",
    "PrometheusExporter",
    "metrics_registry",
    "register_default_metrics",
]
