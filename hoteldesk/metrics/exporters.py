"""Render the registry in the Prometheus text exposition format."""
from __future__ import annotations

import logging

from .base import LabelValues, Metric
from .registry import MetricsRegistry

logger = logging.getLogger(__name__)


def _label_text(metric: Metric, values: LabelValues) -> str:
    if not values:
        return ""
    pairs = ",".join(f'{name}="{value}"' for name, value in zip(metric.label_names, values))
    return "{" + pairs + "}"


class PrometheusExporter:
    def __init__(self, registry: MetricsRegistry) -> None:
        self.registry = registry

    def build_payload(self) -> str:
        lines: list[str] = []
        for metric in self.registry.metrics():
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for suffix, values, value in metric.samples():
                lines.append(f"{metric.name}{suffix}{_label_text(metric, values)} {value}")
        return "\n".join(lines) + "\n"

    def export(self) -> str:
        payload = self.build_payload()
        logger.debug("Rendered %d metrics into %d bytes", len(self.registry.metrics()), len(payload))
        return payload
