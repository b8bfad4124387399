"""Metric definitions used across the application."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


TICKETS_CREATED = "tickets_created_total"
TICKET_HISTORY_ENTRIES = "ticket_history_entries_total"
TICKET_NUMBER_CONFLICTS = "ticket_number_conflicts_total"
TICKET_ACCESS_DENIED = "ticket_access_denied_total"
TICKET_OPERATION_DURATION = "ticket_operation_duration_seconds"
REALTIME_EVENTS_SENT = "realtime_events_sent_total"
REALTIME_SEND_FAILURES = "realtime_send_failures_total"
REALTIME_CONNECTIONS = "realtime_connections_total"


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name=TICKETS_CREATED,
        metric_type="counter",
        description="Number of tickets created.",
        label_names=("service_type",),
    ),
    MetricDefinition(
        name=TICKET_HISTORY_ENTRIES,
        metric_type="counter",
        description="Number of change control rows written.",
        label_names=("field",),
    ),
    MetricDefinition(
        name=TICKET_NUMBER_CONFLICTS,
        metric_type="counter",
        description="Ticket number allocations that collided and were retried.",
    ),
    MetricDefinition(
        name=TICKET_ACCESS_DENIED,
        metric_type="counter",
        description="Ticket operations rejected by the capability check.",
        label_names=("action",),
    ),
    MetricDefinition(
        name=TICKET_OPERATION_DURATION,
        metric_type="distribution",
        description="Duration of ticket lifecycle operations in seconds.",
        label_names=("operation",),
    ),
    MetricDefinition(
        name=REALTIME_EVENTS_SENT,
        metric_type="counter",
        description="Realtime events delivered to client connections.",
        label_names=("event",),
    ),
    MetricDefinition(
        name=REALTIME_SEND_FAILURES,
        metric_type="counter",
        description="Realtime deliveries that failed and evicted the connection.",
    ),
    MetricDefinition(
        name=REALTIME_CONNECTIONS,
        metric_type="counter",
        description="Realtime client connections accepted.",
    ),
)
