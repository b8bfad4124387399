"""Service level targets and derived risk fields."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Mapping

from .models import RiskLevel, ServiceType, TicketPriority

DEFAULT_SLA_WINDOW = timedelta(days=1)

SLA_WINDOWS: Mapping[TicketPriority, timedelta] = {
    TicketPriority.CRITICAL: timedelta(hours=2),
    TicketPriority.HIGH: timedelta(hours=8),
    TicketPriority.MEDIUM: timedelta(days=1),
    TicketPriority.LOW: timedelta(days=3),
}


def sla_window(priority: TicketPriority | str | None) -> timedelta:
    try:
        return SLA_WINDOWS[TicketPriority(priority)]
    except ValueError:
        return DEFAULT_SLA_WINDOW


def calculate_due_date(priority: TicketPriority | str | None, start: datetime) -> datetime:
    """Return the resolution deadline for a ticket opened at ``start``."""

    return start + sla_window(priority)


def calculate_risk_level(priority: TicketPriority, service_type: ServiceType) -> RiskLevel:
    if priority == TicketPriority.CRITICAL or service_type == ServiceType.MAINTENANCE:
        return RiskLevel.HIGH
    if priority == TicketPriority.HIGH:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def calculate_impact(priority: TicketPriority, service_type: ServiceType) -> RiskLevel:
    if priority == TicketPriority.CRITICAL:
        return RiskLevel.CRITICAL
    if priority == TicketPriority.HIGH or service_type == ServiceType.MAINTENANCE:
        return RiskLevel.HIGH
    if priority == TicketPriority.MEDIUM:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW
