from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping, Sequence

from .state import TicketStatus


class TicketPriority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class ServiceType(str, Enum):
    CLEANING = "Cleaning"
    ROOM_SERVICE = "RoomService"
    MAINTENANCE = "Maintenance"
    GENERAL = "General"


class TicketCategory(str, Enum):
    INCIDENT = "Incident"
    SERVICE_REQUEST = "ServiceRequest"
    PROBLEM = "Problem"
    CHANGE = "Change"


class RiskLevel(str, Enum):
    """Scale shared by the derived risk level and impact fields."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class SortField(str, Enum):
    PRIORITY = "priority"
    STATUS = "status"
    DUE_DATE = "dueDate"
    TITLE = "title"
    CREATED_AT = "createdAt"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(slots=True)
class Ticket:
    """Service desk ticket aggregate root."""

    id: str
    ticket_number: str
    title: str
    description: str
    service_type: ServiceType
    category: TicketCategory
    sub_category: str | None
    priority: TicketPriority
    status: TicketStatus
    risk_level: RiskLevel
    impact: RiskLevel
    requester_id: str
    assignee_id: str | None
    booking_id: str | None
    room_id: str | None
    hotel_id: str | None
    due_date: datetime | None
    resolved_at: datetime | None
    closed_at: datetime | None
    resolution: str | None
    work_notes: str | None
    created_at: datetime
    updated_at: datetime
    comments_count: int = 0
    attachments_count: int = 0


@dataclass(slots=True)
class TicketComment:
    """Comment posted on a ticket; internal comments are hidden from guests."""

    id: str
    ticket_id: str
    author_id: str
    comment: str
    is_internal: bool
    created_at: datetime


@dataclass(slots=True)
class TicketAttachment:
    """Reference to a stored file attached to a ticket."""

    id: str
    ticket_id: str
    file_name: str
    file_path: str
    content_type: str
    file_size: int
    uploaded_by_id: str
    created_at: datetime


@dataclass(slots=True)
class TicketHistoryEntry:
    """Immutable audit record of a single field change."""

    id: str
    ticket_id: str
    field_name: str
    old_value: str | None
    new_value: str | None
    changed_by_id: str
    change_reason: str
    created_at: datetime


@dataclass(slots=True)
class TicketUpdate:
    """Partial update; ``None`` leaves the field untouched."""

    title: str | None = None
    description: str | None = None
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    assignee_id: str | None = None
    resolution: str | None = None
    work_notes: str | None = None
    due_date: datetime | None = None


@dataclass(slots=True)
class TicketFilter:
    """Optional listing criteria, combined with AND."""

    search: str | None = None
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    service_type: ServiceType | None = None
    category: TicketCategory | None = None
    requester_id: str | None = None
    assignee_id: str | None = None
    booking_id: str | None = None
    room_id: str | None = None
    hotel_id: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    due_from: datetime | None = None
    due_to: datetime | None = None
    sort_by: SortField = SortField.CREATED_AT
    sort_direction: SortDirection = SortDirection.DESC
    page: int = 1
    page_size: int = 20


@dataclass(slots=True)
class TicketPage:
    items: Sequence[Ticket]
    total: int
    page: int
    page_size: int


@dataclass(slots=True)
class TicketStatistics:
    total_tickets: int
    by_status: Mapping[str, int] = field(default_factory=dict)
    by_priority: Mapping[str, int] = field(default_factory=dict)
    by_service_type: Mapping[str, int] = field(default_factory=dict)
    by_category: Mapping[str, int] = field(default_factory=dict)
    average_resolution_time_days: float = 0.0


@dataclass(slots=True)
class BookingRef:
    """Booking collaborator record; only ownership matters here."""

    id: str
    user_id: str
    room_id: str | None = None
    hotel_id: str | None = None


@dataclass(slots=True)
class UserRef:
    id: str
    username: str
    email: str | None = None
