"""Ticket lifecycle domain models and services."""

from .access import TicketAction, VisibilityScope, is_allowed, visibility_scope
from .errors import (
    BookingNotFoundError,
    InvalidTicketTransitionError,
    TicketAccessDeniedError,
    TicketNotFoundError,
    TicketNumberConflictError,
    TicketServiceError,
    TicketValidationError,
)
from .models import (
    ServiceType,
    Ticket,
    TicketAttachment,
    TicketCategory,
    TicketComment,
    TicketFilter,
    TicketHistoryEntry,
    TicketPage,
    TicketPriority,
    TicketStatistics,
    TicketUpdate,
)
from .repository import TicketRepository
from .service import TicketEventNotifier, TicketService
from .state import TicketStateMachine, TicketStatus

__all__ = [
    "BookingNotFoundError",
    "InvalidTicketTransitionError",
    "ServiceType",
    "Ticket",
    "TicketAccessDeniedError",
    "TicketAction",
    "TicketAttachment",
    "TicketCategory",
    "TicketComment",
    "TicketEventNotifier",
    "TicketFilter",
    "TicketHistoryEntry",
    "TicketNotFoundError",
    "TicketNumberConflictError",
    "TicketPage",
    "TicketPriority",
    "TicketRepository",
    "TicketService",
    "TicketServiceError",
    "TicketStateMachine",
    "TicketStatistics",
    "TicketStatus",
    "TicketUpdate",
    "TicketValidationError",
    "VisibilityScope",
    "is_allowed",
    "visibility_scope",
]
