"""Database models and utilities."""

from .models import (
    BookingTable,
    TicketAttachmentTable,
    TicketCommentTable,
    TicketHistoryTable,
    TicketNumberSequenceTable,
    TicketTable,
    UserTable,
)

__all__ = [
    "BookingTable",
    "TicketAttachmentTable",
    "TicketCommentTable",
    "TicketHistoryTable",
    "TicketNumberSequenceTable",
    "TicketTable",
    "UserTable",
]
