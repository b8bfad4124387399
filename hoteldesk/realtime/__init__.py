"""Realtime fanout of ticket chat and lifecycle events."""

from .connections import ClientConnection, ConnectionRegistry, MessageSink
from .hub import TicketHub
from .notifier import TicketNotifier

__all__ = [
    "ClientConnection",
    "ConnectionRegistry",
    "MessageSink",
    "TicketHub",
    "TicketNotifier",
]
