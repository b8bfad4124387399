from __future__ import annotations

from enum import Enum
from typing import Mapping


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "Open"
    IN_PROGRESS = "InProgress"
    RESOLVED = "Resolved"
    CLOSED = "Closed"
    CANCELLED = "Cancelled"


TERMINAL_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.CLOSED, TicketStatus.CANCELLED})


class TicketStateMachine:
    """Validate ticket lifecycle transitions.

    In permissive mode every transition is accepted, matching the historical
    behaviour of the desk where any authorised caller may set any status.
    Strict mode applies the transition table below.
    """

    _TRANSITIONS: Mapping[TicketStatus, frozenset[TicketStatus]] = {
        TicketStatus.OPEN: frozenset(
            {TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED, TicketStatus.CANCELLED}
        ),
        TicketStatus.IN_PROGRESS: frozenset(
            {TicketStatus.RESOLVED, TicketStatus.CLOSED, TicketStatus.CANCELLED}
        ),
        TicketStatus.RESOLVED: frozenset({TicketStatus.CLOSED, TicketStatus.IN_PROGRESS}),
        TicketStatus.CLOSED: frozenset(),
        TicketStatus.CANCELLED: frozenset(),
    }

    def __init__(self, *, strict: bool = False) -> None:
        self.strict = strict

    @staticmethod
    def initial_state() -> TicketStatus:
        return TicketStatus.OPEN

    def can_transition(self, current: TicketStatus, new: TicketStatus) -> bool:
        if current == new or not self.strict:
            return True
        return new in self._TRANSITIONS.get(current, frozenset())

    def assert_transition(self, current: TicketStatus, new: TicketStatus) -> None:
        if not self.can_transition(current, new):
            raise ValueError(f"Invalid ticket status transition: {current.value} -> {new.value}")
