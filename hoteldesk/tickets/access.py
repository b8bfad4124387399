"""Capability checks shared by the lifecycle manager and the realtime relay.

Every decision about whether a caller may see or touch a ticket goes through
:func:`is_allowed`. Listing queries use :func:`visibility_scope`, which the
repository renders as SQL, so the single-ticket check and the list filter
cannot drift apart.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from hoteldesk.security import Role, User

from .models import ServiceType, Ticket
from .state import TicketStatus


class TicketAction(str, Enum):
    VIEW = "view"
    MODIFY = "modify"
    ASSIGN = "assign"
    CLOSE = "close"
    DELETE = "delete"


_STAFF_SERVICE_TYPES: Mapping[Role, ServiceType] = {
    Role.CLEANING_STAFF: ServiceType.CLEANING,
    Role.RECEPTION: ServiceType.ROOM_SERVICE,
}

ASSIGNING_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.RECEPTION})


@dataclass(frozen=True, slots=True)
class VisibilityScope:
    """OR-combined criteria describing the tickets a caller may see.

    A scope with no criteria set denies everything.
    """

    unrestricted: bool = False
    requester_id: str | None = None
    assignee_id: str | None = None
    service_type: ServiceType | None = None
    include_open: bool = False

    def allows(self, ticket: Ticket) -> bool:
        if self.unrestricted:
            return True
        if self.requester_id is not None and ticket.requester_id == self.requester_id:
            return True
        if self.assignee_id is not None and ticket.assignee_id == self.assignee_id:
            return True
        if self.service_type is not None and ticket.service_type == self.service_type:
            return True
        return self.include_open and ticket.status == TicketStatus.OPEN


def visibility_scope(user: User) -> VisibilityScope:
    if user.role == Role.ADMIN:
        return VisibilityScope(unrestricted=True)
    if user.role == Role.USER:
        return VisibilityScope(requester_id=user.id)
    service_type = _STAFF_SERVICE_TYPES.get(user.role)
    if service_type is None:
        return VisibilityScope()
    return VisibilityScope(assignee_id=user.id, service_type=service_type, include_open=True)


def _can_modify(user: User, ticket: Ticket) -> bool:
    if user.role == Role.ADMIN:
        return True
    if user.role == Role.USER:
        return ticket.requester_id == user.id
    service_type = _STAFF_SERVICE_TYPES.get(user.role)
    if service_type is None:
        return False
    return ticket.assignee_id == user.id or ticket.service_type == service_type


def is_allowed(user: User, ticket: Ticket, action: TicketAction) -> bool:
    """Return whether ``user`` may perform ``action`` on ``ticket``."""

    if action == TicketAction.VIEW:
        return visibility_scope(user).allows(ticket)
    if action == TicketAction.MODIFY:
        return _can_modify(user, ticket)
    if action == TicketAction.ASSIGN:
        return user.role in ASSIGNING_ROLES
    if action == TicketAction.CLOSE:
        return user.role == Role.ADMIN or user.id in (ticket.requester_id, ticket.assignee_id)
    if action == TicketAction.DELETE:
        return user.role == Role.ADMIN
    return False
