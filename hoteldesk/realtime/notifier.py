"""Fan out committed ticket lifecycle events to connected clients."""

from __future__ import annotations

import logging

from hoteldesk.security import User
from hoteldesk.tickets.access import visibility_scope
from hoteldesk.tickets.models import Ticket, TicketComment, UserRef

from .connections import ClientConnection, ConnectionRegistry
from .events import CommentAdded, TicketAssigned, TicketClosed, TicketCreated, TicketUpdated

logger = logging.getLogger(__name__)


def _staff_only(connection: ClientConnection) -> bool:
    return connection.user.is_staff


class TicketNotifier:
    """Lifecycle event relay used by :class:`~hoteldesk.tickets.TicketService`."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    async def ticket_created(self, ticket: Ticket) -> None:
        event = TicketCreated(
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            title=ticket.title,
            service_type=ticket.service_type.value,
            priority=ticket.priority.value,
            requester_id=ticket.requester_id,
            timestamp=ticket.created_at,
        )
        # nobody has joined the new ticket's group yet
        delivered = await self._registry.broadcast_all(
            event, predicate=lambda connection: visibility_scope(connection.user).allows(ticket)
        )
        logger.debug("TicketCreated for %s delivered to %d connections", ticket.id, delivered)

    async def ticket_updated(self, ticket: Ticket, actor: User) -> None:
        await self._registry.broadcast_to_group(
            ticket.id,
            TicketUpdated(
                ticket_id=ticket.id,
                ticket_number=ticket.ticket_number,
                status=ticket.status.value,
                priority=ticket.priority.value,
                updated_by=actor.id,
                timestamp=ticket.updated_at,
            ),
        )

    async def ticket_assigned(self, ticket: Ticket, assignee: UserRef, actor: User) -> None:
        await self._registry.broadcast_to_group(
            ticket.id,
            TicketAssigned(
                ticket_id=ticket.id,
                ticket_number=ticket.ticket_number,
                assignee_id=assignee.id,
                assignee_name=assignee.username,
                assigned_by=actor.id,
                timestamp=ticket.updated_at,
            ),
        )

    async def ticket_closed(self, ticket: Ticket, actor: User) -> None:
        await self._registry.broadcast_to_group(
            ticket.id,
            TicketClosed(
                ticket_id=ticket.id,
                ticket_number=ticket.ticket_number,
                resolution=ticket.resolution or "",
                closed_by=actor.id,
                timestamp=ticket.closed_at or ticket.updated_at,
            ),
        )

    async def comment_added(self, comment: TicketComment, author: User) -> None:
        await self._registry.broadcast_to_group(
            comment.ticket_id,
            CommentAdded(
                comment_id=comment.id,
                ticket_id=comment.ticket_id,
                message=comment.comment,
                author_id=author.id,
                author_name=author.username,
                is_internal=comment.is_internal,
                timestamp=comment.created_at,
            ),
            predicate=_staff_only if comment.is_internal else None,
        )
