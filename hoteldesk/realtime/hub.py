from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from hoteldesk.metrics import MetricsRegistry, metrics_registry
from hoteldesk.metrics.definitions import REALTIME_CONNECTIONS
from hoteldesk.security import User

from .connections import ClientConnection, ConnectionRegistry
from .events import (
    Command,
    Connected,
    Error,
    JoinedTicket,
    JoinGroup,
    LeaveGroup,
    MessageReceived,
    SendAssignmentNotification,
    SendMessage,
    SendStatusUpdate,
    SendTicketClosedNotification,
    SendTypingIndicator,
    StatusUpdated,
    TicketAssigned,
    TicketClosed,
    TypingIndicator,
    UserJoined,
    UserLeft,
    command_adapter,
)

logger = logging.getLogger(__name__)

AccessChecker = Callable[[str, User], Awaitable[bool]]

NOT_JOINED_MESSAGE = "You are not connected to this ticket chat"
ACCESS_DENIED_MESSAGE = "You do not have access to this ticket"
INTERNAL_DENIED_MESSAGE = "Only staff members may send internal messages"
UNEXPECTED_MESSAGE = "Something went wrong while handling your request"


class TicketHub:
    """Per-connection operations of the realtime ticket channel.

    Nothing here raises to the transport; failures are reported to the
    calling connection as ``Error`` events.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        access_checker: AccessChecker,
        *,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._registry = registry
        self._can_view = access_checker
        self._metrics = metrics or metrics_registry
        self._handlers: dict[type, Callable[[ClientConnection, Any], Awaitable[None]]] = {
            JoinGroup: lambda connection, command: self.join_group(connection, command.ticket_id),
            LeaveGroup: lambda connection, command: self.leave_group(connection, command.ticket_id),
            SendMessage: lambda connection, command: self.send_message(
                connection, command.ticket_id, command.message, is_internal=command.is_internal
            ),
            SendTypingIndicator: lambda connection, command: self.send_typing_indicator(
                connection, command.ticket_id, command.is_typing
            ),
            SendStatusUpdate: lambda connection, command: self.send_status_update(
                connection, command.ticket_id, command.status, command.message
            ),
            SendAssignmentNotification: lambda connection, command: self.send_assignment_notification(
                command.ticket_id, command.assignee_id, command.assignee_name
            ),
            SendTicketClosedNotification: lambda connection, command: self.send_ticket_closed_notification(
                command.ticket_id, command.resolution, command.closed_by
            ),
        }

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    async def connect(self, connection: ClientConnection) -> None:
        await self._registry.register(connection)
        self._metrics.counter(REALTIME_CONNECTIONS).inc()
        user = connection.user
        logger.info("User %s (%s) with role %s connected", user.username, user.id, user.role.value)
        await self._registry.send(
            connection,
            Connected(user_id=user.id, username=user.username, role=user.role.value),
        )

    async def disconnect(self, connection: ClientConnection) -> None:
        groups = await self._registry.unregister(connection)
        logger.info("User %s disconnected, left %d groups", connection.user.id, len(groups))

    async def join_group(self, connection: ClientConnection, ticket_id: str) -> None:
        user = connection.user
        if not await self._can_view(ticket_id, user):
            logger.warning("User %s denied joining ticket %s", user.id, ticket_id)
            await self._error(connection, ACCESS_DENIED_MESSAGE)
            return

        added = await self._registry.add_to_group(connection, ticket_id)
        if added:
            logger.info("User %s joined ticket %s", user.id, ticket_id)
            await self._registry.broadcast_to_group(
                ticket_id,
                UserJoined(ticket_id=ticket_id, user_id=user.id, username=user.username),
                exclude=connection,
            )
        await self._registry.send(
            connection,
            JoinedTicket(ticket_id=ticket_id, message=f"You are now connected to ticket {ticket_id}"),
        )

    async def leave_group(self, connection: ClientConnection, ticket_id: str) -> None:
        if not await self._registry.remove_from_group(connection, ticket_id):
            return
        user = connection.user
        logger.info("User %s left ticket %s", user.id, ticket_id)
        await self._registry.broadcast_to_group(
            ticket_id, UserLeft(ticket_id=ticket_id, user_id=user.id, username=user.username)
        )

    async def send_message(
        self, connection: ClientConnection, ticket_id: str, message: str, *, is_internal: bool = False
    ) -> None:
        user = connection.user
        if not await self._registry.is_member(connection, ticket_id):
            await self._error(connection, NOT_JOINED_MESSAGE)
            return
        if is_internal and not user.is_staff:
            await self._error(connection, INTERNAL_DENIED_MESSAGE)
            return

        event = MessageReceived(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            message=message,
            author_id=user.id,
            author_name=user.username,
            is_internal=is_internal,
        )
        await self._registry.broadcast_to_group(
            ticket_id,
            event,
            predicate=(lambda member: member.user.is_staff) if is_internal else None,
        )

    async def send_typing_indicator(self, connection: ClientConnection, ticket_id: str, is_typing: bool) -> None:
        if not await self._registry.is_member(connection, ticket_id):
            await self._error(connection, NOT_JOINED_MESSAGE)
            return
        user = connection.user
        await self._registry.broadcast_to_group(
            ticket_id,
            TypingIndicator(ticket_id=ticket_id, user_id=user.id, username=user.username, is_typing=is_typing),
            exclude=connection,
        )

    async def send_status_update(
        self, connection: ClientConnection, ticket_id: str, status: str, message: str = ""
    ) -> None:
        user = connection.user
        logger.info("Status update for ticket %s: %s", ticket_id, status)
        await self._registry.broadcast_to_group(
            ticket_id,
            StatusUpdated(
                ticket_id=ticket_id,
                status=status,
                message=message,
                updated_by=user.username,
                updated_by_id=user.id,
            ),
        )

    async def send_assignment_notification(self, ticket_id: str, assignee_id: str, assignee_name: str) -> None:
        await self._registry.broadcast_to_group(
            ticket_id,
            TicketAssigned(ticket_id=ticket_id, assignee_id=assignee_id, assignee_name=assignee_name),
        )

    async def send_ticket_closed_notification(self, ticket_id: str, resolution: str, closed_by: str) -> None:
        await self._registry.broadcast_to_group(
            ticket_id,
            TicketClosed(ticket_id=ticket_id, resolution=resolution, closed_by=closed_by),
        )

    async def dispatch(self, connection: ClientConnection, payload: Any) -> None:
        """Validate a decoded client command and run it."""

        try:
            command: Command = command_adapter.validate_python(payload)
        except ValidationError as exc:
            await self._error(connection, f"Invalid command: {_describe(exc)}")
            return

        handler = self._handlers[type(command)]
        try:
            await handler(connection, command)
        except Exception:
            logger.exception("Realtime command %s failed for user %s", command.action, connection.user.id)
            await self._error(connection, UNEXPECTED_MESSAGE)

    async def handle_text(self, connection: ClientConnection, raw: str) -> None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            await self._error(connection, "Malformed JSON payload")
            return
        await self.dispatch(connection, payload)

    async def _error(self, connection: ClientConnection, message: str) -> None:
        await self._registry.send(connection, Error(message=message))


def _describe(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "unknown error"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
