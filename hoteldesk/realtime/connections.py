from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Iterable, Protocol

from hoteldesk.metrics import MetricsRegistry, metrics_registry
from hoteldesk.metrics.definitions import REALTIME_EVENTS_SENT, REALTIME_SEND_FAILURES
from hoteldesk.security import User

from .events import ServerEvent

logger = logging.getLogger(__name__)

ConnectionPredicate = Callable[["ClientConnection"], bool]


class MessageSink(Protocol):
    """Transport side of a connection; a FastAPI ``WebSocket`` satisfies it."""

    async def send_json(self, data: Any) -> None:
        ...


class ClientConnection:
    """A live client session bound to an authenticated identity."""

    def __init__(self, user: User, sink: MessageSink, *, connection_id: str | None = None) -> None:
        self.id = connection_id or str(uuid.uuid4())
        self.user = user
        self._sink = sink
        # one writer at a time per socket
        self._send_lock = asyncio.Lock()

    async def send(self, event: ServerEvent) -> None:
        async with self._send_lock:
            await self._sink.send_json(event.to_wire())

    def __repr__(self) -> str:
        return f"ClientConnection(id={self.id!r}, user={self.user.id!r})"


class ConnectionRegistry:
    """Live connections and the per-ticket groups they joined.

    Membership changes and snapshots happen under one lock; sends happen
    outside it so a slow client never blocks joins elsewhere. A member whose
    send fails is evicted from every group.
    """

    def __init__(self, *, metrics: MetricsRegistry | None = None) -> None:
        self._lock = asyncio.Lock()
        self._connections: dict[str, ClientConnection] = {}
        self._groups: dict[str, set[str]] = {}
        self._memberships: dict[str, set[str]] = {}
        self._metrics = metrics or metrics_registry

    @staticmethod
    def group_name(ticket_id: str) -> str:
        return f"Ticket_{ticket_id}"

    async def register(self, connection: ClientConnection) -> None:
        async with self._lock:
            self._connections[connection.id] = connection
            self._memberships.setdefault(connection.id, set())

    async def unregister(self, connection: ClientConnection) -> list[str]:
        """Drop the connection and return the groups it was removed from."""

        async with self._lock:
            return self._drop(connection.id)

    async def add_to_group(self, connection: ClientConnection, ticket_id: str) -> bool:
        group = self.group_name(ticket_id)
        async with self._lock:
            if connection.id not in self._connections:
                return False
            members = self._groups.setdefault(group, set())
            if connection.id in members:
                return False
            members.add(connection.id)
            self._memberships[connection.id].add(group)
            return True

    async def remove_from_group(self, connection: ClientConnection, ticket_id: str) -> bool:
        group = self.group_name(ticket_id)
        async with self._lock:
            members = self._groups.get(group)
            if not members or connection.id not in members:
                return False
            self._discard(group, connection.id)
            return True

    async def is_member(self, connection: ClientConnection, ticket_id: str) -> bool:
        async with self._lock:
            return connection.id in self._groups.get(self.group_name(ticket_id), ())

    async def group_size(self, ticket_id: str) -> int:
        async with self._lock:
            return len(self._groups.get(self.group_name(ticket_id), ()))

    async def connection_count(self) -> int:
        async with self._lock:
            return len(self._connections)

    async def send(self, connection: ClientConnection, event: ServerEvent) -> bool:
        return await self._deliver([connection], event) == 1

    async def broadcast_to_group(
        self,
        ticket_id: str,
        event: ServerEvent,
        *,
        exclude: ClientConnection | None = None,
        predicate: ConnectionPredicate | None = None,
    ) -> int:
        group = self.group_name(ticket_id)
        async with self._lock:
            targets = [
                self._connections[connection_id]
                for connection_id in self._groups.get(group, ())
                if connection_id in self._connections
            ]
        if exclude is not None:
            targets = [connection for connection in targets if connection.id != exclude.id]
        if predicate is not None:
            targets = [connection for connection in targets if predicate(connection)]
        return await self._deliver(targets, event)

    async def broadcast_all(self, event: ServerEvent, *, predicate: ConnectionPredicate | None = None) -> int:
        async with self._lock:
            targets = list(self._connections.values())
        if predicate is not None:
            targets = [connection for connection in targets if predicate(connection)]
        return await self._deliver(targets, event)

    async def _deliver(self, targets: Iterable[ClientConnection], event: ServerEvent) -> int:
        targets = list(targets)
        if not targets:
            return 0
        results = await asyncio.gather(
            *(connection.send(event) for connection in targets), return_exceptions=True
        )
        failed = []
        for connection, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("Dropping connection %s after failed send: %r", connection.id, result)
                failed.append(connection)

        delivered = len(targets) - len(failed)
        event_name = getattr(event, "event", type(event).__name__)
        if delivered:
            self._metrics.counter(REALTIME_EVENTS_SENT, label_names=("event",)).inc(
                delivered, labels={"event": event_name}
            )
        if failed:
            self._metrics.counter(REALTIME_SEND_FAILURES).inc(len(failed))
            async with self._lock:
                for connection in failed:
                    self._drop(connection.id)
        return delivered

    def _drop(self, connection_id: str) -> list[str]:
        self._connections.pop(connection_id, None)
        groups = sorted(self._memberships.pop(connection_id, set()))
        for group in groups:
            self._discard(group, connection_id)
        return groups

    def _discard(self, group: str, connection_id: str) -> None:
        members = self._groups.get(group)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._groups[group]
        memberships = self._memberships.get(connection_id)
        if memberships is not None:
            memberships.discard(group)
