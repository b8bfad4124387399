from __future__ import annotations

from typing import Any

import pytest

from hoteldesk.metrics import MetricsRegistry
from hoteldesk.metrics.definitions import REALTIME_CONNECTIONS, REALTIME_SEND_FAILURES
from hoteldesk.realtime import ClientConnection, ConnectionRegistry, TicketHub, TicketNotifier
from hoteldesk.realtime.events import (
    Connected,
    JoinedTicket,
    MessageReceived,
    TypingIndicator,
    UserJoined,
    event_adapter,
)
from hoteldesk.realtime.hub import ACCESS_DENIED_MESSAGE, INTERNAL_DENIED_MESSAGE, NOT_JOINED_MESSAGE
from hoteldesk.security import User
from hoteldesk.tickets.models import TicketComment
from tests.factories import ADMIN, CLEANER, GUEST, GUEST_TWO, T0, make_ticket


class FakeSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, data: Any) -> None:
        self.sent.append(data)

    def events(self, name: str | None = None) -> list[dict[str, Any]]:
        return [payload for payload in self.sent if name is None or payload["event"] == name]

    def names(self) -> list[str]:
        return [payload["event"] for payload in self.sent]


class BrokenSocket(FakeSocket):
    async def send_json(self, data: Any) -> None:
        raise RuntimeError("connection reset")


class Desk:
    """Hub wired to an in-memory visibility table."""

    def __init__(self, metrics: MetricsRegistry) -> None:
        self.visible: dict[str, set[str]] = {}
        self.registry = ConnectionRegistry(metrics=metrics)
        self.hub = TicketHub(self.registry, self.can_view, metrics=metrics)

    async def can_view(self, ticket_id: str, user: User) -> bool:
        return user.id in self.visible.get(ticket_id, set())

    async def connect(self, user: User, socket: FakeSocket | None = None) -> tuple[ClientConnection, FakeSocket]:
        socket = socket or FakeSocket()
        connection = ClientConnection(user, socket)
        await self.hub.connect(connection)
        return connection, socket


@pytest.fixture
def desk(metrics: MetricsRegistry) -> Desk:
    desk = Desk(metrics)
    desk.visible["t1"] = {GUEST.id, CLEANER.id, ADMIN.id}
    return desk


@pytest.mark.asyncio
async def test_connect_acknowledges_identity(desk: Desk, metrics: MetricsRegistry):
    _, socket = await desk.connect(CLEANER)

    [connected] = socket.events("Connected")
    assert connected["userId"] == CLEANER.id
    assert connected["username"] == "cleaning"
    assert connected["role"] == "CleaningStaff"
    assert "timestamp" in connected
    assert metrics.counter(REALTIME_CONNECTIONS).value() == 1


@pytest.mark.asyncio
async def test_chat_between_two_members(desk: Desk):
    guest, guest_socket = await desk.connect(GUEST)
    cleaner, cleaner_socket = await desk.connect(CLEANER)

    await desk.hub.join_group(guest, "t1")
    await desk.hub.join_group(cleaner, "t1")

    assert guest_socket.events("UserJoined")[0]["userId"] == CLEANER.id
    assert cleaner_socket.events("UserJoined") == []
    assert cleaner_socket.events("JoinedTicket")[0]["ticketId"] == "t1"

    await desk.hub.send_message(guest, "t1", "Any update on the towels?")
    await desk.hub.send_typing_indicator(cleaner, "t1", True)

    [received] = cleaner_socket.events("MessageReceived")
    assert received["ticketId"] == "t1"
    assert received["message"] == "Any update on the towels?"
    assert received["authorName"] == "guest"
    assert len(guest_socket.events("MessageReceived")) == 1
    assert guest_socket.events("TypingIndicator")[0]["isTyping"] is True
    assert cleaner_socket.events("TypingIndicator") == []


@pytest.mark.asyncio
async def test_join_denied_sends_error_only_to_caller(desk: Desk):
    guest, guest_socket = await desk.connect(GUEST)
    intruder, intruder_socket = await desk.connect(GUEST_TWO)
    await desk.hub.join_group(guest, "t1")

    await desk.hub.join_group(intruder, "t1")

    assert intruder_socket.events("Error")[0]["message"] == ACCESS_DENIED_MESSAGE
    assert guest_socket.events("UserJoined") == []
    assert await desk.registry.is_member(intruder, "t1") is False


@pytest.mark.asyncio
async def test_non_member_receives_nothing_and_cannot_chat(desk: Desk):
    guest, guest_socket = await desk.connect(GUEST)
    admin, admin_socket = await desk.connect(ADMIN)
    await desk.hub.join_group(guest, "t1")

    await desk.hub.send_message(admin, "t1", "hello")
    await desk.hub.send_typing_indicator(admin, "t1", True)
    await desk.hub.send_message(guest, "t1", "anyone?")

    assert [event["message"] for event in admin_socket.events("Error")] == [NOT_JOINED_MESSAGE, NOT_JOINED_MESSAGE]
    assert admin_socket.events("MessageReceived") == []
    assert guest_socket.events("TypingIndicator") == []
    assert [event["message"] for event in guest_socket.events("MessageReceived")] == ["anyone?"]


@pytest.mark.asyncio
async def test_leave_stops_delivery_and_is_idempotent(desk: Desk):
    guest, guest_socket = await desk.connect(GUEST)
    cleaner, cleaner_socket = await desk.connect(CLEANER)
    await desk.hub.join_group(guest, "t1")
    await desk.hub.join_group(cleaner, "t1")

    await desk.hub.leave_group(guest, "t1")
    await desk.hub.leave_group(guest, "t1")
    await desk.hub.send_message(cleaner, "t1", "Towels are on the way")

    assert len(cleaner_socket.events("UserLeft")) == 1
    assert guest_socket.events("MessageReceived") == []
    assert guest_socket.events("UserLeft") == []


@pytest.mark.asyncio
async def test_rejoin_does_not_announce_twice(desk: Desk):
    guest, guest_socket = await desk.connect(GUEST)
    cleaner, cleaner_socket = await desk.connect(CLEANER)
    await desk.hub.join_group(guest, "t1")
    await desk.hub.join_group(cleaner, "t1")
    await desk.hub.join_group(cleaner, "t1")

    assert len(guest_socket.events("UserJoined")) == 1
    assert len(cleaner_socket.events("JoinedTicket")) == 2
    assert await desk.registry.group_size("t1") == 2


@pytest.mark.asyncio
async def test_internal_messages_are_staff_only(desk: Desk):
    guest, guest_socket = await desk.connect(GUEST)
    cleaner, cleaner_socket = await desk.connect(CLEANER)
    admin, admin_socket = await desk.connect(ADMIN)
    for connection in (guest, cleaner, admin):
        await desk.hub.join_group(connection, "t1")

    await desk.hub.send_message(guest, "t1", "psst", is_internal=True)
    await desk.hub.send_message(cleaner, "t1", "guest seems upset", is_internal=True)

    assert guest_socket.events("Error")[0]["message"] == INTERNAL_DENIED_MESSAGE
    assert guest_socket.events("MessageReceived") == []
    assert admin_socket.events("MessageReceived")[0]["isInternal"] is True
    assert len(cleaner_socket.events("MessageReceived")) == 1


@pytest.mark.asyncio
async def test_disconnect_removes_memberships_silently(desk: Desk):
    guest, guest_socket = await desk.connect(GUEST)
    cleaner, _ = await desk.connect(CLEANER)
    await desk.hub.join_group(guest, "t1")
    await desk.hub.join_group(cleaner, "t1")

    await desk.hub.disconnect(cleaner)

    assert await desk.registry.group_size("t1") == 1
    assert guest_socket.events("UserLeft") == []
    assert await desk.registry.connection_count() == 1


@pytest.mark.asyncio
async def test_failed_member_is_evicted_without_breaking_broadcast(desk: Desk, metrics: MetricsRegistry):
    guest, guest_socket = await desk.connect(GUEST)
    await desk.hub.join_group(guest, "t1")
    broken = ClientConnection(CLEANER, BrokenSocket())
    await desk.registry.register(broken)
    await desk.registry.add_to_group(broken, "t1")

    await desk.hub.send_message(guest, "t1", "still there?")

    assert len(guest_socket.events("MessageReceived")) == 1
    assert await desk.registry.is_member(broken, "t1") is False
    assert metrics.counter(REALTIME_SEND_FAILURES).value() == 1


@pytest.mark.asyncio
async def test_dispatch_routes_commands_and_reports_bad_payloads(desk: Desk):
    guest, guest_socket = await desk.connect(GUEST)
    cleaner, cleaner_socket = await desk.connect(CLEANER)

    await desk.hub.handle_text(guest, '{"action": "JoinGroup", "ticketId": "t1"}')
    await desk.hub.dispatch(cleaner, {"action": "JoinGroup", "ticketId": "t1"})
    await desk.hub.dispatch(cleaner, {"action": "SendStatusUpdate", "ticketId": "t1", "status": "InProgress"})
    await desk.hub.dispatch(guest, {"action": "Teleport"})
    await desk.hub.dispatch(guest, {"action": "SendMessage", "ticketId": "t1"})
    await desk.hub.handle_text(guest, "not json")

    assert guest_socket.events("StatusUpdated")[0]["updatedById"] == CLEANER.id
    errors = [event["message"] for event in guest_socket.events("Error")]
    assert len(errors) == 3
    assert errors[0].startswith("Invalid command")
    assert errors[2] == "Malformed JSON payload"


@pytest.mark.asyncio
async def test_dispatch_turns_unexpected_failures_into_error_events(metrics: MetricsRegistry):
    async def exploding_checker(ticket_id: str, user: User) -> bool:
        raise RuntimeError("database unavailable")

    registry = ConnectionRegistry(metrics=metrics)
    hub = TicketHub(registry, exploding_checker, metrics=metrics)
    socket = FakeSocket()
    connection = ClientConnection(GUEST, socket)
    await hub.connect(connection)

    await hub.dispatch(connection, {"action": "JoinGroup", "ticketId": "t1"})

    assert socket.names() == ["Connected", "Error"]


@pytest.mark.asyncio
async def test_lifecycle_pass_throughs_reach_group(desk: Desk):
    guest, guest_socket = await desk.connect(GUEST)
    await desk.hub.join_group(guest, "t1")

    await desk.hub.send_assignment_notification("t1", CLEANER.id, "cleaning")
    await desk.hub.send_ticket_closed_notification("t1", "done", CLEANER.id)

    assert guest_socket.events("TicketAssigned")[0]["assigneeName"] == "cleaning"
    assert guest_socket.events("TicketClosed")[0]["resolution"] == "done"


@pytest.mark.asyncio
async def test_notifier_scopes_events(desk: Desk):
    notifier = TicketNotifier(desk.registry)
    guest, guest_socket = await desk.connect(GUEST)
    _, other_socket = await desk.connect(GUEST_TWO)
    cleaner, cleaner_socket = await desk.connect(CLEANER)
    await desk.hub.join_group(guest, "t1")
    await desk.hub.join_group(cleaner, "t1")
    ticket = make_ticket(id="t1", requester_id=GUEST.id)

    await notifier.ticket_created(ticket)
    await notifier.ticket_closed(ticket, CLEANER)
    await notifier.comment_added(
        TicketComment(
            id="c1", ticket_id="t1", author_id=CLEANER.id, comment="internal", is_internal=True, created_at=T0
        ),
        CLEANER,
    )

    assert guest_socket.events("TicketCreated")[0]["ticketNumber"] == "TKT-2025-001"
    assert other_socket.events("TicketCreated") == []
    assert len(guest_socket.events("TicketClosed")) == 1
    assert other_socket.events("TicketClosed") == []
    assert guest_socket.events("CommentAdded") == []
    assert cleaner_socket.events("CommentAdded")[0]["commentId"] == "c1"


@pytest.mark.asyncio
async def test_typing_before_joining_is_reported_to_sender(desk: Desk):
    guest, guest_socket = await desk.connect(GUEST)
    cleaner, cleaner_socket = await desk.connect(CLEANER)
    await desk.hub.join_group(guest, "t1")

    await desk.hub.send_typing_indicator(cleaner, "t1", True)

    [error] = cleaner_socket.events("Error")
    assert error["message"] == NOT_JOINED_MESSAGE
    assert guest_socket.events("TypingIndicator") == []
    assert guest_socket.events("Error") == []


@pytest.mark.asyncio
async def test_sent_payloads_parse_back_into_events(desk: Desk):
    guest, guest_socket = await desk.connect(GUEST)
    cleaner, cleaner_socket = await desk.connect(CLEANER)
    await desk.hub.join_group(guest, "t1")
    await desk.hub.join_group(cleaner, "t1")
    await desk.hub.send_message(cleaner, "t1", "On my way")
    await desk.hub.send_typing_indicator(cleaner, "t1", False)

    events = [event_adapter.validate_python(payload) for payload in guest_socket.sent]

    assert [type(event) for event in events] == [
        Connected,
        JoinedTicket,
        UserJoined,
        MessageReceived,
        TypingIndicator,
    ]
    assert events[3].message == "On my way"
    assert events[4].user_id == CLEANER.id
    assert events[4].is_typing is False
    assert all(event.timestamp.tzinfo is not None for event in events)
    assert cleaner_socket.sent[-1]["event"] == "MessageReceived"
