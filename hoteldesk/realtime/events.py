"""Wire models for the realtime ticket channel.

Server events are flat JSON objects tagged by ``event``; client commands are
tagged by ``action``. Field names are camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ServerEvent(WireModel):
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Connected(ServerEvent):
    event: Literal["Connected"] = "Connected"
    message: str = "Connected to ticket chat"
    user_id: str
    username: str
    role: str


class JoinedTicket(ServerEvent):
    event: Literal["JoinedTicket"] = "JoinedTicket"
    ticket_id: str
    message: str


class UserJoined(ServerEvent):
    event: Literal["UserJoined"] = "UserJoined"
    ticket_id: str
    user_id: str
    username: str


class UserLeft(ServerEvent):
    event: Literal["UserLeft"] = "UserLeft"
    ticket_id: str
    user_id: str
    username: str


class Error(ServerEvent):
    event: Literal["Error"] = "Error"
    message: str


class MessageReceived(ServerEvent):
    event: Literal["MessageReceived"] = "MessageReceived"
    id: str
    ticket_id: str
    message: str
    author_id: str
    author_name: str
    is_internal: bool = False


class TypingIndicator(ServerEvent):
    event: Literal["TypingIndicator"] = "TypingIndicator"
    ticket_id: str
    user_id: str
    username: str
    is_typing: bool


class StatusUpdated(ServerEvent):
    event: Literal["StatusUpdated"] = "StatusUpdated"
    ticket_id: str
    status: str
    message: str = ""
    updated_by: str
    updated_by_id: str


class TicketAssigned(ServerEvent):
    event: Literal["TicketAssigned"] = "TicketAssigned"
    ticket_id: str
    ticket_number: str | None = None
    assignee_id: str
    assignee_name: str
    assigned_by: str | None = None


class TicketClosed(ServerEvent):
    event: Literal["TicketClosed"] = "TicketClosed"
    ticket_id: str
    ticket_number: str | None = None
    resolution: str
    closed_by: str


class CommentAdded(ServerEvent):
    event: Literal["CommentAdded"] = "CommentAdded"
    comment_id: str
    ticket_id: str
    message: str
    author_id: str
    author_name: str
    is_internal: bool = False


class TicketCreated(ServerEvent):
    event: Literal["TicketCreated"] = "TicketCreated"
    ticket_id: str
    ticket_number: str
    title: str
    service_type: str
    priority: str
    requester_id: str


class TicketUpdated(ServerEvent):
    event: Literal["TicketUpdated"] = "TicketUpdated"
    ticket_id: str
    ticket_number: str
    status: str
    priority: str
    updated_by: str


Event = Annotated[
    Union[
        Connected,
        JoinedTicket,
        UserJoined,
        UserLeft,
        Error,
        MessageReceived,
        TypingIndicator,
        StatusUpdated,
        TicketAssigned,
        TicketClosed,
        CommentAdded,
        TicketCreated,
        TicketUpdated,
    ],
    Field(discriminator="event"),
]

event_adapter: TypeAdapter[Event] = TypeAdapter(Event)


class JoinGroup(WireModel):
    action: Literal["JoinGroup"]
    ticket_id: str = Field(min_length=1)


class LeaveGroup(WireModel):
    action: Literal["LeaveGroup"]
    ticket_id: str = Field(min_length=1)


class SendMessage(WireModel):
    action: Literal["SendMessage"]
    ticket_id: str = Field(min_length=1)
    message: str = Field(min_length=1)
    is_internal: bool = False


class SendTypingIndicator(WireModel):
    action: Literal["SendTypingIndicator"]
    ticket_id: str = Field(min_length=1)
    is_typing: bool


class SendStatusUpdate(WireModel):
    action: Literal["SendStatusUpdate"]
    ticket_id: str = Field(min_length=1)
    status: str
    message: str = ""


class SendAssignmentNotification(WireModel):
    action: Literal["SendAssignmentNotification"]
    ticket_id: str = Field(min_length=1)
    assignee_id: str
    assignee_name: str


class SendTicketClosedNotification(WireModel):
    action: Literal["SendTicketClosedNotification"]
    ticket_id: str = Field(min_length=1)
    resolution: str
    closed_by: str


Command = Annotated[
    Union[
        JoinGroup,
        LeaveGroup,
        SendMessage,
        SendTypingIndicator,
        SendStatusUpdate,
        SendAssignmentNotification,
        SendTicketClosedNotification,
    ],
    Field(discriminator="action"),
]

command_adapter: TypeAdapter[Command] = TypeAdapter(Command)
