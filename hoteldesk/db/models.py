"""SQLModel table definitions for the Hoteldesk data layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    """Generate a random UUID string."""

    return str(uuid.uuid4())


class UserTable(SQLModel, table=True):
    """Accounts referenced as requesters, assignees and comment authors."""

    __tablename__ = "users"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    username: str = Field(sa_column=Column(String(150), nullable=False, unique=True))
    email: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    role: str = Field(sa_column=Column(String(50), nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class BookingTable(SQLModel, table=True):
    """Hotel bookings; owned by the booking module and only read here."""

    __tablename__ = "bookings"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    user_id: str = Field(sa_column=Column(String(36), nullable=False, index=True))
    room_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    hotel_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketNumberSequenceTable(SQLModel, table=True):
    """One row per year; written first by every ticket insert so allocations queue on it."""

    __tablename__ = "ticket_number_sequences"

    year: int = Field(sa_column=Column(Integer, primary_key=True, autoincrement=False))
    last_value: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))


class TicketTable(SQLModel, table=True):
    """Service desk tickets."""

    __tablename__ = "tickets"
    __table_args__ = (
        Index("ix_tickets_requester_id", "requester_id"),
        Index("ix_tickets_assignee_id", "assignee_id"),
        Index("ix_tickets_status", "status"),
    )

    id: str = Field(primary_key=True, index=True)
    ticket_number: str = Field(sa_column=Column(String(32), nullable=False, unique=True))
    title: str = Field(sa_column=Column(String(200), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    service_type: str = Field(sa_column=Column(String(50), nullable=False))
    category: str = Field(sa_column=Column(String(50), nullable=False))
    sub_category: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    priority: str = Field(sa_column=Column(String(20), nullable=False))
    status: str = Field(sa_column=Column(String(20), nullable=False))
    risk_level: str = Field(sa_column=Column(String(20), nullable=False))
    impact: str = Field(sa_column=Column(String(20), nullable=False))
    requester_id: str = Field(sa_column=Column(String(64), nullable=False))
    assignee_id: str | None = Field(default=None, sa_column=Column(String(64), nullable=True))
    booking_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    room_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    hotel_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    due_date: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    resolution: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    work_notes: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketCommentTable(SQLModel, table=True):
    __tablename__ = "ticket_comments"

    id: str = Field(primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    author_id: str = Field(sa_column=Column(String(64), nullable=False))
    comment: str = Field(sa_column=Column(Text, nullable=False))
    is_internal: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketAttachmentTable(SQLModel, table=True):
    __tablename__ = "ticket_attachments"

    id: str = Field(primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    file_name: str = Field(sa_column=Column(String(255), nullable=False))
    file_path: str = Field(sa_column=Column(String(1024), nullable=False))
    content_type: str = Field(sa_column=Column(String(255), nullable=False))
    file_size: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    uploaded_by_id: str = Field(sa_column=Column(String(64), nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketHistoryTable(SQLModel, table=True):
    """Append-only change control trail."""

    __tablename__ = "ticket_history"

    id: str = Field(primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    field_name: str = Field(sa_column=Column(String(50), nullable=False))
    old_value: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    new_value: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    changed_by_id: str = Field(sa_column=Column(String(64), nullable=False))
    change_reason: str = Field(sa_column=Column(String(255), nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
