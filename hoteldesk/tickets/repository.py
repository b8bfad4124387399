from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import case, delete, false, func, or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from hoteldesk.db.models import (
    BookingTable,
    TicketAttachmentTable,
    TicketCommentTable,
    TicketHistoryTable,
    TicketNumberSequenceTable,
    TicketTable,
    UserTable,
)
from hoteldesk.security import User

from .access import VisibilityScope
from .errors import TicketNumberConflictError
from .models import (
    BookingRef,
    RiskLevel,
    ServiceType,
    SortDirection,
    SortField,
    Ticket,
    TicketAttachment,
    TicketCategory,
    TicketComment,
    TicketFilter,
    TicketHistoryEntry,
    TicketPage,
    TicketPriority,
    TicketStatistics,
    UserRef,
)
from .numbering import next_ticket_number, parse_ticket_number, ticket_number_prefix
from .state import TicketStatus

_PRIORITY_RANK = case(
    {priority.value: rank for rank, priority in enumerate(TicketPriority)},
    value=TicketTable.priority,
    else_=-1,
)
_STATUS_RANK = case(
    {status.value: rank for rank, status in enumerate(TicketStatus)},
    value=TicketTable.status,
    else_=-1,
)

_SEQUENCES = TicketNumberSequenceTable.__table__
_UPSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def _is_ticket_number_violation(exc: IntegrityError) -> bool:
    """Tell a duplicate ticket number apart from other constraint failures."""

    # asyncpg reports the constraint by name; sqlite only in the message
    constraint = getattr(getattr(exc.orig, "__cause__", None), "constraint_name", None)
    if constraint:
        return "ticket_number" in constraint
    return "ticket_number" in str(exc.orig)


class TicketRepository:
    """Persistence helper wrapping tickets, their comments, attachments and history."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    async def ensure_users(self, users: Iterable[User]) -> int:
        """Insert the given identities unless they already exist."""

        created = 0
        async with self._session_factory() as session:
            async with session.begin():
                for user in users:
                    if await session.get(UserTable, user.id) is not None:
                        continue
                    session.add(UserTable(id=user.id, username=user.username, role=user.role.value))
                    created += 1
        return created

    async def get_user(self, user_id: str) -> UserRef | None:
        async with self._session_factory() as session:
            row = await session.get(UserTable, user_id)
        if row is None:
            return None
        return UserRef(id=row.id, username=row.username, email=row.email)

    async def get_booking(self, booking_id: str) -> BookingRef | None:
        async with self._session_factory() as session:
            row = await session.get(BookingTable, booking_id)
        if row is None:
            return None
        return BookingRef(id=row.id, user_id=row.user_id, room_id=row.room_id, hotel_id=row.hotel_id)

    async def create_ticket(self, ticket: Ticket, history: Sequence[TicketHistoryEntry]) -> Ticket:
        """Insert the ticket and its initial history rows in one transaction.

        A blank ``ticket_number`` is allocated here: the year's row in
        ``ticket_number_sequences`` is upserted before anything is read, so
        concurrent creators for the same year wait on it until this
        transaction ends and always see each other's numbers.
        """

        year = ticket.created_at.year
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._claim_year(session, year)
                    if not ticket.ticket_number:
                        latest = await self._latest_number(session, ticket_number_prefix(year))
                        number = next_ticket_number(year, latest)
                        await session.execute(
                            update(_SEQUENCES)
                            .where(_SEQUENCES.c.year == year)
                            .values(last_value=parse_ticket_number(number)[1])
                        )
                        ticket = replace(ticket, ticket_number=number)
                    session.add(self._ticket_to_table(ticket))
                    await session.flush()
                    session.add_all([self._history_to_table(entry) for entry in history])
        except IntegrityError as exc:
            if not _is_ticket_number_violation(exc):
                raise
            raise TicketNumberConflictError(f"Ticket number {ticket.ticket_number} is already taken") from exc
        return ticket

    @staticmethod
    async def _claim_year(session: AsyncSession, year: int) -> None:
        dialect = session.get_bind().dialect.name
        insert = _UPSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Ticket numbering is not supported on the {dialect} dialect")
        statement = insert(_SEQUENCES).values(year=year, last_value=0)
        # no-op update; it exists to take the row lock
        statement = statement.on_conflict_do_update(
            index_elements=[_SEQUENCES.c.year],
            set_={"last_value": _SEQUENCES.c.last_value},
        )
        await session.execute(statement)

    @staticmethod
    async def _latest_number(session: AsyncSession, prefix: str) -> str | None:
        statement = (
            select(TicketTable.ticket_number)
            .where(TicketTable.ticket_number.startswith(prefix, autoescape=True))
            .order_by(func.length(TicketTable.ticket_number).desc(), TicketTable.ticket_number.desc())
            .limit(1)
        )
        result = await session.execute(statement)
        return result.scalar_one_or_none()

    async def save_ticket(self, ticket: Ticket, history: Sequence[TicketHistoryEntry]) -> bool:
        """Persist the mutable fields of ``ticket`` together with its new history rows."""

        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(TicketTable, ticket.id)
                if row is None:
                    return False
                self._apply_ticket(row, ticket)
                session.add_all([self._history_to_table(entry) for entry in history])
        return True

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._session_factory() as session:
            row = await session.get(TicketTable, ticket_id)
            if row is None:
                return None
            ticket = self._table_to_ticket(row)
            await self._attach_counts(session, [ticket])
        return ticket

    async def list_tickets(self, criteria: TicketFilter, scope: VisibilityScope) -> TicketPage:
        clauses = self._filter_clauses(criteria, scope)
        order_column = self._sort_column(criteria.sort_by)
        if criteria.sort_direction == SortDirection.ASC:
            ordering = (order_column.asc(), TicketTable.id.asc())
        else:
            ordering = (order_column.desc(), TicketTable.id.desc())

        statement = (
            select(TicketTable)
            .where(*clauses)
            .order_by(*ordering)
            .offset((criteria.page - 1) * criteria.page_size)
            .limit(criteria.page_size)
        )
        count_statement = select(func.count()).select_from(TicketTable).where(*clauses)

        async with self._session_factory() as session:
            total = (await session.execute(count_statement)).scalar_one()
            result = await session.execute(statement)
            tickets = [self._table_to_ticket(row) for row in result.scalars().all()]
            await self._attach_counts(session, tickets)

        return TicketPage(items=tickets, total=int(total), page=criteria.page, page_size=criteria.page_size)

    async def add_comment(self, comment: TicketComment) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    TicketCommentTable(
                        id=comment.id,
                        ticket_id=comment.ticket_id,
                        author_id=comment.author_id,
                        comment=comment.comment,
                        is_internal=comment.is_internal,
                        created_at=comment.created_at,
                    )
                )

    async def list_comments(self, ticket_id: str, *, include_internal: bool) -> list[TicketComment]:
        statement = select(TicketCommentTable).where(TicketCommentTable.ticket_id == ticket_id)
        if not include_internal:
            statement = statement.where(TicketCommentTable.is_internal == false())
        statement = statement.order_by(TicketCommentTable.created_at.asc(), TicketCommentTable.id.asc())
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._table_to_comment(row) for row in result.scalars().all()]

    async def add_attachment(self, attachment: TicketAttachment) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    TicketAttachmentTable(
                        id=attachment.id,
                        ticket_id=attachment.ticket_id,
                        file_name=attachment.file_name,
                        file_path=attachment.file_path,
                        content_type=attachment.content_type,
                        file_size=attachment.file_size,
                        uploaded_by_id=attachment.uploaded_by_id,
                        created_at=attachment.created_at,
                    )
                )

    async def list_attachments(self, ticket_id: str) -> list[TicketAttachment]:
        statement = (
            select(TicketAttachmentTable)
            .where(TicketAttachmentTable.ticket_id == ticket_id)
            .order_by(TicketAttachmentTable.created_at.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._table_to_attachment(row) for row in result.scalars().all()]

    async def get_history(self, ticket_id: str) -> list[TicketHistoryEntry]:
        statement = (
            select(TicketHistoryTable)
            .where(TicketHistoryTable.ticket_id == ticket_id)
            .order_by(TicketHistoryTable.created_at.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._table_to_history(row) for row in result.scalars().all()]

    async def delete_ticket(self, ticket_id: str) -> bool:
        """Remove a ticket together with its comments, attachments and history."""

        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(TicketTable, ticket_id)
                if row is None:
                    return False
                await session.execute(delete(TicketHistoryTable).where(TicketHistoryTable.ticket_id == ticket_id))
                await session.execute(delete(TicketCommentTable).where(TicketCommentTable.ticket_id == ticket_id))
                await session.execute(
                    delete(TicketAttachmentTable).where(TicketAttachmentTable.ticket_id == ticket_id)
                )
                await session.delete(row)
        return True

    async def statistics(
        self, *, from_date: datetime | None = None, to_date: datetime | None = None
    ) -> TicketStatistics:
        clauses = []
        if from_date is not None:
            clauses.append(TicketTable.created_at >= from_date)
        if to_date is not None:
            clauses.append(TicketTable.created_at <= to_date)

        async with self._session_factory() as session:
            total = (
                await session.execute(select(func.count()).select_from(TicketTable).where(*clauses))
            ).scalar_one()
            by_status = await self._grouped_counts(session, TicketTable.status, TicketStatus, clauses)
            by_priority = await self._grouped_counts(session, TicketTable.priority, TicketPriority, clauses)
            by_service_type = await self._grouped_counts(session, TicketTable.service_type, ServiceType, clauses)
            by_category = await self._grouped_counts(session, TicketTable.category, TicketCategory, clauses)
            resolved = await session.execute(
                select(TicketTable.created_at, TicketTable.resolved_at).where(
                    TicketTable.resolved_at.is_not(None), *clauses
                )
            )
            durations = [
                (_ensure_datetime(resolved_at) - _ensure_datetime(created_at)).total_seconds() / 86400.0
                for created_at, resolved_at in resolved.all()
            ]

        average = sum(durations) / len(durations) if durations else 0.0
        return TicketStatistics(
            total_tickets=int(total),
            by_status=by_status,
            by_priority=by_priority,
            by_service_type=by_service_type,
            by_category=by_category,
            average_resolution_time_days=average,
        )

    @staticmethod
    async def _grouped_counts(session: AsyncSession, column: Any, enum_type: Any, clauses: list) -> dict[str, int]:
        counts: dict[str, int] = {member.value: 0 for member in enum_type}
        result = await session.execute(select(column, func.count()).where(*clauses).group_by(column))
        for key, count in result.all():
            counts[str(key)] = int(count)
        return counts

    @staticmethod
    async def _attach_counts(session: AsyncSession, tickets: list[Ticket]) -> None:
        if not tickets:
            return
        ids = [ticket.id for ticket in tickets]
        comment_rows = await session.execute(
            select(TicketCommentTable.ticket_id, func.count())
            .where(TicketCommentTable.ticket_id.in_(ids))
            .group_by(TicketCommentTable.ticket_id)
        )
        attachment_rows = await session.execute(
            select(TicketAttachmentTable.ticket_id, func.count())
            .where(TicketAttachmentTable.ticket_id.in_(ids))
            .group_by(TicketAttachmentTable.ticket_id)
        )
        comment_counts = {ticket_id: int(count) for ticket_id, count in comment_rows.all()}
        attachment_counts = {ticket_id: int(count) for ticket_id, count in attachment_rows.all()}
        for ticket in tickets:
            ticket.comments_count = comment_counts.get(ticket.id, 0)
            ticket.attachments_count = attachment_counts.get(ticket.id, 0)

    @staticmethod
    def _scope_clause(scope: VisibilityScope) -> Any:
        if scope.unrestricted:
            return None
        options = []
        if scope.requester_id is not None:
            options.append(TicketTable.requester_id == scope.requester_id)
        if scope.assignee_id is not None:
            options.append(TicketTable.assignee_id == scope.assignee_id)
        if scope.service_type is not None:
            options.append(TicketTable.service_type == scope.service_type.value)
        if scope.include_open:
            options.append(TicketTable.status == TicketStatus.OPEN.value)
        if not options:
            return false()
        return or_(*options)

    @classmethod
    def _filter_clauses(cls, criteria: TicketFilter, scope: VisibilityScope) -> list[Any]:
        clauses: list[Any] = []
        scope_clause = cls._scope_clause(scope)
        if scope_clause is not None:
            clauses.append(scope_clause)

        if criteria.search:
            clauses.append(
                or_(
                    TicketTable.title.icontains(criteria.search, autoescape=True),
                    TicketTable.description.icontains(criteria.search, autoescape=True),
                    TicketTable.ticket_number.icontains(criteria.search, autoescape=True),
                )
            )

        exact_matches = (
            (TicketTable.status, criteria.status),
            (TicketTable.priority, criteria.priority),
            (TicketTable.service_type, criteria.service_type),
            (TicketTable.category, criteria.category),
            (TicketTable.requester_id, criteria.requester_id),
            (TicketTable.assignee_id, criteria.assignee_id),
            (TicketTable.booking_id, criteria.booking_id),
            (TicketTable.room_id, criteria.room_id),
            (TicketTable.hotel_id, criteria.hotel_id),
        )
        for column, value in exact_matches:
            if value is None or value == "":
                continue
            clauses.append(column == getattr(value, "value", value))

        if criteria.created_from is not None:
            clauses.append(TicketTable.created_at >= criteria.created_from)
        if criteria.created_to is not None:
            clauses.append(TicketTable.created_at <= criteria.created_to)
        if criteria.due_from is not None:
            clauses.append(TicketTable.due_date >= criteria.due_from)
        if criteria.due_to is not None:
            clauses.append(TicketTable.due_date <= criteria.due_to)
        return clauses

    @staticmethod
    def _sort_column(sort_by: SortField) -> Any:
        if sort_by == SortField.PRIORITY:
            return _PRIORITY_RANK
        if sort_by == SortField.STATUS:
            return _STATUS_RANK
        if sort_by == SortField.DUE_DATE:
            return TicketTable.due_date
        if sort_by == SortField.TITLE:
            return TicketTable.title
        return TicketTable.created_at

    @staticmethod
    def _ticket_to_table(ticket: Ticket) -> TicketTable:
        row = TicketTable(
            id=ticket.id,
            ticket_number=ticket.ticket_number,
            requester_id=ticket.requester_id,
            created_at=ticket.created_at,
        )
        TicketRepository._apply_ticket(row, ticket)
        return row

    @staticmethod
    def _apply_ticket(row: TicketTable, ticket: Ticket) -> None:
        # ticket_number and requester_id are immutable after creation
        row.title = ticket.title
        row.description = ticket.description
        row.service_type = ticket.service_type.value
        row.category = ticket.category.value
        row.sub_category = ticket.sub_category
        row.priority = ticket.priority.value
        row.status = ticket.status.value
        row.risk_level = ticket.risk_level.value
        row.impact = ticket.impact.value
        row.assignee_id = ticket.assignee_id
        row.booking_id = ticket.booking_id
        row.room_id = ticket.room_id
        row.hotel_id = ticket.hotel_id
        row.due_date = ticket.due_date
        row.resolved_at = ticket.resolved_at
        row.closed_at = ticket.closed_at
        row.resolution = ticket.resolution
        row.work_notes = ticket.work_notes
        row.updated_at = ticket.updated_at

    @staticmethod
    def _history_to_table(entry: TicketHistoryEntry) -> TicketHistoryTable:
        return TicketHistoryTable(
            id=entry.id,
            ticket_id=entry.ticket_id,
            field_name=entry.field_name,
            old_value=entry.old_value,
            new_value=entry.new_value,
            changed_by_id=entry.changed_by_id,
            change_reason=entry.change_reason,
            created_at=entry.created_at,
        )

    @staticmethod
    def _table_to_ticket(row: TicketTable) -> Ticket:
        return Ticket(
            id=row.id,
            ticket_number=row.ticket_number,
            title=row.title,
            description=row.description,
            service_type=ServiceType(row.service_type),
            category=TicketCategory(row.category),
            sub_category=row.sub_category,
            priority=TicketPriority(row.priority),
            status=TicketStatus(row.status),
            risk_level=RiskLevel(row.risk_level),
            impact=RiskLevel(row.impact),
            requester_id=row.requester_id,
            assignee_id=row.assignee_id,
            booking_id=row.booking_id,
            room_id=row.room_id,
            hotel_id=row.hotel_id,
            due_date=_optional_datetime(row.due_date),
            resolved_at=_optional_datetime(row.resolved_at),
            closed_at=_optional_datetime(row.closed_at),
            resolution=row.resolution,
            work_notes=row.work_notes,
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
        )

    @staticmethod
    def _table_to_comment(row: TicketCommentTable) -> TicketComment:
        return TicketComment(
            id=row.id,
            ticket_id=row.ticket_id,
            author_id=row.author_id,
            comment=row.comment,
            is_internal=bool(row.is_internal),
            created_at=_ensure_datetime(row.created_at),
        )

    @staticmethod
    def _table_to_attachment(row: TicketAttachmentTable) -> TicketAttachment:
        return TicketAttachment(
            id=row.id,
            ticket_id=row.ticket_id,
            file_name=row.file_name,
            file_path=row.file_path,
            content_type=row.content_type,
            file_size=int(row.file_size),
            uploaded_by_id=row.uploaded_by_id,
            created_at=_ensure_datetime(row.created_at),
        )

    @staticmethod
    def _table_to_history(row: TicketHistoryTable) -> TicketHistoryEntry:
        return TicketHistoryEntry(
            id=row.id,
            ticket_id=row.ticket_id,
            field_name=row.field_name,
            old_value=row.old_value,
            new_value=row.new_value,
            changed_by_id=row.changed_by_id,
            change_reason=row.change_reason,
            created_at=_ensure_datetime(row.created_at),
        )


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def _optional_datetime(value: datetime | None) -> datetime | None:
    return None if value is None else _ensure_datetime(value)
