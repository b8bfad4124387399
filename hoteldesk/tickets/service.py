from __future__ import annotations

import asyncio
import logging
import random
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Protocol, Sequence, TypeVar

from opentelemetry import trace

from hoteldesk.metrics import MetricsRegistry, metrics_registry
from hoteldesk.metrics.definitions import (
    TICKET_ACCESS_DENIED,
    TICKET_HISTORY_ENTRIES,
    TICKET_NUMBER_CONFLICTS,
    TICKET_OPERATION_DURATION,
    TICKETS_CREATED,
)
from hoteldesk.security import Role, User

from .access import TicketAction, is_allowed, visibility_scope
from .errors import (
    BookingNotFoundError,
    InvalidTicketTransitionError,
    TicketAccessDeniedError,
    TicketNotFoundError,
    TicketNumberConflictError,
    TicketValidationError,
)
from .models import (
    ServiceType,
    Ticket,
    TicketAttachment,
    TicketCategory,
    TicketComment,
    TicketFilter,
    TicketHistoryEntry,
    TicketPage,
    TicketPriority,
    TicketStatistics,
    TicketUpdate,
    UserRef,
)
from .repository import TicketRepository
from .sla import calculate_due_date, calculate_impact, calculate_risk_level
from .state import TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

EnumT = TypeVar("EnumT", bound=Enum)

# Rows in the change-control trail that guests never see.
INTERNAL_HISTORY_FIELDS = frozenset({"WorkNotes"})

_CONFLICT_BACKOFF_SECONDS = 0.05


class TicketEventNotifier(Protocol):
    """Receiver of lifecycle events once a mutation has been committed."""

    async def ticket_created(self, ticket: Ticket) -> None:
        ...

    async def ticket_updated(self, ticket: Ticket, actor: User) -> None:
        ...

    async def ticket_assigned(self, ticket: Ticket, assignee: UserRef, actor: User) -> None:
        ...

    async def ticket_closed(self, ticket: Ticket, actor: User) -> None:
        ...

    async def comment_added(self, comment: TicketComment, author: User) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _coerce(enum_type: type[EnumT], value: Any, field: str) -> EnumT:
    try:
        return enum_type(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_type)
        raise TicketValidationError(f"Invalid {field} '{value}'. Expected one of: {allowed}") from exc


def _require_text(value: str | None, field: str) -> str:
    if value is None or not value.strip():
        raise TicketValidationError(f"{field} must not be empty")
    return value


def _visible_to(ticket: Ticket, user: User) -> Ticket:
    """Strip staff-only fields from a ticket handed back to a guest."""
    if user.role != Role.USER or ticket.work_notes is None:
        return ticket
    return replace(ticket, work_notes=None)


class TicketService:
    """Ticket lifecycle orchestration.

    Every operation resolves the ticket, runs the capability check from
    :mod:`hoteldesk.tickets.access` and only then mutates state. Mutations
    and their change-control rows are handed to the repository together so
    they commit in a single transaction. Lifecycle events are published
    after the commit; a failing notifier never undoes a mutation.
    """

    def __init__(
        self,
        repository: TicketRepository,
        *,
        notifier: TicketEventNotifier | None = None,
        state_machine: TicketStateMachine | None = None,
        clock: Callable[[], datetime] | None = None,
        metrics: MetricsRegistry | None = None,
        max_number_attempts: int = 5,
        page_size_max: int = 100,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._state_machine = state_machine or TicketStateMachine()
        self._clock = clock or _utcnow
        self._metrics = metrics or metrics_registry
        self._max_number_attempts = max(1, max_number_attempts)
        self._page_size_max = max(1, page_size_max)

    async def ensure_schema(self) -> None:
        await self._repository.ensure_schema()

    async def create_ticket(
        self,
        user: User,
        *,
        title: str,
        description: str,
        service_type: ServiceType | str,
        category: TicketCategory | str,
        sub_category: str | None = None,
        priority: TicketPriority | str | None = None,
        booking_id: str | None = None,
        room_id: str | None = None,
        hotel_id: str | None = None,
    ) -> Ticket:
        title = _require_text(title, "title")
        description = _require_text(description, "description")
        service = _coerce(ServiceType, service_type, "service type")
        ticket_category = _coerce(TicketCategory, category, "category")
        ticket_priority = (
            TicketPriority.MEDIUM if priority is None else _coerce(TicketPriority, priority, "priority")
        )

        with self._operation("create"):
            if booking_id:
                booking = await self._repository.get_booking(booking_id)
                if booking is None:
                    raise BookingNotFoundError(f"Booking {booking_id} not found")
                if booking.user_id != user.id:
                    self._deny(user, TicketAction.MODIFY, f"booking {booking_id}")
                    raise TicketAccessDeniedError("Booking does not belong to the requester")
                room_id = room_id or booking.room_id
                hotel_id = hotel_id or booking.hotel_id

            now = self._clock()
            status = self._state_machine.initial_state()
            draft = Ticket(
                id=str(uuid.uuid4()),
                ticket_number="",  # allocated by the repository
                title=title,
                description=description,
                service_type=service,
                category=ticket_category,
                sub_category=sub_category or None,
                priority=ticket_priority,
                status=status,
                risk_level=calculate_risk_level(ticket_priority, service),
                impact=calculate_impact(ticket_priority, service),
                requester_id=user.id,
                assignee_id=None,
                booking_id=booking_id or None,
                room_id=room_id or None,
                hotel_id=hotel_id or None,
                due_date=calculate_due_date(ticket_priority, now),
                resolved_at=None,
                closed_at=None,
                resolution=None,
                work_notes=None,
                created_at=now,
                updated_at=now,
            )
            history = [self._history(draft, user, "Status", None, status, "Ticket created", now)]

            # allocation is serialised in the store; a conflict here means a
            # number was written by something outside it
            for attempt in range(1, self._max_number_attempts + 1):
                try:
                    ticket = await self._repository.create_ticket(draft, history)
                except TicketNumberConflictError:
                    self._metrics.counter(TICKET_NUMBER_CONFLICTS).inc()
                    logger.warning(
                        "Ticket number conflict for %s (attempt %d of %d)",
                        draft.id,
                        attempt,
                        self._max_number_attempts,
                    )
                    if attempt < self._max_number_attempts:
                        await asyncio.sleep(random.uniform(0, _CONFLICT_BACKOFF_SECONDS * attempt))
                    continue
                break
            else:
                raise TicketNumberConflictError(
                    f"Could not allocate a ticket number after {self._max_number_attempts} attempts"
                )

        self._metrics.counter(TICKETS_CREATED, label_names=("service_type",)).inc(
            labels={"service_type": service.value}
        )
        self._count_history(history)
        logger.info("Ticket created: %s (%s) by %s", ticket.ticket_number, ticket.id, user.id)
        if self._notifier is not None:
            await self._publish("ticket_created", self._notifier.ticket_created(ticket))
        return ticket

    async def get_tickets(self, criteria: TicketFilter, user: User) -> TicketPage:
        criteria = self._normalise_page(criteria)
        with self._operation("list"):
            page = await self._repository.list_tickets(criteria, visibility_scope(user))
        return replace(page, items=[_visible_to(ticket, user) for ticket in page.items])

    async def get_my_tickets(self, criteria: TicketFilter, user: User) -> TicketPage:
        return await self.get_tickets(replace(criteria, requester_id=user.id), user)

    async def get_assigned_tickets(self, criteria: TicketFilter, user: User) -> TicketPage:
        if not user.is_staff:
            self._deny(user, TicketAction.VIEW, "assigned tickets")
            raise TicketAccessDeniedError("Only staff members have assigned tickets")
        return await self.get_tickets(replace(criteria, assignee_id=user.id), user)

    async def get_ticket(self, ticket_id: str, user: User) -> Ticket:
        return _visible_to(await self._authorize(ticket_id, user, TicketAction.VIEW), user)

    async def can_view_ticket(self, ticket_id: str, user: User) -> bool:
        ticket = await self._repository.get_ticket(ticket_id)
        return ticket is not None and is_allowed(user, ticket, TicketAction.VIEW)

    async def update_ticket(self, ticket_id: str, update: TicketUpdate, user: User) -> Ticket:
        with self._operation("update"):
            current = await self._authorize(ticket_id, user, TicketAction.MODIFY)
            now = self._clock()
            ticket = replace(current)
            history: list[TicketHistoryEntry] = []

            def record(field: str, old: Any, new: Any, reason: str) -> None:
                history.append(self._history(ticket, user, field, old, new, reason, now))

            if update.title is not None and update.title != ticket.title:
                title = _require_text(update.title, "title")
                record("Title", ticket.title, title, "Title updated")
                ticket.title = title

            if update.description is not None and update.description != ticket.description:
                description = _require_text(update.description, "description")
                record("Description", ticket.description, description, "Description updated")
                ticket.description = description

            if update.status is not None:
                status = _coerce(TicketStatus, update.status, "status")
                if status != ticket.status:
                    self._check_transition(ticket.status, status)
                    record("Status", ticket.status, status, "Status updated")
                    ticket.status = status
                    if status == TicketStatus.RESOLVED:
                        ticket.resolved_at = now
                    elif status == TicketStatus.CLOSED:
                        ticket.closed_at = now

            priority_changed = False
            if update.priority is not None:
                priority = _coerce(TicketPriority, update.priority, "priority")
                if priority != ticket.priority:
                    record("Priority", ticket.priority, priority, "Priority updated")
                    ticket.priority = priority
                    ticket.due_date = calculate_due_date(priority, ticket.created_at)
                    ticket.risk_level = calculate_risk_level(priority, ticket.service_type)
                    ticket.impact = calculate_impact(priority, ticket.service_type)
                    priority_changed = True

            if update.assignee_id and update.assignee_id != ticket.assignee_id:
                if not is_allowed(user, ticket, TicketAction.ASSIGN):
                    self._deny(user, TicketAction.ASSIGN, ticket.id)
                    raise TicketAccessDeniedError("Only administrators and reception may reassign tickets")
                assignee = await self._repository.get_user(update.assignee_id)
                if assignee is None:
                    raise TicketValidationError(f"Assignee {update.assignee_id} does not exist")
                record("Assignee", ticket.assignee_id, assignee.id, "Ticket assigned")
                ticket.assignee_id = assignee.id

            if update.resolution is not None and update.resolution != ticket.resolution:
                record("Resolution", ticket.resolution, update.resolution, "Resolution added")
                ticket.resolution = update.resolution

            if update.work_notes is not None and update.work_notes != ticket.work_notes:
                record("WorkNotes", ticket.work_notes, update.work_notes, "Work notes updated")
                ticket.work_notes = update.work_notes

            # a priority change owns the deadline for this update
            if update.due_date is not None and not priority_changed and update.due_date != ticket.due_date:
                record("DueDate", ticket.due_date, update.due_date, "SLA deadline updated")
                ticket.due_date = update.due_date

            if not history:
                return _visible_to(current, user)

            ticket.updated_at = now
            await self._save(ticket, history)

        logger.info(
            "Ticket updated: %s by %s (%s)",
            ticket.id,
            user.id,
            ", ".join(entry.field_name for entry in history),
        )
        if self._notifier is not None:
            await self._publish("ticket_updated", self._notifier.ticket_updated(ticket, user))
        return _visible_to(ticket, user)

    async def assign_ticket(self, ticket_id: str, assignee_id: str, user: User) -> Ticket:
        assignee_id = _require_text(assignee_id, "assignee id")
        with self._operation("assign"):
            current = await self._authorize(ticket_id, user, TicketAction.ASSIGN)
            assignee = await self._repository.get_user(assignee_id)
            if assignee is None:
                raise TicketValidationError(f"Assignee {assignee_id} does not exist")

            now = self._clock()
            ticket = replace(current, assignee_id=assignee.id, updated_at=now)
            history = [
                self._history(
                    ticket,
                    user,
                    "Assignee",
                    current.assignee_id,
                    assignee.id,
                    f"Ticket assigned to {assignee.username}",
                    now,
                )
            ]
            if current.status != TicketStatus.IN_PROGRESS:
                self._check_transition(current.status, TicketStatus.IN_PROGRESS)
                ticket.status = TicketStatus.IN_PROGRESS
                history.append(
                    self._history(
                        ticket,
                        user,
                        "Status",
                        current.status,
                        TicketStatus.IN_PROGRESS,
                        "Ticket assigned and started",
                        now,
                    )
                )
            await self._save(ticket, history)

        logger.info("Ticket assigned: %s to %s by %s", ticket.id, assignee.id, user.id)
        if self._notifier is not None:
            await self._publish("ticket_assigned", self._notifier.ticket_assigned(ticket, assignee, user))
        return _visible_to(ticket, user)

    async def close_ticket(self, ticket_id: str, resolution: str, user: User) -> Ticket:
        resolution = _require_text(resolution, "resolution")
        with self._operation("close"):
            current = await self._authorize(ticket_id, user, TicketAction.CLOSE)
            now = self._clock()
            ticket = replace(current, updated_at=now)
            history: list[TicketHistoryEntry] = []

            if current.status != TicketStatus.CLOSED:
                self._check_transition(current.status, TicketStatus.CLOSED)
                history.append(
                    self._history(ticket, user, "Status", current.status, TicketStatus.CLOSED, "Ticket closed", now)
                )
                ticket.status = TicketStatus.CLOSED
                ticket.closed_at = now
            if resolution != current.resolution:
                history.append(
                    self._history(ticket, user, "Resolution", current.resolution, resolution, "Resolution added", now)
                )
                ticket.resolution = resolution

            if not history:
                return _visible_to(current, user)
            await self._save(ticket, history)

        logger.info("Ticket closed: %s by %s", ticket.id, user.id)
        if self._notifier is not None:
            await self._publish("ticket_closed", self._notifier.ticket_closed(ticket, user))
        return _visible_to(ticket, user)

    async def add_comment(
        self, ticket_id: str, comment: str, user: User, *, is_internal: bool = False
    ) -> TicketComment:
        text = _require_text(comment, "comment")
        with self._operation("comment"):
            await self._authorize(ticket_id, user, TicketAction.MODIFY)
            record = TicketComment(
                id=str(uuid.uuid4()),
                ticket_id=ticket_id,
                author_id=user.id,
                comment=text,
                is_internal=is_internal,
                created_at=self._clock(),
            )
            await self._repository.add_comment(record)

        logger.info("Comment added to ticket %s by %s (internal=%s)", ticket_id, user.id, is_internal)
        if self._notifier is not None:
            await self._publish("comment_added", self._notifier.comment_added(record, user))
        return record

    async def get_comments(self, ticket_id: str, user: User) -> list[TicketComment]:
        await self._authorize(ticket_id, user, TicketAction.VIEW)
        return await self._repository.list_comments(ticket_id, include_internal=user.role != Role.USER)

    async def get_history(self, ticket_id: str, user: User) -> list[TicketHistoryEntry]:
        await self._authorize(ticket_id, user, TicketAction.VIEW)
        entries = await self._repository.get_history(ticket_id)
        if user.role == Role.USER:
            entries = [entry for entry in entries if entry.field_name not in INTERNAL_HISTORY_FIELDS]
        return entries

    async def add_attachment(
        self,
        ticket_id: str,
        user: User,
        *,
        file_name: str,
        file_path: str,
        content_type: str,
        file_size: int,
    ) -> TicketAttachment:
        file_name = _require_text(file_name, "file name")
        file_path = _require_text(file_path, "file path")
        if file_size < 0:
            raise TicketValidationError("file size must not be negative")

        with self._operation("attach"):
            await self._authorize(ticket_id, user, TicketAction.MODIFY)
            attachment = TicketAttachment(
                id=str(uuid.uuid4()),
                ticket_id=ticket_id,
                file_name=file_name,
                file_path=file_path,
                content_type=content_type or "application/octet-stream",
                file_size=file_size,
                uploaded_by_id=user.id,
                created_at=self._clock(),
            )
            await self._repository.add_attachment(attachment)
        logger.info("Attachment %s added to ticket %s by %s", attachment.file_name, ticket_id, user.id)
        return attachment

    async def delete_ticket(self, ticket_id: str, user: User) -> None:
        with self._operation("delete"):
            await self._authorize(ticket_id, user, TicketAction.DELETE)
            deleted = await self._repository.delete_ticket(ticket_id)
            if not deleted:
                raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        logger.info("Ticket deleted: %s by %s", ticket_id, user.id)

    async def get_statistics(
        self,
        user: User,
        *,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> TicketStatistics:
        if user.role != Role.ADMIN:
            self._deny(user, TicketAction.VIEW, "statistics")
            raise TicketAccessDeniedError("Only administrators may view ticket statistics")
        if from_date is not None and to_date is not None and from_date > to_date:
            raise TicketValidationError("from_date must not be after to_date")
        with self._operation("statistics"):
            return await self._repository.statistics(from_date=from_date, to_date=to_date)

    async def _authorize(self, ticket_id: str, user: User, action: TicketAction) -> Ticket:
        """Load a ticket and check ``action``.

        Callers that may not even see the ticket get the same not-found error
        as for a missing ticket.
        """

        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        if is_allowed(user, ticket, action):
            return ticket

        self._deny(user, action, ticket_id)
        if action != TicketAction.VIEW and is_allowed(user, ticket, TicketAction.VIEW):
            raise TicketAccessDeniedError(f"Not allowed to {action.value} ticket {ticket_id}")
        raise TicketNotFoundError(f"Ticket {ticket_id} not found")

    def _deny(self, user: User, action: TicketAction, target: str) -> None:
        self._metrics.counter(TICKET_ACCESS_DENIED, label_names=("action",)).inc(
            labels={"action": action.value}
        )
        logger.warning("Denied %s on %s for user %s (%s)", action.value, target, user.id, user.role.value)

    def _check_transition(self, current: TicketStatus, target: TicketStatus) -> None:
        try:
            self._state_machine.assert_transition(current, target)
        except ValueError as exc:
            raise InvalidTicketTransitionError(str(exc)) from exc

    async def _save(self, ticket: Ticket, history: Sequence[TicketHistoryEntry]) -> None:
        saved = await self._repository.save_ticket(ticket, history)
        if not saved:
            raise TicketNotFoundError(f"Ticket {ticket.id} not found")
        self._count_history(history)

    def _count_history(self, history: Sequence[TicketHistoryEntry]) -> None:
        counter = self._metrics.counter(TICKET_HISTORY_ENTRIES, label_names=("field",))
        for entry in history:
            counter.inc(labels={"field": entry.field_name})

    def _normalise_page(self, criteria: TicketFilter) -> TicketFilter:
        if criteria.page < 1:
            raise TicketValidationError("page must be 1 or greater")
        if criteria.page_size < 1:
            raise TicketValidationError("page size must be 1 or greater")
        if criteria.page_size > self._page_size_max:
            return replace(criteria, page_size=self._page_size_max)
        return criteria

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        with _tracer.start_as_current_span(f"tickets.{name}"):
            with self._metrics.time_distribution(
                TICKET_OPERATION_DURATION,
                label_names=("operation",),
                labels={"operation": name},
            ):
                yield

    @staticmethod
    async def _publish(event: str, call: Awaitable[None]) -> None:
        try:
            await call
        except Exception:
            logger.exception("Failed to publish %s event", event)

    @staticmethod
    def _history(
        ticket: Ticket,
        user: User,
        field: str,
        old: Any,
        new: Any,
        reason: str,
        now: datetime,
    ) -> TicketHistoryEntry:
        return TicketHistoryEntry(
            id=str(uuid.uuid4()),
            ticket_id=ticket.id,
            field_name=field,
            old_value=_text(old),
            new_value=_text(new),
            changed_by_id=user.id,
            change_reason=reason,
            created_at=now,
        )
