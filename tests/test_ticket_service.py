from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from hoteldesk.db.models import BookingTable
from hoteldesk.metrics import MetricsRegistry
from hoteldesk.metrics.definitions import TICKET_ACCESS_DENIED, TICKET_NUMBER_CONFLICTS, TICKETS_CREATED
from hoteldesk.tickets.errors import (
    BookingNotFoundError,
    InvalidTicketTransitionError,
    TicketAccessDeniedError,
    TicketNotFoundError,
    TicketNumberConflictError,
    TicketValidationError,
)
from hoteldesk.tickets.models import RiskLevel, ServiceType, TicketFilter, TicketPriority, TicketUpdate
from hoteldesk.tickets.repository import TicketRepository
from hoteldesk.tickets.service import TicketService
from hoteldesk.tickets.state import TicketStateMachine, TicketStatus
from tests.factories import (
    ADMIN,
    ALL_USERS,
    CLEANER,
    GUEST,
    GUEST_TWO,
    RECEPTION,
    T0,
    FixedClock,
    RecordingNotifier,
    make_ticket,
)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def service(
    repository: TicketRepository, clock: FixedClock, metrics: MetricsRegistry, notifier: RecordingNotifier
) -> TicketService:
    return TicketService(repository, notifier=notifier, clock=clock, metrics=metrics)


async def _create(service: TicketService, user=GUEST, **overrides):
    values = {
        "title": "No hot water",
        "description": "Shower in room 204 runs cold",
        "service_type": ServiceType.MAINTENANCE,
        "category": "Incident",
    }
    values.update(overrides)
    return await service.create_ticket(user, **values)


@pytest.mark.asyncio
async def test_scenario_cleaning_ticket_from_booking_through_close(
    service: TicketService,
    repository: TicketRepository,
    session_factory: async_sessionmaker,
    clock: FixedClock,
    notifier: RecordingNotifier,
):
    async with session_factory() as session:
        async with session.begin():
            session.add(BookingTable(id="booking-1", user_id=GUEST.id, room_id="room-204", hotel_id="hotel-1"))

    ticket = await _create(
        service,
        title="Extra towels",
        description="Please bring two towels",
        service_type=ServiceType.CLEANING,
        category="ServiceRequest",
        priority=TicketPriority.MEDIUM,
        booking_id="booking-1",
    )

    assert ticket.ticket_number == "TKT-2025-001"
    assert ticket.status == TicketStatus.OPEN
    assert ticket.due_date - ticket.created_at == timedelta(days=1)
    assert ticket.room_id == "room-204"
    assert ticket.hotel_id == "hotel-1"
    assert ticket.risk_level == RiskLevel.LOW
    assert ticket.impact == RiskLevel.MEDIUM

    clock.advance(minutes=10)
    assigned = await service.assign_ticket(ticket.id, CLEANER.id, RECEPTION)

    assert assigned.status == TicketStatus.IN_PROGRESS
    assert assigned.assignee_id == CLEANER.id
    history = await repository.get_history(ticket.id)
    assert (history[0].field_name, history[0].old_value, history[0].new_value) == ("Status", None, "Open")
    assert {(entry.field_name, entry.old_value, entry.new_value) for entry in history[1:]} == {
        ("Assignee", None, CLEANER.id),
        ("Status", "Open", "InProgress"),
    }

    clock.advance(minutes=30)
    closed = await service.close_ticket(ticket.id, "done", CLEANER)

    assert closed.status == TicketStatus.CLOSED
    assert closed.closed_at == clock.now
    assert closed.resolution == "done"
    stored = await service.get_ticket(ticket.id, GUEST)
    assert stored.status == TicketStatus.CLOSED
    assert stored.closed_at == clock.now
    assert notifier.names() == ["created", "assigned", "closed"]


@pytest.mark.asyncio
async def test_scenario_other_guest_cannot_see_ticket(service: TicketService):
    ticket = await _create(service)

    with pytest.raises(TicketNotFoundError):
        await service.get_ticket(ticket.id, GUEST_TWO)
    assert await service.can_view_ticket(ticket.id, GUEST_TWO) is False
    assert await service.can_view_ticket(ticket.id, GUEST) is True
    assert await service.can_view_ticket("missing", ADMIN) is False


@pytest.mark.asyncio
async def test_create_rejects_foreign_or_unknown_booking(
    service: TicketService, session_factory: async_sessionmaker
):
    async with session_factory() as session:
        async with session.begin():
            session.add(BookingTable(id="booking-2", user_id=GUEST_TWO.id))

    with pytest.raises(TicketAccessDeniedError):
        await _create(service, booking_id="booking-2")
    with pytest.raises(BookingNotFoundError):
        await _create(service, booking_id="booking-404")


@pytest.mark.asyncio
async def test_create_validates_input(service: TicketService):
    with pytest.raises(TicketValidationError):
        await _create(service, title="   ")
    with pytest.raises(TicketValidationError):
        await _create(service, service_type="Spa")
    with pytest.raises(TicketValidationError):
        await _create(service, priority="Urgent")


@pytest.mark.asyncio
async def test_ticket_numbers_increase_and_reset_per_year(service: TicketService, clock: FixedClock):
    first = await _create(service)
    second = await _create(service)
    clock.now = clock.now.replace(year=2026, month=1, day=1)
    third = await _create(service)

    assert [first.ticket_number, second.ticket_number, third.ticket_number] == [
        "TKT-2025-001",
        "TKT-2025-002",
        "TKT-2026-001",
    ]


@pytest.mark.asyncio
async def test_update_writes_one_history_row_per_changed_field(
    service: TicketService, repository: TicketRepository, clock: FixedClock, notifier: RecordingNotifier
):
    ticket = await _create(service)
    clock.advance(hours=1)

    updated = await service.update_ticket(
        ticket.id,
        TicketUpdate(title="Cold shower", description=ticket.description, work_notes="Check boiler"),
        ADMIN,
    )

    assert updated.title == "Cold shower"
    assert updated.updated_at == clock.now
    history = await repository.get_history(ticket.id)
    changes = {(entry.field_name, entry.old_value, entry.new_value, entry.change_reason) for entry in history[1:]}
    assert changes == {
        ("Title", "No hot water", "Cold shower", "Title updated"),
        ("WorkNotes", None, "Check boiler", "Work notes updated"),
    }
    assert all(entry.changed_by_id == ADMIN.id for entry in history[1:])
    assert notifier.names() == ["created", "updated"]


@pytest.mark.asyncio
async def test_update_with_unchanged_values_is_a_no_op(
    service: TicketService, repository: TicketRepository, notifier: RecordingNotifier
):
    ticket = await _create(service)

    result = await service.update_ticket(
        ticket.id, TicketUpdate(title=ticket.title, priority=ticket.priority, status=ticket.status), GUEST
    )

    assert result.updated_at == ticket.updated_at
    assert len(await repository.get_history(ticket.id)) == 1
    assert notifier.names() == ["created"]


@pytest.mark.asyncio
async def test_priority_change_recomputes_sla_from_creation(service: TicketService, clock: FixedClock):
    ticket = await _create(service, service_type=ServiceType.GENERAL, priority=TicketPriority.LOW)
    assert ticket.due_date - ticket.created_at == timedelta(days=3)

    clock.advance(hours=5)
    updated = await service.update_ticket(
        ticket.id,
        TicketUpdate(priority=TicketPriority.CRITICAL, due_date=T0 + timedelta(days=30)),
        ADMIN,
    )

    assert updated.due_date - updated.created_at == timedelta(hours=2)
    assert updated.risk_level == RiskLevel.HIGH
    assert updated.impact == RiskLevel.CRITICAL


@pytest.mark.asyncio
async def test_status_timestamps_are_set_once_and_kept(service: TicketService, clock: FixedClock):
    ticket = await _create(service)
    assert ticket.resolved_at is None and ticket.closed_at is None

    clock.advance(hours=1)
    resolved = await service.update_ticket(ticket.id, TicketUpdate(status=TicketStatus.RESOLVED), ADMIN)
    resolved_at = clock.now
    assert resolved.resolved_at == resolved_at
    assert resolved.closed_at is None

    clock.advance(hours=1)
    renamed = await service.update_ticket(ticket.id, TicketUpdate(title="Renamed"), ADMIN)
    assert renamed.resolved_at == resolved_at

    clock.advance(hours=1)
    closed = await service.update_ticket(ticket.id, TicketUpdate(status=TicketStatus.CLOSED), ADMIN)
    assert closed.closed_at == clock.now
    assert closed.resolved_at == resolved_at


@pytest.mark.asyncio
async def test_update_rejects_unknown_status(service: TicketService):
    ticket = await _create(service)

    with pytest.raises(TicketValidationError):
        await service.update_ticket(ticket.id, TicketUpdate(status="Escalated"), ADMIN)


@pytest.mark.asyncio
async def test_strict_state_machine_blocks_reopening(repository: TicketRepository, clock: FixedClock, metrics):
    service = TicketService(
        repository, clock=clock, metrics=metrics, state_machine=TicketStateMachine(strict=True)
    )
    ticket = await _create(service)
    await service.close_ticket(ticket.id, "fixed", GUEST)

    with pytest.raises(InvalidTicketTransitionError):
        await service.update_ticket(ticket.id, TicketUpdate(status=TicketStatus.OPEN), ADMIN)


@pytest.mark.asyncio
async def test_update_access_rules(service: TicketService, metrics: MetricsRegistry):
    ticket = await _create(service)

    # open maintenance ticket: visible to cleaning staff but not theirs to edit
    with pytest.raises(TicketAccessDeniedError):
        await service.update_ticket(ticket.id, TicketUpdate(title="Mine now"), CLEANER)
    with pytest.raises(TicketNotFoundError):
        await service.update_ticket(ticket.id, TicketUpdate(title="Mine now"), GUEST_TWO)
    with pytest.raises(TicketAccessDeniedError):
        await service.update_ticket(ticket.id, TicketUpdate(assignee_id=CLEANER.id), GUEST)

    denied = metrics.counter(TICKET_ACCESS_DENIED, label_names=("action",))
    assert denied.value(labels={"action": "modify"}) == 2
    assert denied.value(labels={"action": "assign"}) == 1


@pytest.mark.asyncio
async def test_assign_requires_existing_assignee_and_privileged_role(service: TicketService):
    ticket = await _create(service)

    with pytest.raises(TicketValidationError):
        await service.assign_ticket(ticket.id, "nobody", ADMIN)
    with pytest.raises(TicketAccessDeniedError):
        await service.assign_ticket(ticket.id, CLEANER.id, CLEANER)


@pytest.mark.asyncio
async def test_reassigning_in_progress_ticket_writes_only_assignee_row(
    service: TicketService, repository: TicketRepository, clock: FixedClock
):
    ticket = await _create(service)
    clock.advance(minutes=1)
    await service.assign_ticket(ticket.id, CLEANER.id, ADMIN)
    clock.advance(minutes=1)
    await service.assign_ticket(ticket.id, RECEPTION.id, ADMIN)

    history = await repository.get_history(ticket.id)
    assert [(entry.field_name, entry.old_value, entry.new_value) for entry in history[3:]] == [
        ("Assignee", CLEANER.id, RECEPTION.id)
    ]
    assert history[3].change_reason == "Ticket assigned to reception"


@pytest.mark.asyncio
async def test_close_permissions(service: TicketService):
    ticket = await _create(service)

    with pytest.raises(TicketAccessDeniedError):
        await service.close_ticket(ticket.id, "not mine", RECEPTION)
    with pytest.raises(TicketValidationError):
        await service.close_ticket(ticket.id, "", GUEST)

    closed = await service.close_ticket(ticket.id, "Works again", GUEST)
    assert closed.status == TicketStatus.CLOSED


@pytest.mark.asyncio
async def test_guest_never_sees_internal_comments(
    service: TicketService, clock: FixedClock, notifier: RecordingNotifier
):
    ticket = await _create(service, service_type=ServiceType.CLEANING)
    await service.add_comment(ticket.id, "When will someone come?", GUEST)
    clock.advance(minutes=1)
    await service.add_comment(ticket.id, "Guest is impatient", CLEANER, is_internal=True)

    guest_view = await service.get_comments(ticket.id, GUEST)
    staff_view = await service.get_comments(ticket.id, CLEANER)

    assert [comment.is_internal for comment in guest_view] == [False]
    assert [comment.comment for comment in staff_view] == ["When will someone come?", "Guest is impatient"]
    assert notifier.names() == ["created", "comment", "comment"]


@pytest.mark.asyncio
async def test_history_hides_work_notes_from_guests(service: TicketService, clock: FixedClock):
    ticket = await _create(service)
    clock.advance(minutes=1)
    await service.update_ticket(ticket.id, TicketUpdate(work_notes="Boiler pressure low"), ADMIN)

    assert [entry.field_name for entry in await service.get_history(ticket.id, GUEST)] == ["Status"]
    assert [entry.field_name for entry in await service.get_history(ticket.id, ADMIN)] == ["Status", "WorkNotes"]


@pytest.mark.asyncio
async def test_work_notes_are_never_returned_to_guests(service: TicketService, clock: FixedClock):
    ticket = await _create(service)
    clock.advance(minutes=1)
    await service.update_ticket(ticket.id, TicketUpdate(work_notes="Guest was rude to the plumber"), ADMIN)

    assert (await service.get_ticket(ticket.id, ADMIN)).work_notes == "Guest was rude to the plumber"
    assert (await service.get_ticket(ticket.id, GUEST)).work_notes is None
    page = await service.get_tickets(TicketFilter(), GUEST)
    assert [item.work_notes for item in page.items] == [None]
    mine = await service.get_my_tickets(TicketFilter(), GUEST)
    assert [item.work_notes for item in mine.items] == [None]

    clock.advance(minutes=1)
    unchanged = await service.update_ticket(ticket.id, TicketUpdate(title=ticket.title), GUEST)
    renamed = await service.update_ticket(ticket.id, TicketUpdate(title="Cold shower"), GUEST)
    closed = await service.close_ticket(ticket.id, "Fixed by itself", GUEST)
    assert (unchanged.work_notes, renamed.work_notes, closed.work_notes) == (None, None, None)

    assert (await service.get_ticket(ticket.id, ADMIN)).work_notes == "Guest was rude to the plumber"


@pytest.mark.asyncio
async def test_add_attachment_records_metadata(service: TicketService, repository: TicketRepository):
    ticket = await _create(service)

    attachment = await service.add_attachment(
        ticket.id, GUEST, file_name="shower.jpg", file_path="/uploads/shower.jpg", content_type="image/jpeg", file_size=512
    )

    assert attachment.uploaded_by_id == GUEST.id
    assert [item.id for item in await repository.list_attachments(ticket.id)] == [attachment.id]
    with pytest.raises(TicketValidationError):
        await service.add_attachment(ticket.id, GUEST, file_name="x", file_path="/x", content_type="", file_size=-1)


@pytest.mark.asyncio
async def test_listing_variants(service: TicketService):
    own = await _create(service)
    await _create(service, user=GUEST_TWO)
    await service.assign_ticket(own.id, CLEANER.id, ADMIN)

    mine = await service.get_my_tickets(TicketFilter(), GUEST)
    assigned = await service.get_assigned_tickets(TicketFilter(), CLEANER)
    everything = await service.get_tickets(TicketFilter(page_size=1000), ADMIN)

    assert [ticket.id for ticket in mine.items] == [own.id]
    assert [ticket.id for ticket in assigned.items] == [own.id]
    assert everything.total == 2
    assert everything.page_size == 100
    with pytest.raises(TicketAccessDeniedError):
        await service.get_assigned_tickets(TicketFilter(), GUEST)
    with pytest.raises(TicketValidationError):
        await service.get_tickets(TicketFilter(page=0), ADMIN)


@pytest.mark.asyncio
async def test_delete_and_statistics_are_admin_only(service: TicketService):
    ticket = await _create(service)

    with pytest.raises(TicketAccessDeniedError):
        await service.get_statistics(RECEPTION)
    with pytest.raises(TicketAccessDeniedError):
        await service.delete_ticket(ticket.id, GUEST)

    stats = await service.get_statistics(ADMIN)
    assert stats.total_tickets == 1

    await service.delete_ticket(ticket.id, ADMIN)
    with pytest.raises(TicketNotFoundError):
        await service.get_ticket(ticket.id, ADMIN)


@pytest.mark.asyncio
async def test_notifier_failure_does_not_undo_creation(repository: TicketRepository, clock: FixedClock, metrics):
    broken = RecordingNotifier()
    broken.ticket_created = AsyncMock(side_effect=RuntimeError("socket gone"))  # type: ignore[method-assign]
    service = TicketService(repository, notifier=broken, clock=clock, metrics=metrics)

    ticket = await _create(service)

    assert await repository.get_ticket(ticket.id) is not None


@pytest_asyncio.fixture
async def file_repository(tmp_path) -> TicketRepository:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'desk.db'}")
    repository = TicketRepository(async_sessionmaker(engine, expire_on_commit=False), engine=engine)
    await repository.ensure_schema()
    await repository.ensure_users(ALL_USERS)
    try:
        yield repository
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_creation_yields_unique_numbers(
    file_repository: TicketRepository, clock: FixedClock, metrics: MetricsRegistry
):
    service = TicketService(file_repository, clock=clock, metrics=metrics)

    tickets = await asyncio.gather(*(_create(service, title=f"Request {index}") for index in range(12)))

    numbers = sorted(ticket.ticket_number for ticket in tickets)
    assert numbers == [f"TKT-2025-{index:03d}" for index in range(1, 13)]
    assert metrics.counter(TICKET_NUMBER_CONFLICTS).value() == 0
    assert metrics.counter(TICKETS_CREATED, label_names=("service_type",)).value(
        labels={"service_type": "Maintenance"}
    ) == 12
    page = await service.get_tickets(TicketFilter(page_size=100), ADMIN)
    assert page.total == 12
    assert sorted(ticket.ticket_number for ticket in page.items) == numbers


@pytest.mark.asyncio
async def test_creation_retries_after_number_conflict(clock: FixedClock, metrics: MetricsRegistry):
    repository = AsyncMock()
    stored = make_ticket(id="stored", ticket_number="TKT-2025-007")
    repository.create_ticket = AsyncMock(side_effect=[TicketNumberConflictError("taken"), stored])
    service = TicketService(repository, clock=clock, metrics=metrics)

    ticket = await _create(service)

    assert ticket is stored
    assert repository.create_ticket.await_count == 2
    draft = repository.create_ticket.await_args.args[0]
    assert draft.ticket_number == ""
    assert metrics.counter(TICKET_NUMBER_CONFLICTS).value() == 1


@pytest.mark.asyncio
async def test_creation_gives_up_after_max_attempts(clock: FixedClock, metrics: MetricsRegistry):
    repository = AsyncMock()
    repository.create_ticket = AsyncMock(side_effect=TicketNumberConflictError("taken"))
    service = TicketService(repository, clock=clock, metrics=metrics, max_number_attempts=3)

    with pytest.raises(TicketNumberConflictError):
        await _create(service)

    assert repository.create_ticket.await_count == 3
