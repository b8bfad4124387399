from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field

from hoteldesk.core.config import Settings, get_settings
from hoteldesk.dependencies.auth import CurrentUser
from hoteldesk.dependencies.tickets import AdminUser, AssignerUser, StaffUser, TicketServiceDep
from hoteldesk.tickets.models import (
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
    TicketUpdate,
)
from hoteldesk.tickets.state import TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    service_type: ServiceType
    category: TicketCategory
    sub_category: str | None = Field(default=None, max_length=100)
    priority: TicketPriority = TicketPriority.MEDIUM
    booking_id: str | None = None
    room_id: str | None = None
    hotel_id: str | None = None


class TicketUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, min_length=1)
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    assignee_id: str | None = None
    resolution: str | None = None
    work_notes: str | None = None
    due_date: datetime | None = None

    def ensure_payload(self) -> None:
        if not self.model_fields_set:
            raise HTTPException(status_code=400, detail="No fields provided for update")

    def to_update(self) -> TicketUpdate:
        return TicketUpdate(**self.model_dump())


class TicketAssignRequest(BaseModel):
    assignee_id: str = Field(..., min_length=1)


class TicketCloseRequest(BaseModel):
    resolution: str = Field(..., min_length=1)


class CommentCreateRequest(BaseModel):
    comment: str = Field(..., min_length=1)
    is_internal: bool = False


class AttachmentCreateRequest(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    file_path: str = Field(..., min_length=1)
    content_type: str = Field(default="application/octet-stream", max_length=100)
    file_size: int = Field(..., ge=0)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_number: str
    title: str
    description: str
    service_type: ServiceType
    category: TicketCategory
    sub_category: str | None
    priority: TicketPriority
    status: TicketStatus
    risk_level: RiskLevel
    impact: RiskLevel
    requester_id: str
    assignee_id: str | None
    booking_id: str | None
    room_id: str | None
    hotel_id: str | None
    due_date: datetime | None
    resolved_at: datetime | None
    closed_at: datetime | None
    resolution: str | None
    work_notes: str | None
    created_at: datetime
    updated_at: datetime
    comments_count: int
    attachments_count: int


class TicketPageResponse(BaseModel):
    items: list[TicketResponse]
    total: int
    page: int
    page_size: int


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    author_id: str
    comment: str
    is_internal: bool
    created_at: datetime


class AttachmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    file_name: str
    file_path: str
    content_type: str
    file_size: int
    uploaded_by_id: str
    created_at: datetime


class HistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    field_name: str
    old_value: str | None
    new_value: str | None
    changed_by_id: str
    change_reason: str
    created_at: datetime


class StatisticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_tickets: int
    by_status: dict[str, int]
    by_priority: dict[str, int]
    by_service_type: dict[str, int]
    by_category: dict[str, int]
    average_resolution_time_days: float


def ticket_filter(
    settings: Annotated[Settings, Depends(get_settings)],
    search: str | None = Query(default=None, max_length=200),
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    priority: TicketPriority | None = None,
    service_type: ServiceType | None = None,
    category: TicketCategory | None = None,
    requester_id: str | None = None,
    assignee_id: str | None = None,
    booking_id: str | None = None,
    room_id: str | None = None,
    hotel_id: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    due_from: datetime | None = None,
    due_to: datetime | None = None,
    sort_by: SortField = SortField.CREATED_AT,
    sort_direction: SortDirection = SortDirection.DESC,
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1),
) -> TicketFilter:
    return TicketFilter(
        search=search,
        status=status_filter,
        priority=priority,
        service_type=service_type,
        category=category,
        requester_id=requester_id,
        assignee_id=assignee_id,
        booking_id=booking_id,
        room_id=room_id,
        hotel_id=hotel_id,
        created_from=created_from,
        created_to=created_to,
        due_from=due_from,
        due_to=due_to,
        sort_by=sort_by,
        sort_direction=sort_direction,
        page=page,
        page_size=page_size or settings.ticket_page_size_default,
    )


TicketFilterDep = Annotated[TicketFilter, Depends(ticket_filter)]


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def _to_page_response(page: TicketPage) -> TicketPageResponse:
    return TicketPageResponse(
        items=[_to_response(ticket) for ticket in page.items],
        total=page.total,
        page=page.page,
        page_size=page.page_size,
    )


def _to_comment_response(comment: TicketComment) -> CommentResponse:
    return CommentResponse.model_validate(comment)


def _to_attachment_response(attachment: TicketAttachment) -> AttachmentResponse:
    return AttachmentResponse.model_validate(attachment)


def _to_history_response(entry: TicketHistoryEntry) -> HistoryResponse:
    return HistoryResponse.model_validate(entry)


def _to_statistics_response(stats: TicketStatistics) -> StatisticsResponse:
    return StatisticsResponse.model_validate(stats)


@router.get("", response_model=TicketPageResponse)
async def list_tickets(criteria: TicketFilterDep, service: TicketServiceDep, user: CurrentUser) -> TicketPageResponse:
    page = await service.get_tickets(criteria, user)
    return _to_page_response(page)


@router.get("/my-tickets", response_model=TicketPageResponse)
async def list_my_tickets(
    criteria: TicketFilterDep, service: TicketServiceDep, user: CurrentUser
) -> TicketPageResponse:
    page = await service.get_my_tickets(criteria, user)
    return _to_page_response(page)


@router.get("/assigned-to-me", response_model=TicketPageResponse)
async def list_assigned_tickets(
    criteria: TicketFilterDep, service: TicketServiceDep, user: StaffUser
) -> TicketPageResponse:
    page = await service.get_assigned_tickets(criteria, user)
    return _to_page_response(page)


@router.get("/statistics", response_model=StatisticsResponse)
async def get_statistics(
    service: TicketServiceDep,
    user: AdminUser,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> StatisticsResponse:
    stats = await service.get_statistics(user, from_date=from_date, to_date=to_date)
    return _to_statistics_response(stats)


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> TicketResponse:
    ticket = await service.create_ticket(user, **payload.model_dump())
    return _to_response(ticket)


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: str, service: TicketServiceDep, user: CurrentUser) -> TicketResponse:
    ticket = await service.get_ticket(ticket_id, user)
    return _to_response(ticket)


@router.put("/{ticket_id}", response_model=TicketResponse)
async def update_ticket(
    ticket_id: str,
    payload: TicketUpdateRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> TicketResponse:
    payload.ensure_payload()
    ticket = await service.update_ticket(ticket_id, payload.to_update(), user)
    return _to_response(ticket)


@router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket(ticket_id: str, service: TicketServiceDep, user: AdminUser) -> Response:
    await service.delete_ticket(ticket_id, user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{ticket_id}/assign", response_model=TicketResponse)
async def assign_ticket(
    ticket_id: str,
    payload: TicketAssignRequest,
    service: TicketServiceDep,
    user: AssignerUser,
) -> TicketResponse:
    ticket = await service.assign_ticket(ticket_id, payload.assignee_id, user)
    return _to_response(ticket)


@router.post("/{ticket_id}/close", response_model=TicketResponse)
async def close_ticket(
    ticket_id: str,
    payload: TicketCloseRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> TicketResponse:
    ticket = await service.close_ticket(ticket_id, payload.resolution, user)
    return _to_response(ticket)


@router.get("/{ticket_id}/comments", response_model=list[CommentResponse])
async def list_comments(ticket_id: str, service: TicketServiceDep, user: CurrentUser) -> list[CommentResponse]:
    comments = await service.get_comments(ticket_id, user)
    return [_to_comment_response(comment) for comment in comments]


@router.post("/{ticket_id}/comments", response_model=CommentResponse, status_code=status.HTTP_201_CREATED)
async def add_comment(
    ticket_id: str,
    payload: CommentCreateRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> CommentResponse:
    comment = await service.add_comment(ticket_id, payload.comment, user, is_internal=payload.is_internal)
    return _to_comment_response(comment)


@router.get("/{ticket_id}/history", response_model=list[HistoryResponse])
async def get_history(ticket_id: str, service: TicketServiceDep, user: CurrentUser) -> list[HistoryResponse]:
    entries = await service.get_history(ticket_id, user)
    return [_to_history_response(entry) for entry in entries]


@router.post("/{ticket_id}/attachments", response_model=AttachmentResponse, status_code=status.HTTP_201_CREATED)
async def add_attachment(
    ticket_id: str,
    payload: AttachmentCreateRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> AttachmentResponse:
    attachment = await service.add_attachment(ticket_id, user, **payload.model_dump())
    return _to_attachment_response(attachment)
