from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from hoteldesk.dependencies.auth import role_required
from hoteldesk.security import Role, User
from hoteldesk.tickets.service import TicketService

require_admin = role_required(Role.ADMIN)
require_assigner = role_required(Role.ADMIN, Role.RECEPTION)
require_staff = role_required(Role.ADMIN, Role.RECEPTION, Role.CLEANING_STAFF)

AdminUser = Annotated[User, Depends(require_admin)]
AssignerUser = Annotated[User, Depends(require_assigner)]
StaffUser = Annotated[User, Depends(require_staff)]


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
