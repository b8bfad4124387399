"""Translate ticket domain errors into HTTP responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from hoteldesk.tickets.errors import (
    InvalidTicketTransitionError,
    TicketAccessDeniedError,
    TicketNotFoundError,
    TicketNumberConflictError,
    TicketServiceError,
    TicketValidationError,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses come before their bases.
_STATUS_BY_ERROR: tuple[tuple[type[TicketServiceError], int], ...] = (
    (TicketValidationError, status.HTTP_400_BAD_REQUEST),
    (TicketAccessDeniedError, status.HTTP_403_FORBIDDEN),
    (TicketNotFoundError, status.HTTP_404_NOT_FOUND),
    (TicketNumberConflictError, status.HTTP_409_CONFLICT),
    (InvalidTicketTransitionError, status.HTTP_409_CONFLICT),
)


def status_for(exc: TicketServiceError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def ticket_error_handler(request: Request, exc: TicketServiceError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("Ticket error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": "Internal server error"})
    logger.info("Ticket request %s %s rejected (%d): %s", request.method, request.url.path, status_code, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


EXCEPTION_HANDLERS = {
    TicketServiceError: ticket_error_handler,
    RequestValidationError: validation_error_handler,
    Exception: unhandled_exception_handler,
}


def register_exception_handlers(app: FastAPI) -> None:
    for exception_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exception_class, handler)
