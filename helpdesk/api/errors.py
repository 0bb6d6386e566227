from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from helpdesk.tickets.errors import (
    AssignmentConflictError,
    RatingRejectedError,
    TicketNotFoundError,
    TicketPermissionError,
    TicketServiceError,
    TicketStorageError,
    TicketValidationError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR: tuple[tuple[type[TicketServiceError], int], ...] = (
    (TicketNotFoundError, 404),
    (TicketPermissionError, 403),
    (TicketValidationError, 422),
    (AssignmentConflictError, 409),
    (RatingRejectedError, 409),
    (TicketStorageError, 503),
)


def status_for(exc: TicketServiceError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def ticket_error_handler(request: Request, exc: TicketServiceError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {"Retry-After": "5"} if isinstance(exc, TicketStorageError) else None
    return JSONResponse(status_code=status_code, content={"detail": str(exc)}, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TicketServiceError, ticket_error_handler)
