"""Ticket lifecycle domain: models, rules, persistence and orchestration."""

from .errors import (
    AssignmentConflictError,
    RatingRejectedError,
    TicketNotFoundError,
    TicketPermissionError,
    TicketServiceError,
    TicketStorageError,
    TicketValidationError,
)
from .handoff import HandoffAction, HandoffResult, SupportHandoffCoordinator
from .models import Ticket, TicketAggregate, TicketAssignment, TicketMessage, TicketRating
from .reaper import InactivityPolicy, InactivityReaper, ReaperReport
from .repository import TicketRepository
from .service import AssignmentOutcome, MessagePostResult, TicketService
from .state import TicketLifecycle, TicketPriority, TicketStatus

__all__ = [
    "AssignmentConflictError",
    "AssignmentOutcome",
    "HandoffAction",
    "HandoffResult",
    "InactivityPolicy",
    "InactivityReaper",
    "MessagePostResult",
    "RatingRejectedError",
    "ReaperReport",
    "SupportHandoffCoordinator",
    "Ticket",
    "TicketAggregate",
    "TicketAssignment",
    "TicketLifecycle",
    "TicketMessage",
    "TicketNotFoundError",
    "TicketPermissionError",
    "TicketPriority",
    "TicketRating",
    "TicketRepository",
    "TicketService",
    "TicketServiceError",
    "TicketStatus",
    "TicketStorageError",
    "TicketValidationError",
]
