from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from .state import TicketPriority, TicketStatus


@dataclass(slots=True)
class Ticket:
    """Aggregate root for a customer support request."""

    id: str
    user_id: str
    title: str
    description: str
    status: TicketStatus
    priority: TicketPriority
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None = None
    initial_message: str | None = None
    needs_attention: bool = False


@dataclass(slots=True)
class TicketMessage:
    """Immutable conversation entry; ``is_bot`` marks assistant and system messages."""

    id: str
    ticket_id: str
    user_id: str
    body: str
    is_bot: bool
    created_at: datetime


@dataclass(slots=True)
class TicketAssignment:
    """Live human ownership of a ticket."""

    id: str
    ticket_id: str
    support_user_id: str
    assigned_by: str
    created_at: datetime


@dataclass(slots=True)
class TicketRating:
    """Customer satisfaction score for a closed ticket."""

    id: str
    ticket_id: str
    rating: int
    feedback: str | None
    created_at: datetime


@dataclass(slots=True)
class RatingSummary:
    """Rating joined with the ticket it belongs to, for the surveys listing."""

    rating: TicketRating
    ticket_title: str
    ticket_priority: TicketPriority
    customer_nickname: str | None


@dataclass(slots=True)
class TicketAggregate:
    """Ticket bundled with its conversation, assignment and rating."""

    ticket: Ticket
    messages: Sequence[TicketMessage] = field(default_factory=list)
    assignment: TicketAssignment | None = None
    rating: TicketRating | None = None
