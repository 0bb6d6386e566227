"""Ticket lifecycle rules.

Everything here is a pure decision: given the current ticket, the acting
session and a requested change, work out the resulting status fields or raise.
Persistence and event emission happen in :mod:`helpdesk.tickets.service`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from helpdesk.profiles.models import SessionContext

from .errors import (
    RatingRejectedError,
    TicketNotFoundError,
    TicketPermissionError,
    TicketValidationError,
)

if TYPE_CHECKING:
    from .models import Ticket


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_RESPONSE = "waiting_for_response"
    SOLVED = "solved"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    """Ticket urgency as chosen by the customer or adjusted by staff."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass(frozen=True, slots=True)
class StatusTransition:
    """Column values a status change writes to the ticket row."""

    from_status: TicketStatus
    to_status: TicketStatus
    closed_at: datetime | None
    release_assignment: bool = False

    @property
    def is_reopen(self) -> bool:
        return self.from_status == TicketStatus.CLOSED and self.to_status != TicketStatus.CLOSED


class TicketLifecycle:
    """Role gating and side-effect planning for ticket transitions."""

    REOPEN_STATUS = TicketStatus.OPEN
    CUSTOMER_TARGETS = frozenset({TicketStatus.CLOSED})
    RATEABLE_STATUSES = frozenset({TicketStatus.CLOSED})

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.OPEN

    @staticmethod
    def is_owner(ticket: Ticket, session: SessionContext) -> bool:
        return ticket.user_id == session.user_id

    @classmethod
    def can_view(cls, ticket: Ticket, session: SessionContext) -> bool:
        return session.is_staff or cls.is_owner(ticket, session)

    @classmethod
    def assert_can_view(cls, ticket: Ticket, session: SessionContext) -> None:
        # Hidden tickets are reported as missing so ids cannot be probed.
        if not cls.can_view(ticket, session):
            raise TicketNotFoundError(f"Ticket {ticket.id} not found")

    @classmethod
    def is_customer_message(cls, ticket: Ticket, session: SessionContext) -> bool:
        """Whether a message posted by ``session`` counts as the customer speaking."""

        return cls.is_owner(ticket, session) and not session.is_staff

    @classmethod
    def assert_can_change_status(
        cls, ticket: Ticket, session: SessionContext, target: TicketStatus
    ) -> None:
        if session.is_staff:
            return
        if not cls.is_owner(ticket, session):
            raise TicketPermissionError("Only the ticket owner or support staff may change its status")
        if target not in cls.CUSTOMER_TARGETS:
            raise TicketPermissionError(f"Customers may not set status '{target.value}'")

    @staticmethod
    def assert_can_change_priority(session: SessionContext) -> None:
        if not session.is_staff:
            raise TicketPermissionError("Only support staff may change ticket priority")

    @staticmethod
    def assert_staff(session: SessionContext, action: str) -> None:
        if not session.is_staff:
            raise TicketPermissionError(f"Only support staff may {action}")

    @classmethod
    def plan_status_change(
        cls,
        ticket: Ticket,
        session: SessionContext,
        target: TicketStatus,
        now: datetime,
    ) -> StatusTransition | None:
        """Return the row update for an explicit status change, or ``None`` for a no-op."""

        cls.assert_can_change_status(ticket, session, target)
        if ticket.status == target:
            return None
        closing = target == TicketStatus.CLOSED
        return StatusTransition(
            from_status=ticket.status,
            to_status=target,
            closed_at=now if closing else None,
            release_assignment=closing,
        )

    @classmethod
    def plan_reopen(cls, ticket: Ticket) -> StatusTransition | None:
        """A message arriving on a closed ticket reopens it."""

        if ticket.status != TicketStatus.CLOSED:
            return None
        return StatusTransition(
            from_status=ticket.status,
            to_status=cls.REOPEN_STATUS,
            closed_at=None,
        )

    @classmethod
    def plan_inactivity_close(cls, ticket: Ticket, now: datetime) -> StatusTransition:
        return StatusTransition(
            from_status=ticket.status,
            to_status=TicketStatus.CLOSED,
            closed_at=now,
            release_assignment=True,
        )

    @classmethod
    def assert_can_rate(cls, ticket: Ticket, session: SessionContext, rating: int) -> None:
        if not cls.is_owner(ticket, session):
            raise TicketPermissionError("Only the ticket owner may rate it")
        if ticket.status not in cls.RATEABLE_STATUSES:
            raise RatingRejectedError("Only closed tickets can be rated")
        if not 1 <= rating <= 5:
            raise TicketValidationError("Rating must be between 1 and 5")
