"""Database models and utilities."""

from .models import (
    MessageTable,
    ProfileTable,
    TicketAssignmentTable,
    TicketRatingTable,
    TicketTable,
)

__all__ = [
    "MessageTable",
    "ProfileTable",
    "TicketAssignmentTable",
    "TicketRatingTable",
    "TicketTable",
]
