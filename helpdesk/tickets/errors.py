from __future__ import annotations


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""


class TicketNotFoundError(TicketServiceError):
    """Raised when a ticket could not be located or is not visible to the actor."""


class TicketPermissionError(TicketServiceError):
    """Raised when the actor's role does not allow the requested change."""


class TicketValidationError(TicketServiceError):
    """Raised when a request carries values the lifecycle rejects outright."""


class TicketStorageError(TicketServiceError):
    """Raised when a persistence call fails; the operation may be retried."""


class AssignmentConflictError(TicketServiceError):
    """Raised when a take-over or transfer does not match the assignment state."""


class RatingRejectedError(TicketServiceError):
    """Raised when a rating is submitted for a ticket that cannot be rated."""
