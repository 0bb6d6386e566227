from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable
from uuid import uuid4

from helpdesk.metrics import MetricsRegistry, metrics_registry
from helpdesk.notifications.email import TicketNotifier, TicketSummary
from helpdesk.profiles.models import SessionContext

from .errors import (
    AssignmentConflictError,
    TicketNotFoundError,
    TicketPermissionError,
    TicketStorageError,
    TicketValidationError,
)
from .events import (
    AssignmentChanged,
    MessageAppended,
    RatingSubmitted,
    TicketCreated,
    TicketEventBus,
    TicketPriorityChanged,
    TicketStatusChanged,
)
from .handoff import HandoffResult, SupportHandoffCoordinator
from .models import (
    RatingSummary,
    Ticket,
    TicketAggregate,
    TicketAssignment,
    TicketMessage,
    TicketRating,
)
from .repository import TicketRepository
from .state import StatusTransition, TicketLifecycle, TicketPriority, TicketStatus

if TYPE_CHECKING:
    from helpdesk.profiles.repository import ProfileRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class MessagePostResult:
    """A stored message, the ticket after the append, and the handoff outcome if any."""

    message: TicketMessage
    ticket: Ticket
    handoff: HandoffResult | None = None


@dataclass(slots=True)
class AssignmentOutcome:
    assignment: TicketAssignment
    announcement: TicketMessage | None = None


@dataclass(slots=True)
class TicketService:
    """High level orchestration for ticket lifecycle operations.

    Every operation receives the acting :class:`SessionContext` and applies the
    role rules from :class:`TicketLifecycle` before touching storage.
    """

    repository: TicketRepository
    profiles: ProfileRepository
    coordinator: SupportHandoffCoordinator
    events: TicketEventBus = field(default_factory=TicketEventBus)
    notifier: TicketNotifier | None = None
    metrics: MetricsRegistry = field(default_factory=lambda: metrics_registry)
    clock: Callable[[], datetime] = _utcnow

    async def ensure_schema(self) -> None:
        await self.repository.ensure_schema()

    async def create_ticket(
        self,
        session: SessionContext,
        *,
        title: str,
        description: str,
        priority: TicketPriority = TicketPriority.MEDIUM,
        initial_message: str | None = None,
    ) -> Ticket:
        title = title.strip()
        description = description.strip()
        if not title or not description:
            raise TicketValidationError("Title and description are required")
        initial_message = (initial_message or "").strip() or None

        now = self.clock()
        ticket = Ticket(
            id=str(uuid4()),
            user_id=session.user_id,
            title=title,
            description=description,
            status=TicketLifecycle.initial_state(),
            priority=priority,
            created_at=now,
            updated_at=now,
            initial_message=initial_message,
        )
        first_message = None
        if initial_message is not None:
            first_message = TicketMessage(
                id=str(uuid4()),
                ticket_id=ticket.id,
                user_id=session.user_id,
                body=initial_message,
                is_bot=False,
                created_at=now,
            )
        await self.repository.create_ticket(ticket, first_message)

        self.metrics.counter("tickets_created_total").inc(labels={"priority": priority.value})
        logger.info("Ticket %s created by %s with priority %s", ticket.id, session.user_id, priority.value)
        await self.events.publish(
            TicketCreated(ticket_id=ticket.id, occurred_at=now, user_id=session.user_id, priority=priority)
        )
        await self._notify_created(ticket, session)
        return ticket

    async def list_tickets(
        self, session: SessionContext, *, status: TicketStatus | None = None
    ) -> list[Ticket]:
        owner = None if session.is_staff else session.user_id
        return await self.repository.list_tickets(user_id=owner, status=status)

    async def get_ticket(self, session: SessionContext, ticket_id: str) -> TicketAggregate:
        aggregate = await self.repository.get_aggregate(ticket_id)
        if aggregate is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        TicketLifecycle.assert_can_view(aggregate.ticket, session)
        return aggregate

    async def change_status(
        self, session: SessionContext, ticket_id: str, *, new_status: TicketStatus
    ) -> Ticket:
        ticket = await self._load_visible(session, ticket_id)
        now = self.clock()
        transition = TicketLifecycle.plan_status_change(ticket, session, new_status, now)
        if transition is None:
            return ticket

        updated = await self.repository.apply_status_transition(ticket_id, transition, now)
        if updated is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        await self._record_status_change(ticket_id, transition, actor_id=session.user_id, reason="manual")
        return updated

    async def change_priority(
        self, session: SessionContext, ticket_id: str, *, new_priority: TicketPriority
    ) -> Ticket:
        ticket = await self._load_visible(session, ticket_id)
        TicketLifecycle.assert_can_change_priority(session)
        if ticket.priority == new_priority:
            return ticket

        now = self.clock()
        updated = await self.repository.update_priority(ticket_id, new_priority, now)
        if updated is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        await self.events.publish(
            TicketPriorityChanged(
                ticket_id=ticket_id,
                occurred_at=now,
                from_priority=ticket.priority,
                to_priority=new_priority,
                actor_id=session.user_id,
            )
        )
        return updated

    async def post_message(self, session: SessionContext, ticket_id: str, *, body: str) -> MessagePostResult:
        body = body.strip()
        if not body:
            raise TicketValidationError("Message body must not be empty")
        ticket = await self._load_visible(session, ticket_id)

        message = TicketMessage(
            id=str(uuid4()),
            ticket_id=ticket_id,
            user_id=session.user_id,
            body=body,
            is_bot=False,
            created_at=self.clock(),
        )
        updated = await self._append(message, actor_id=session.user_id)

        customer_message = TicketLifecycle.is_customer_message(ticket, session)
        self.metrics.counter("ticket_messages_total").inc(
            labels={"author_kind": "customer" if customer_message else "staff"}
        )
        result = MessagePostResult(message=message, ticket=updated)
        if customer_message:
            result.handoff = await self.coordinator.handle_customer_message(updated)
        return result

    async def take_over(self, session: SessionContext, ticket_id: str) -> AssignmentOutcome:
        TicketLifecycle.assert_staff(session, "take over tickets")
        ticket = await self._load_visible(session, ticket_id)

        existing = await self.repository.get_assignment(ticket_id)
        if existing is not None:
            if existing.support_user_id == session.user_id:
                return AssignmentOutcome(assignment=existing)
            raise AssignmentConflictError(f"Ticket {ticket_id} is already handled by another agent")

        now = self.clock()
        assignment = await self.repository.claim_assignment(
            TicketAssignment(
                id=str(uuid4()),
                ticket_id=ticket_id,
                support_user_id=session.user_id,
                assigned_by=session.user_id,
                created_at=now,
            )
        )
        if ticket.needs_attention:
            await self.repository.set_needs_attention(ticket_id, False)

        agent_name = await self._display_name(session.user_id, fallback=session.nickname or session.email)
        announcement = await self._announce(ticket_id, f"{agent_name} has taken over this conversation.")
        await self.events.publish(
            AssignmentChanged(
                ticket_id=ticket_id,
                occurred_at=now,
                support_user_id=session.user_id,
                previous_support_user_id=None,
                actor_id=session.user_id,
            )
        )
        logger.info("Ticket %s taken over by %s", ticket_id, session.user_id)
        return AssignmentOutcome(assignment=assignment, announcement=announcement)

    async def transfer(self, session: SessionContext, ticket_id: str, *, agent_id: str) -> AssignmentOutcome:
        TicketLifecycle.assert_staff(session, "transfer tickets")
        await self._load_visible(session, ticket_id)

        existing = await self.repository.get_assignment(ticket_id)
        if existing is None:
            raise AssignmentConflictError(f"Ticket {ticket_id} has no assignment to transfer")
        target = await self.profiles.get_profile(agent_id)
        if target is None or not (target.is_support or target.is_admin):
            raise TicketValidationError(f"User {agent_id} is not a support agent")
        if existing.support_user_id == agent_id:
            return AssignmentOutcome(assignment=existing)

        now = self.clock()
        assignment = await self.repository.set_assignment(
            TicketAssignment(
                id=str(uuid4()),
                ticket_id=ticket_id,
                support_user_id=agent_id,
                assigned_by=session.user_id,
                created_at=now,
            )
        )
        announcement = await self._announce(ticket_id, f"This conversation was transferred to {target.display_name}.")
        await self.events.publish(
            AssignmentChanged(
                ticket_id=ticket_id,
                occurred_at=now,
                support_user_id=agent_id,
                previous_support_user_id=existing.support_user_id,
                actor_id=session.user_id,
            )
        )
        logger.info("Ticket %s transferred from %s to %s", ticket_id, existing.support_user_id, agent_id)
        return AssignmentOutcome(assignment=assignment, announcement=announcement)

    async def release(self, session: SessionContext, ticket_id: str) -> bool:
        """Drop human ownership so the assistant may answer again; ``False`` if nobody held it."""

        TicketLifecycle.assert_staff(session, "release tickets")
        await self._load_visible(session, ticket_id)

        existing = await self.repository.get_assignment(ticket_id)
        if existing is None:
            return False
        deleted = await self.repository.delete_assignment(ticket_id)
        if deleted:
            await self.events.publish(
                AssignmentChanged(
                    ticket_id=ticket_id,
                    occurred_at=self.clock(),
                    support_user_id=None,
                    previous_support_user_id=existing.support_user_id,
                    actor_id=session.user_id,
                )
            )
        return deleted

    async def rate_ticket(
        self,
        session: SessionContext,
        ticket_id: str,
        *,
        rating: int,
        feedback: str | None = None,
    ) -> TicketRating:
        ticket = await self._load_visible(session, ticket_id)
        TicketLifecycle.assert_can_rate(ticket, session, rating)

        now = self.clock()
        stored = await self.repository.add_rating(
            TicketRating(
                id=str(uuid4()),
                ticket_id=ticket_id,
                rating=rating,
                feedback=(feedback or "").strip() or None,
                created_at=now,
            )
        )
        await self.events.publish(RatingSubmitted(ticket_id=ticket_id, occurred_at=now, rating=rating))
        return stored

    async def list_ratings(self, session: SessionContext) -> list[RatingSummary]:
        if not session.is_admin:
            raise TicketPermissionError("Only administrators may view ticket ratings")
        return await self.repository.list_ratings()

    async def _load_visible(self, session: SessionContext, ticket_id: str) -> Ticket:
        ticket = await self.repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        TicketLifecycle.assert_can_view(ticket, session)
        return ticket

    async def _append(self, message: TicketMessage, *, actor_id: str) -> Ticket:
        stored = await self.repository.append_message(message)
        if stored is None:
            raise TicketNotFoundError(f"Ticket {message.ticket_id} not found")
        ticket, reopen = stored
        await self.events.publish(
            MessageAppended(
                ticket_id=message.ticket_id,
                occurred_at=message.created_at,
                message_id=message.id,
                author_id=message.user_id,
                is_bot=message.is_bot,
            )
        )
        if reopen is not None:
            logger.info("Ticket %s reopened by a new message", message.ticket_id)
            await self._record_status_change(message.ticket_id, reopen, actor_id=actor_id, reason="reopened")
        return ticket

    async def _announce(self, ticket_id: str, body: str) -> TicketMessage:
        message = TicketMessage(
            id=str(uuid4()),
            ticket_id=ticket_id,
            user_id=self.coordinator.assistant_user_id,
            body=body,
            is_bot=True,
            created_at=self.clock(),
        )
        await self._append(message, actor_id=message.user_id)
        return message

    async def _record_status_change(
        self, ticket_id: str, transition: StatusTransition, *, actor_id: str | None, reason: str
    ) -> None:
        self.metrics.counter("ticket_status_changes_total").inc(labels={"to_status": transition.to_status.value})
        await self.events.publish(
            TicketStatusChanged(
                ticket_id=ticket_id,
                occurred_at=self.clock(),
                from_status=transition.from_status,
                to_status=transition.to_status,
                actor_id=actor_id,
                reason=reason,
            )
        )

    async def _display_name(self, user_id: str, *, fallback: str | None) -> str:
        profile = await self.profiles.get_profile(user_id)
        if profile is not None:
            return profile.display_name
        return fallback or "A support agent"

    async def _notify_created(self, ticket: Ticket, session: SessionContext) -> None:
        if self.notifier is None:
            return
        try:
            profile = await self.profiles.get_profile(session.user_id)
        except TicketStorageError:
            logger.warning("Could not load profile %s for ticket notification", session.user_id)
            profile = None
        summary = TicketSummary(
            ticket_id=ticket.id,
            title=ticket.title,
            description=ticket.description,
            priority=ticket.priority.value,
            customer_name=profile.display_name if profile else (session.nickname or session.email or session.user_id),
            customer_email=profile.email if profile else session.email,
        )
        await self.notifier.notify(summary)
