"""Decide whether the assistant may answer a customer message, and deliver its reply.

Human ownership always wins: a ticket with a live assignment, or one marked
urgent, never receives an automated reply. Otherwise the whole conversation is
forwarded to the assistant and its answer is stored as a bot message, or the
ticket is flagged for a human when the assistant asks to escalate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable
from uuid import uuid4

from opentelemetry import trace

from helpdesk.assistant.client import AssistantClient, AssistantError, ConversationTurn
from helpdesk.metrics import MetricsRegistry, metrics_registry

from .errors import AssignmentConflictError, TicketStorageError
from .events import EscalationRequested, MessageAppended, TicketEventBus
from .models import Ticket, TicketAssignment, TicketMessage
from .repository import TicketRepository
from .state import TicketPriority

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class HandoffAction(str, Enum):
    FORWARD = "forward"
    ASSISTANT_REPLIED = "assistant_replied"
    ESCALATED = "escalated"
    SUPPRESSED_ASSIGNED = "suppressed_assigned"
    SUPPRESSED_URGENT = "suppressed_urgent"
    BUSY = "busy"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass(frozen=True, slots=True)
class HandoffResult:
    """What happened after a customer message; ``acknowledgment`` is shown to the customer."""

    action: HandoffAction
    message: TicketMessage | None = None
    acknowledgment: str | None = None
    reason: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SupportHandoffCoordinator:
    """Gatekeeper between customer messages and the automated assistant."""

    def __init__(
        self,
        repository: TicketRepository,
        assistant: AssistantClient | None,
        *,
        events: TicketEventBus,
        assistant_user_id: str,
        acknowledgment: str,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._assistant = assistant
        self._events = events
        self._assistant_user_id = assistant_user_id
        self._acknowledgment = acknowledgment
        self._metrics = metrics or metrics_registry
        self._clock = clock
        self._in_flight: set[str] = set()

    @property
    def assistant_user_id(self) -> str:
        return self._assistant_user_id

    @staticmethod
    def decide(ticket: Ticket, assignment: TicketAssignment | None) -> HandoffAction:
        if assignment is not None:
            return HandoffAction.SUPPRESSED_ASSIGNED
        if ticket.priority == TicketPriority.URGENT:
            return HandoffAction.SUPPRESSED_URGENT
        return HandoffAction.FORWARD

    @staticmethod
    def build_conversation(messages: Iterable[TicketMessage]) -> list[ConversationTurn]:
        return [
            ConversationTurn(role="assistant" if message.is_bot else "user", content=message.body)
            for message in messages
        ]

    def is_busy(self, ticket_id: str) -> bool:
        return ticket_id in self._in_flight

    async def handle_customer_message(self, ticket: Ticket) -> HandoffResult:
        """Run the handoff rules for a customer message that is already stored."""

        result = await self._handle(ticket)
        self._metrics.counter("handoff_decisions_total").inc(labels={"outcome": result.action.value})
        logger.info("Handoff for ticket %s: %s", ticket.id, result.action.value)
        return result

    async def _handle(self, ticket: Ticket) -> HandoffResult:
        if self._assistant is None:
            return HandoffResult(HandoffAction.DISABLED)

        try:
            assignment = await self._repository.get_assignment(ticket.id)
        except TicketStorageError:
            logger.exception("Could not load assignment for ticket %s", ticket.id)
            return HandoffResult(HandoffAction.FAILED, reason="storage")

        action = self.decide(ticket, assignment)
        if action is not HandoffAction.FORWARD:
            return HandoffResult(action)

        # Single-threaded event loop: check and claim happen without an await in between.
        if ticket.id in self._in_flight:
            return HandoffResult(HandoffAction.BUSY)
        self._in_flight.add(ticket.id)
        try:
            return await self._forward(ticket)
        except TicketStorageError:
            logger.exception("Storage failure while handling assistant reply for ticket %s", ticket.id)
            return HandoffResult(HandoffAction.FAILED, reason="storage")
        finally:
            self._in_flight.discard(ticket.id)

    async def _forward(self, ticket: Ticket) -> HandoffResult:
        messages = await self._repository.list_messages(ticket.id)
        conversation = self.build_conversation(messages)

        with tracer.start_as_current_span("assistant.complete") as span:
            span.set_attribute("ticket.id", ticket.id)
            span.set_attribute("conversation.turns", len(conversation))
            try:
                with self._metrics.time_distribution("assistant_call_duration_seconds"):
                    reply = await self._assistant.complete(conversation)
            except AssistantError as exc:
                self._metrics.counter("assistant_failures_total").inc(labels={"reason": exc.reason})
                logger.warning("Assistant failed for ticket %s (%s): %s", ticket.id, exc.reason, exc)
                return HandoffResult(HandoffAction.FAILED, reason=exc.reason)

        # A staff member may have taken the ticket over while the assistant was thinking.
        if await self._repository.get_assignment(ticket.id) is not None:
            return self._taken_over(ticket.id)

        if reply.escalate:
            try:
                await self._repository.set_needs_attention(ticket.id, True, require_unassigned=True)
            except AssignmentConflictError:
                return self._taken_over(ticket.id)
            await self._events.publish(EscalationRequested(ticket_id=ticket.id, occurred_at=self._clock()))
            return HandoffResult(HandoffAction.ESCALATED, acknowledgment=self._acknowledgment)

        message = TicketMessage(
            id=str(uuid4()),
            ticket_id=ticket.id,
            user_id=self._assistant_user_id,
            body=reply.reply or "",
            is_bot=True,
            created_at=self._clock(),
        )
        try:
            stored = await self._repository.append_message(message, reopen=False, require_unassigned=True)
        except AssignmentConflictError:
            return self._taken_over(ticket.id)
        if stored is None:
            return HandoffResult(HandoffAction.FAILED, reason="missing_ticket")
        self._metrics.counter("ticket_messages_total").inc(labels={"author_kind": "assistant"})
        await self._events.publish(
            MessageAppended(
                ticket_id=ticket.id,
                occurred_at=message.created_at,
                message_id=message.id,
                author_id=message.user_id,
                is_bot=True,
            )
        )
        return HandoffResult(HandoffAction.ASSISTANT_REPLIED, message=message)

    @staticmethod
    def _taken_over(ticket_id: str) -> HandoffResult:
        logger.info("Dropping assistant outcome for ticket %s taken over mid-call", ticket_id)
        return HandoffResult(HandoffAction.SUPPRESSED_ASSIGNED)
