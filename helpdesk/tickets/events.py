"""Domain events emitted by the ticket lifecycle and an in-process bus to observe them.

Observers (the SSE feed, metrics, future integrations) subscribe to the bus
instead of reacting to database change notifications, so business rules never
depend on how changes are transported.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from .state import TicketPriority, TicketStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True, kw_only=True)
class TicketEvent:
    ticket_id: str
    occurred_at: datetime

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            payload[key] = value
        payload["event"] = self.name
        return payload


@dataclass(frozen=True, slots=True, kw_only=True)
class TicketCreated(TicketEvent):
    user_id: str
    priority: TicketPriority


@dataclass(frozen=True, slots=True, kw_only=True)
class TicketStatusChanged(TicketEvent):
    from_status: TicketStatus
    to_status: TicketStatus
    actor_id: str | None
    reason: str = "manual"


@dataclass(frozen=True, slots=True, kw_only=True)
class TicketPriorityChanged(TicketEvent):
    from_priority: TicketPriority
    to_priority: TicketPriority
    actor_id: str


@dataclass(frozen=True, slots=True, kw_only=True)
class MessageAppended(TicketEvent):
    message_id: str
    author_id: str
    is_bot: bool


@dataclass(frozen=True, slots=True, kw_only=True)
class AssignmentChanged(TicketEvent):
    support_user_id: str | None
    previous_support_user_id: str | None
    actor_id: str


@dataclass(frozen=True, slots=True, kw_only=True)
class EscalationRequested(TicketEvent):
    pass


@dataclass(frozen=True, slots=True, kw_only=True)
class RatingSubmitted(TicketEvent):
    rating: int


EventHandler = Callable[[TicketEvent], Awaitable[None]]


class TicketEventBus:
    """Fan domain events out to any number of async subscribers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` and return a callable that removes it again."""

        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    async def publish(self, event: TicketEvent) -> None:
        logger.debug("Publishing %s for ticket %s", event.name, event.ticket_id)
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                # An observer failing must not undo or block the change it observes.
                logger.exception("Event handler failed for %s on ticket %s", event.name, event.ticket_id)

    @asynccontextmanager
    async def listen(
        self, ticket_id: str | None = None, *, max_pending: int = 100
    ) -> AsyncIterator[asyncio.Queue[TicketEvent]]:
        """Buffer events (optionally for a single ticket) into a queue while the block runs."""

        queue: asyncio.Queue[TicketEvent] = asyncio.Queue(maxsize=max_pending)

        async def enqueue(event: TicketEvent) -> None:
            if ticket_id is not None and event.ticket_id != ticket_id:
                return
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping %s for slow listener on ticket %s", event.name, event.ticket_id)

        unsubscribe = self.subscribe(enqueue)
        try:
            yield queue
        finally:
            unsubscribe()
