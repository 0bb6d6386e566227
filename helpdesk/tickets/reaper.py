"""Periodic sweep that force-closes tickets left waiting on the customer."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from helpdesk.metrics import MetricsRegistry, metrics_registry

from .events import TicketEventBus, TicketStatusChanged
from .repository import TicketRepository
from .state import TicketPriority, TicketStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class InactivityPolicy:
    """Which tickets count as abandoned."""

    stale_after: timedelta = timedelta(days=10)
    statuses: frozenset[TicketStatus] = frozenset({TicketStatus.WAITING_FOR_RESPONSE})
    excluded_priorities: frozenset[TicketPriority] = frozenset({TicketPriority.URGENT})

    @classmethod
    def from_days(cls, days: int) -> "InactivityPolicy":
        if days < 1:
            raise ValueError("Inactivity window must be at least one day")
        return cls(stale_after=timedelta(days=days))

    def cutoff(self, now: datetime) -> datetime:
        return now - self.stale_after


@dataclass(frozen=True, slots=True)
class ClosedTicket:
    id: str
    title: str


@dataclass(slots=True)
class ReaperReport:
    closed_tickets: list[ClosedTicket] = field(default_factory=list)

    @property
    def closed_count(self) -> int:
        return len(self.closed_tickets)


class InactivityReaper:
    """Close every ticket matching the policy in one batched update.

    Candidates are selected once, then closed with an UPDATE that repeats the
    staleness predicate, so a concurrent sweep or fresh activity shrinks the
    set instead of double-closing. Running it again without new activity
    closes nothing.
    """

    def __init__(
        self,
        repository: TicketRepository,
        *,
        policy: InactivityPolicy | None = None,
        events: TicketEventBus | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._policy = policy or InactivityPolicy()
        self._events = events
        self._metrics = metrics or metrics_registry
        self._clock = clock

    @property
    def policy(self) -> InactivityPolicy:
        return self._policy

    async def run(self) -> ReaperReport:
        now = self._clock()
        cutoff = self._policy.cutoff(now)
        logger.info("Closing tickets inactive since %s", cutoff.isoformat())
        self._metrics.counter("reaper_runs_total").inc()

        candidates = await self._repository.find_stale_tickets(
            cutoff=cutoff,
            statuses=self._policy.statuses,
            excluded_priorities=self._policy.excluded_priorities,
        )
        if not candidates:
            logger.info("No inactive tickets to close")
            return ReaperReport()

        closed_ids = set(
            await self._repository.close_stale_tickets(
                [ticket.id for ticket in candidates],
                cutoff=cutoff,
                statuses=self._policy.statuses,
                excluded_priorities=self._policy.excluded_priorities,
                closed_at=now,
            )
        )
        closed = [ticket for ticket in candidates if ticket.id in closed_ids]
        report = ReaperReport(closed_tickets=[ClosedTicket(id=ticket.id, title=ticket.title) for ticket in closed])

        self._metrics.counter("reaper_closed_tickets_total").inc(report.closed_count)
        logger.info("Closed %d of %d inactive tickets", report.closed_count, len(candidates))

        if closed:
            self._metrics.counter("ticket_status_changes_total").inc(
                len(closed), labels={"to_status": TicketStatus.CLOSED.value}
            )
        if self._events is not None:
            for ticket in closed:
                await self._events.publish(
                    TicketStatusChanged(
                        ticket_id=ticket.id,
                        occurred_at=now,
                        from_status=ticket.status,
                        to_status=TicketStatus.CLOSED,
                        actor_id=None,
                        reason="inactivity",
                    )
                )
        return report
