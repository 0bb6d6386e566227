from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Sequence

from sqlalchemy import delete, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from packages.db.models import (
    MessageTable,
    ProfileTable,
    TicketAssignmentTable,
    TicketRatingTable,
    TicketTable,
)

from .errors import AssignmentConflictError, RatingRejectedError, TicketStorageError
from .models import (
    RatingSummary,
    Ticket,
    TicketAggregate,
    TicketAssignment,
    TicketMessage,
    TicketRating,
)
from .state import StatusTransition, TicketLifecycle, TicketPriority, TicketStatus

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class TicketRepository:
    """Persistence helper wrapping tickets, messages, assignments and ratings."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise TicketStorageError(f"Ticket store unavailable: {exc.__class__.__name__}") from exc

    async def create_ticket(self, ticket: Ticket, initial_message: TicketMessage | None = None) -> None:
        async with self._transaction() as session:
            session.add(
                TicketTable(
                    id=ticket.id,
                    user_id=ticket.user_id,
                    title=ticket.title,
                    description=ticket.description,
                    initial_message=ticket.initial_message,
                    status=ticket.status.value,
                    priority=ticket.priority.value,
                    needs_attention=ticket.needs_attention,
                    created_at=ticket.created_at,
                    updated_at=ticket.updated_at,
                    closed_at=ticket.closed_at,
                )
            )
            if initial_message is not None:
                # The message row references the ticket, so the ticket must exist first.
                await session.flush()
                session.add(self._message_to_table(initial_message))

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._transaction() as session:
            row = await session.get(TicketTable, ticket_id)
            return self._table_to_ticket(row) if row is not None else None

    async def get_aggregate(self, ticket_id: str) -> TicketAggregate | None:
        async with self._transaction() as session:
            ticket_row = await session.get(TicketTable, ticket_id)
            if ticket_row is None:
                return None
            message_result = await session.execute(
                select(MessageTable)
                .where(MessageTable.ticket_id == ticket_id)
                .order_by(MessageTable.created_at.asc())
            )
            assignment_result = await session.execute(
                select(TicketAssignmentTable).where(TicketAssignmentTable.ticket_id == ticket_id)
            )
            rating_result = await session.execute(
                select(TicketRatingTable).where(TicketRatingTable.ticket_id == ticket_id)
            )
            assignment_row = assignment_result.scalars().first()
            rating_row = rating_result.scalars().first()
            return TicketAggregate(
                ticket=self._table_to_ticket(ticket_row),
                messages=[self._table_to_message(row) for row in message_result.scalars().all()],
                assignment=self._table_to_assignment(assignment_row) if assignment_row else None,
                rating=self._table_to_rating(rating_row) if rating_row else None,
            )

    async def list_tickets(
        self, *, user_id: str | None = None, status: TicketStatus | None = None
    ) -> list[Ticket]:
        statement = select(TicketTable)
        if user_id is not None:
            statement = statement.where(TicketTable.user_id == user_id)
        if status is not None:
            statement = statement.where(TicketTable.status == status.value)
        async with self._transaction() as session:
            result = await session.execute(statement.order_by(TicketTable.created_at.desc()))
            return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def apply_status_transition(
        self, ticket_id: str, transition: StatusTransition, updated_at: datetime
    ) -> Ticket | None:
        async with self._transaction() as session:
            row = await session.get(TicketTable, ticket_id)
            if row is None:
                return None
            row.status = transition.to_status.value
            row.closed_at = transition.closed_at
            row.updated_at = updated_at
            if transition.release_assignment:
                await session.execute(
                    delete(TicketAssignmentTable).where(TicketAssignmentTable.ticket_id == ticket_id)
                )
            await session.flush()
            return self._table_to_ticket(row)

    async def update_priority(
        self, ticket_id: str, priority: TicketPriority, updated_at: datetime
    ) -> Ticket | None:
        async with self._transaction() as session:
            row = await session.get(TicketTable, ticket_id)
            if row is None:
                return None
            row.priority = priority.value
            row.updated_at = updated_at
            await session.flush()
            return self._table_to_ticket(row)

    async def set_needs_attention(
        self, ticket_id: str, needs_attention: bool, *, require_unassigned: bool = False
    ) -> None:
        async with self._transaction() as session:
            if require_unassigned:
                await session.get(TicketTable, ticket_id, with_for_update=True)
                await self._assert_unassigned(session, ticket_id)
            await session.execute(
                update(TicketTable)
                .where(TicketTable.id == ticket_id)
                .values(needs_attention=needs_attention)
            )

    async def append_message(
        self, message: TicketMessage, *, reopen: bool = True, require_unassigned: bool = False
    ) -> tuple[Ticket, StatusTransition | None] | None:
        """Store ``message`` and touch its ticket in one transaction.

        With ``reopen`` set, a closed ticket is re-activated in the same
        transaction; the applied transition is returned alongside the ticket.
        With ``require_unassigned`` set, the append is refused with
        :class:`AssignmentConflictError` while the locked ticket has a live
        assignment.
        """

        async with self._transaction() as session:
            row = await session.get(TicketTable, message.ticket_id, with_for_update=True)
            if row is None:
                return None
            if require_unassigned:
                await self._assert_unassigned(session, message.ticket_id)
            transition = TicketLifecycle.plan_reopen(self._table_to_ticket(row)) if reopen else None
            session.add(self._message_to_table(message))
            row.updated_at = message.created_at
            if transition is not None:
                row.status = transition.to_status.value
                row.closed_at = transition.closed_at
            await session.flush()
            return self._table_to_ticket(row), transition

    async def _assert_unassigned(self, session: AsyncSession, ticket_id: str) -> None:
        result = await session.execute(
            select(TicketAssignmentTable.id).where(TicketAssignmentTable.ticket_id == ticket_id)
        )
        if result.first() is not None:
            raise AssignmentConflictError(f"Ticket {ticket_id} is handled by a support agent")

    async def list_messages(self, ticket_id: str) -> list[TicketMessage]:
        async with self._transaction() as session:
            result = await session.execute(
                select(MessageTable)
                .where(MessageTable.ticket_id == ticket_id)
                .order_by(MessageTable.created_at.asc())
            )
            return [self._table_to_message(row) for row in result.scalars().all()]

    async def get_assignment(self, ticket_id: str) -> TicketAssignment | None:
        async with self._transaction() as session:
            result = await session.execute(
                select(TicketAssignmentTable).where(TicketAssignmentTable.ticket_id == ticket_id)
            )
            row = result.scalars().first()
            return self._table_to_assignment(row) if row is not None else None

    async def claim_assignment(self, assignment: TicketAssignment) -> TicketAssignment:
        """Insert the first assignment for a ticket; a concurrent claim loses on the unique key."""

        try:
            async with self._transaction() as session:
                # Serialises with bot appends that check for an assignment under the same lock.
                await session.get(TicketTable, assignment.ticket_id, with_for_update=True)
                session.add(
                    TicketAssignmentTable(
                        id=assignment.id,
                        ticket_id=assignment.ticket_id,
                        support_user_id=assignment.support_user_id,
                        assigned_by=assignment.assigned_by,
                        created_at=assignment.created_at,
                    )
                )
        except TicketStorageError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise AssignmentConflictError(f"Ticket {assignment.ticket_id} is already assigned") from exc
            raise
        return assignment

    async def set_assignment(self, assignment: TicketAssignment) -> TicketAssignment:
        """Create or replace the ticket's assignment with a single upsert keyed by ticket id."""

        async with self._transaction() as session:
            dialect = session.get_bind().dialect.name
            insert = _UPSERT_DIALECTS.get(dialect)
            if insert is None:
                raise TicketStorageError(f"Assignment upsert is not supported on {dialect}")
            table = TicketAssignmentTable.__table__
            statement = insert(table).values(
                id=assignment.id,
                ticket_id=assignment.ticket_id,
                support_user_id=assignment.support_user_id,
                assigned_by=assignment.assigned_by,
                created_at=assignment.created_at,
            )
            statement = statement.on_conflict_do_update(
                index_elements=[table.c.ticket_id],
                set_={
                    "support_user_id": statement.excluded.support_user_id,
                    "assigned_by": statement.excluded.assigned_by,
                    "created_at": statement.excluded.created_at,
                },
            )
            await session.execute(statement)
            result = await session.execute(
                select(TicketAssignmentTable)
                .where(TicketAssignmentTable.ticket_id == assignment.ticket_id)
                .execution_options(populate_existing=True)
            )
            return self._table_to_assignment(result.scalars().one())

    async def delete_assignment(self, ticket_id: str) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                delete(TicketAssignmentTable).where(TicketAssignmentTable.ticket_id == ticket_id)
            )
            return bool(result.rowcount)

    async def add_rating(self, rating: TicketRating) -> TicketRating:
        try:
            async with self._transaction() as session:
                session.add(
                    TicketRatingTable(
                        id=rating.id,
                        ticket_id=rating.ticket_id,
                        rating=rating.rating,
                        feedback=rating.feedback,
                        created_at=rating.created_at,
                    )
                )
        except TicketStorageError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise RatingRejectedError(f"Ticket {rating.ticket_id} has already been rated") from exc
            raise
        return rating

    async def list_ratings(self) -> list[RatingSummary]:
        statement = (
            select(TicketRatingTable, TicketTable, ProfileTable)
            .join(TicketTable, TicketTable.id == TicketRatingTable.ticket_id)
            .join(ProfileTable, ProfileTable.id == TicketTable.user_id, isouter=True)
            .order_by(TicketRatingTable.created_at.desc())
        )
        async with self._transaction() as session:
            result = await session.execute(statement)
            return [
                RatingSummary(
                    rating=self._table_to_rating(rating_row),
                    ticket_title=ticket_row.title,
                    ticket_priority=TicketPriority(ticket_row.priority),
                    customer_nickname=profile_row.nickname if profile_row is not None else None,
                )
                for rating_row, ticket_row, profile_row in result.all()
            ]

    async def find_stale_tickets(
        self,
        *,
        cutoff: datetime,
        statuses: Iterable[TicketStatus],
        excluded_priorities: Iterable[TicketPriority] = (),
    ) -> list[Ticket]:
        statement = self._stale_filter(
            select(TicketTable), cutoff=cutoff, statuses=statuses, excluded_priorities=excluded_priorities
        )
        async with self._transaction() as session:
            result = await session.execute(statement.order_by(TicketTable.updated_at.asc()))
            return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def close_stale_tickets(
        self,
        ticket_ids: Sequence[str],
        *,
        cutoff: datetime,
        statuses: Iterable[TicketStatus],
        excluded_priorities: Iterable[TicketPriority] = (),
        closed_at: datetime,
    ) -> list[str]:
        """Close the given candidates in one batched update.

        The staleness predicate is repeated in the UPDATE so tickets touched (or
        closed by a concurrent sweep) since selection are skipped.
        """

        if not ticket_ids:
            return []
        statement = self._stale_filter(
            update(TicketTable).where(TicketTable.id.in_(list(ticket_ids))),
            cutoff=cutoff,
            statuses=statuses,
            excluded_priorities=excluded_priorities,
        )
        statement = statement.values(
            status=TicketStatus.CLOSED.value, closed_at=closed_at, updated_at=closed_at
        ).returning(TicketTable.id)
        async with self._transaction() as session:
            result = await session.execute(statement)
            closed_ids = [str(value) for value in result.scalars().all()]
            if closed_ids:
                await session.execute(
                    delete(TicketAssignmentTable).where(TicketAssignmentTable.ticket_id.in_(closed_ids))
                )
            return closed_ids

    @staticmethod
    def _stale_filter(
        statement: Any,
        *,
        cutoff: datetime,
        statuses: Iterable[TicketStatus],
        excluded_priorities: Iterable[TicketPriority],
    ) -> Any:
        status_values = [status.value for status in statuses]
        statement = statement.where(TicketTable.status.in_(status_values)).where(TicketTable.updated_at < cutoff)
        excluded = [priority.value for priority in excluded_priorities]
        if excluded:
            statement = statement.where(TicketTable.priority.not_in(excluded))
        return statement

    @staticmethod
    def _message_to_table(message: TicketMessage) -> MessageTable:
        return MessageTable(
            id=message.id,
            ticket_id=message.ticket_id,
            user_id=message.user_id,
            body=message.body,
            is_bot=message.is_bot,
            created_at=message.created_at,
        )

    @staticmethod
    def _table_to_ticket(row: TicketTable) -> Ticket:
        return Ticket(
            id=row.id,
            user_id=row.user_id,
            title=row.title,
            description=row.description,
            initial_message=row.initial_message,
            status=TicketStatus(row.status),
            priority=TicketPriority(row.priority),
            needs_attention=bool(row.needs_attention),
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
            closed_at=_ensure_datetime(row.closed_at) if row.closed_at is not None else None,
        )

    @staticmethod
    def _table_to_message(row: MessageTable) -> TicketMessage:
        return TicketMessage(
            id=row.id,
            ticket_id=row.ticket_id,
            user_id=row.user_id,
            body=row.body,
            is_bot=bool(row.is_bot),
            created_at=_ensure_datetime(row.created_at),
        )

    @staticmethod
    def _table_to_assignment(row: TicketAssignmentTable) -> TicketAssignment:
        return TicketAssignment(
            id=row.id,
            ticket_id=row.ticket_id,
            support_user_id=row.support_user_id,
            assigned_by=row.assigned_by,
            created_at=_ensure_datetime(row.created_at),
        )

    @staticmethod
    def _table_to_rating(row: TicketRatingTable) -> TicketRating:
        return TicketRating(
            id=row.id,
            ticket_id=row.ticket_id,
            rating=row.rating,
            feedback=row.feedback,
            created_at=_ensure_datetime(row.created_at),
        )


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")
