from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from helpdesk.dependencies.auth import CurrentSession, StaffSession
from helpdesk.dependencies.services import EventBusDep, TicketServiceDep
from helpdesk.response.streaming import TicketEventStreamer
from helpdesk.tickets.handoff import HandoffAction, HandoffResult
from helpdesk.tickets.models import (
    Ticket,
    TicketAggregate,
    TicketAssignment,
    TicketMessage,
    TicketRating,
)
from helpdesk.tickets.service import AssignmentOutcome, MessagePostResult
from helpdesk.tickets.state import TicketPriority, TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketMessageModel(BaseModel):
    id: str
    user_id: str
    body: str
    is_bot: bool
    created_at: str

    @classmethod
    def from_entity(cls, entity: TicketMessage) -> "TicketMessageModel":
        return cls(
            id=entity.id,
            user_id=entity.user_id,
            body=entity.body,
            is_bot=entity.is_bot,
            created_at=entity.created_at.isoformat(),
        )


class TicketAssignmentModel(BaseModel):
    ticket_id: str
    support_user_id: str
    assigned_by: str
    created_at: str

    @classmethod
    def from_entity(cls, entity: TicketAssignment) -> "TicketAssignmentModel":
        return cls(
            ticket_id=entity.ticket_id,
            support_user_id=entity.support_user_id,
            assigned_by=entity.assigned_by,
            created_at=entity.created_at.isoformat(),
        )


class TicketRatingModel(BaseModel):
    id: str
    ticket_id: str
    rating: int
    feedback: str | None = None
    created_at: str

    @classmethod
    def from_entity(cls, entity: TicketRating) -> "TicketRatingModel":
        return cls(
            id=entity.id,
            ticket_id=entity.ticket_id,
            rating=entity.rating,
            feedback=entity.feedback,
            created_at=entity.created_at.isoformat(),
        )


class TicketModel(BaseModel):
    id: str
    user_id: str
    title: str
    description: str
    initial_message: str | None = None
    status: TicketStatus
    priority: TicketPriority
    needs_attention: bool
    created_at: str
    updated_at: str
    closed_at: str | None = None

    @classmethod
    def from_entity(cls, ticket: Ticket) -> "TicketModel":
        return cls(
            id=ticket.id,
            user_id=ticket.user_id,
            title=ticket.title,
            description=ticket.description,
            initial_message=ticket.initial_message,
            status=ticket.status,
            priority=ticket.priority,
            needs_attention=ticket.needs_attention,
            created_at=ticket.created_at.isoformat(),
            updated_at=ticket.updated_at.isoformat(),
            closed_at=ticket.closed_at.isoformat() if ticket.closed_at else None,
        )


class TicketDetailModel(TicketModel):
    messages: list[TicketMessageModel]
    assignment: TicketAssignmentModel | None = None
    rating: TicketRatingModel | None = None

    @classmethod
    def from_aggregate(cls, aggregate: TicketAggregate) -> "TicketDetailModel":
        base = TicketModel.from_entity(aggregate.ticket)
        return cls(
            **base.model_dump(),
            messages=[TicketMessageModel.from_entity(message) for message in aggregate.messages],
            assignment=TicketAssignmentModel.from_entity(aggregate.assignment) if aggregate.assignment else None,
            rating=TicketRatingModel.from_entity(aggregate.rating) if aggregate.rating else None,
        )


class HandoffModel(BaseModel):
    action: HandoffAction
    reply: TicketMessageModel | None = None
    acknowledgment: str | None = None
    reason: str | None = None

    @classmethod
    def from_result(cls, result: HandoffResult) -> "HandoffModel":
        return cls(
            action=result.action,
            reply=TicketMessageModel.from_entity(result.message) if result.message else None,
            acknowledgment=result.acknowledgment,
            reason=result.reason,
        )


class MessagePostModel(BaseModel):
    message: TicketMessageModel
    ticket: TicketModel
    handoff: HandoffModel | None = None

    @classmethod
    def from_result(cls, result: MessagePostResult) -> "MessagePostModel":
        return cls(
            message=TicketMessageModel.from_entity(result.message),
            ticket=TicketModel.from_entity(result.ticket),
            handoff=HandoffModel.from_result(result.handoff) if result.handoff else None,
        )


class AssignmentOutcomeModel(BaseModel):
    assignment: TicketAssignmentModel
    announcement: TicketMessageModel | None = None

    @classmethod
    def from_outcome(cls, outcome: AssignmentOutcome) -> "AssignmentOutcomeModel":
        return cls(
            assignment=TicketAssignmentModel.from_entity(outcome.assignment),
            announcement=TicketMessageModel.from_entity(outcome.announcement) if outcome.announcement else None,
        )


class TicketCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    priority: TicketPriority = TicketPriority.MEDIUM
    initial_message: str | None = None


class TicketStatusChangeRequest(BaseModel):
    status: TicketStatus


class TicketPriorityChangeRequest(BaseModel):
    priority: TicketPriority


class TicketMessageCreateRequest(BaseModel):
    body: str = Field(min_length=1)


class TicketTransferRequest(BaseModel):
    agent_id: str


class TicketRatingRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    feedback: str | None = None


@router.get("", response_model=list[TicketModel], summary="List visible tickets")
async def list_tickets(
    service: TicketServiceDep,
    session: CurrentSession,
    status_filter: Annotated[TicketStatus | None, Query(alias="status")] = None,
) -> list[TicketModel]:
    tickets = await service.list_tickets(session, status=status_filter)
    return [TicketModel.from_entity(ticket) for ticket in tickets]


@router.post("", response_model=TicketModel, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: TicketServiceDep,
    session: CurrentSession,
) -> TicketModel:
    ticket = await service.create_ticket(
        session,
        title=payload.title,
        description=payload.description,
        priority=payload.priority,
        initial_message=payload.initial_message,
    )
    return TicketModel.from_entity(ticket)


@router.get("/{ticket_id}", response_model=TicketDetailModel)
async def get_ticket(ticket_id: str, service: TicketServiceDep, session: CurrentSession) -> TicketDetailModel:
    aggregate = await service.get_ticket(session, ticket_id)
    return TicketDetailModel.from_aggregate(aggregate)


@router.post("/{ticket_id}/status", response_model=TicketModel)
async def change_ticket_status(
    ticket_id: str,
    payload: TicketStatusChangeRequest,
    service: TicketServiceDep,
    session: CurrentSession,
) -> TicketModel:
    ticket = await service.change_status(session, ticket_id, new_status=payload.status)
    return TicketModel.from_entity(ticket)


@router.post("/{ticket_id}/priority", response_model=TicketModel)
async def change_ticket_priority(
    ticket_id: str,
    payload: TicketPriorityChangeRequest,
    service: TicketServiceDep,
    session: StaffSession,
) -> TicketModel:
    ticket = await service.change_priority(session, ticket_id, new_priority=payload.priority)
    return TicketModel.from_entity(ticket)


@router.post("/{ticket_id}/messages", response_model=MessagePostModel, status_code=status.HTTP_201_CREATED)
async def post_ticket_message(
    ticket_id: str,
    payload: TicketMessageCreateRequest,
    service: TicketServiceDep,
    session: CurrentSession,
) -> MessagePostModel:
    result = await service.post_message(session, ticket_id, body=payload.body)
    return MessagePostModel.from_result(result)


@router.post("/{ticket_id}/take-over", response_model=AssignmentOutcomeModel)
async def take_over_ticket(
    ticket_id: str,
    service: TicketServiceDep,
    session: StaffSession,
) -> AssignmentOutcomeModel:
    outcome = await service.take_over(session, ticket_id)
    return AssignmentOutcomeModel.from_outcome(outcome)


@router.post("/{ticket_id}/transfer", response_model=AssignmentOutcomeModel)
async def transfer_ticket(
    ticket_id: str,
    payload: TicketTransferRequest,
    service: TicketServiceDep,
    session: StaffSession,
) -> AssignmentOutcomeModel:
    outcome = await service.transfer(session, ticket_id, agent_id=payload.agent_id)
    return AssignmentOutcomeModel.from_outcome(outcome)


@router.delete("/{ticket_id}/assignment", status_code=status.HTTP_204_NO_CONTENT)
async def release_ticket(ticket_id: str, service: TicketServiceDep, session: StaffSession) -> Response:
    await service.release(session, ticket_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{ticket_id}/rating", response_model=TicketRatingModel, status_code=status.HTTP_201_CREATED)
async def rate_ticket(
    ticket_id: str,
    payload: TicketRatingRequest,
    service: TicketServiceDep,
    session: CurrentSession,
) -> TicketRatingModel:
    rating = await service.rate_ticket(session, ticket_id, rating=payload.rating, feedback=payload.feedback)
    return TicketRatingModel.from_entity(rating)


@router.get("/{ticket_id}/events", summary="Stream ticket events as Server-Sent Events")
async def stream_ticket_events(
    ticket_id: str,
    request: Request,
    service: TicketServiceDep,
    events: EventBusDep,
    session: CurrentSession,
) -> StreamingResponse:
    await service.get_ticket(session, ticket_id)

    streamer = TicketEventStreamer()

    async def event_source():
        async with events.listen(ticket_id) as queue:
            async for frame in streamer.iter_sse(queue, is_disconnected=request.is_disconnected):
                yield frame

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
