from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from helpdesk.dependencies.auth import AdminSession
from helpdesk.dependencies.services import TicketServiceDep
from helpdesk.tickets.models import RatingSummary
from helpdesk.tickets.state import TicketPriority

router = APIRouter(prefix="/ratings", tags=["ratings"])


class RatingSummaryModel(BaseModel):
    id: str
    ticket_id: str
    rating: int
    feedback: str | None = None
    created_at: str
    ticket_title: str
    ticket_priority: TicketPriority
    customer_nickname: str | None = None

    @classmethod
    def from_entity(cls, summary: RatingSummary) -> "RatingSummaryModel":
        return cls(
            id=summary.rating.id,
            ticket_id=summary.rating.ticket_id,
            rating=summary.rating.rating,
            feedback=summary.rating.feedback,
            created_at=summary.rating.created_at.isoformat(),
            ticket_title=summary.ticket_title,
            ticket_priority=summary.ticket_priority,
            customer_nickname=summary.customer_nickname,
        )


@router.get("", response_model=list[RatingSummaryModel], summary="Customer satisfaction survey results")
async def list_ratings(service: TicketServiceDep, session: AdminSession) -> list[RatingSummaryModel]:
    summaries = await service.list_ratings(session)
    return [RatingSummaryModel.from_entity(summary) for summary in summaries]
