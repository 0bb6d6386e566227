from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from helpdesk.dependencies.auth import AdminSession
from helpdesk.dependencies.services import ReaperDep
from helpdesk.tickets.reaper import ReaperReport

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


class ClosedTicketModel(BaseModel):
    id: str
    title: str


class ReaperReportModel(BaseModel):
    closed_count: int
    closed_tickets: list[ClosedTicketModel]

    @classmethod
    def from_report(cls, report: ReaperReport) -> "ReaperReportModel":
        return cls(
            closed_count=report.closed_count,
            closed_tickets=[ClosedTicketModel(id=item.id, title=item.title) for item in report.closed_tickets],
        )


@router.post("/close-inactive", response_model=ReaperReportModel, summary="Close tickets left waiting too long")
async def close_inactive_tickets(reaper: ReaperDep, session: AdminSession) -> ReaperReportModel:
    report = await reaper.run()
    return ReaperReportModel.from_report(report)
