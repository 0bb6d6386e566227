from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from helpdesk.profiles.repository import ProfileRepository
from helpdesk.tickets.events import TicketEventBus
from helpdesk.tickets.reaper import InactivityReaper
from helpdesk.tickets.service import TicketService


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not available")
    return service


async def get_profile_repository(request: Request) -> ProfileRepository:
    repository = getattr(request.app.state, "profile_repository", None)
    if repository is None:
        raise HTTPException(status_code=503, detail="Profile directory is not available")
    return repository


async def get_reaper(request: Request) -> InactivityReaper:
    reaper = getattr(request.app.state, "reaper", None)
    if reaper is None:
        raise HTTPException(status_code=503, detail="Inactivity reaper is not available")
    return reaper


async def get_event_bus(request: Request) -> TicketEventBus:
    events = getattr(request.app.state, "event_bus", None)
    if events is None:
        raise HTTPException(status_code=503, detail="Event stream is not available")
    return events


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
ProfileRepositoryDep = Annotated[ProfileRepository, Depends(get_profile_repository)]
ReaperDep = Annotated[InactivityReaper, Depends(get_reaper)]
EventBusDep = Annotated[TicketEventBus, Depends(get_event_bus)]
