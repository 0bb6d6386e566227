from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from helpdesk.assistant.client import AssistantReply
from helpdesk.metrics import MetricsRegistry, register_default_metrics
from helpdesk.profiles.models import SessionContext
from helpdesk.profiles.repository import ProfileRepository
from helpdesk.tickets.events import TicketEventBus
from helpdesk.tickets.handoff import SupportHandoffCoordinator
from helpdesk.tickets.repository import TicketRepository
from helpdesk.tickets.service import TicketService

BOT_USER_ID = "00000000-0000-0000-0000-000000000000"
ACKNOWLEDGMENT = "Connecting you to a support operator..."


class SteppingClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def ticket_repository(session_factory: async_sessionmaker, engine: AsyncEngine) -> TicketRepository:
    return TicketRepository(session_factory, engine=engine)


@pytest.fixture
def profile_repository(session_factory: async_sessionmaker) -> ProfileRepository:
    return ProfileRepository(session_factory)


@pytest.fixture
def metrics() -> MetricsRegistry:
    return register_default_metrics(MetricsRegistry())


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def event_bus() -> TicketEventBus:
    return TicketEventBus()


@pytest.fixture
def assistant() -> AsyncMock:
    client = AsyncMock()
    client.complete = AsyncMock(return_value=AssistantReply(reply="Have you tried restarting the server?"))
    return client


@pytest.fixture
def coordinator(ticket_repository, assistant, event_bus, metrics, clock) -> SupportHandoffCoordinator:
    return SupportHandoffCoordinator(
        ticket_repository,
        assistant,
        events=event_bus,
        assistant_user_id=BOT_USER_ID,
        acknowledgment=ACKNOWLEDGMENT,
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def ticket_service(ticket_repository, profile_repository, coordinator, event_bus, metrics, clock) -> TicketService:
    return TicketService(
        ticket_repository,
        profile_repository,
        coordinator,
        events=event_bus,
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def customer() -> SessionContext:
    return SessionContext(user_id="customer-1", email="customer@example.com", nickname="Jana")


@pytest.fixture
def other_customer() -> SessionContext:
    return SessionContext(user_id="customer-2", email="other@example.com")


@pytest.fixture
def agent() -> SessionContext:
    return SessionContext(user_id="agent-1", nickname="Peter", is_support=True)


@pytest.fixture
def second_agent() -> SessionContext:
    return SessionContext(user_id="agent-2", nickname="Eva", is_support=True)


@pytest.fixture
def admin() -> SessionContext:
    return SessionContext(user_id="admin-1", is_admin=True)


@pytest_asyncio.fixture
async def staff_profiles(profile_repository: ProfileRepository, session_factory: async_sessionmaker):
    """Directory entries for the support agents used across service tests."""

    from packages.db.models import ProfileTable

    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    async with session_factory() as session:
        async with session.begin():
            session.add(ProfileTable(id="agent-1", nickname="Peter", is_support=True, created_at=now, updated_at=now))
            session.add(ProfileTable(id="agent-2", nickname="Eva", is_support=True, created_at=now, updated_at=now))
            session.add(ProfileTable(id="customer-1", nickname="Jana", created_at=now, updated_at=now))
    return profile_repository
