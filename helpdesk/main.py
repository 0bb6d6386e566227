import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from helpdesk.api.errors import register_exception_handlers
from helpdesk.api.routes import maintenance, ping, profiles, ratings, tickets
from helpdesk.assistant.client import AssistantClient
from helpdesk.core.config import get_settings
from helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from helpdesk.dependencies.auth import TokenVerifier
from helpdesk.notifications.email import TicketNotifier
from helpdesk.profiles.repository import ProfileRepository
from helpdesk.tasks.reaper_scheduler import start_reaper_scheduler, stop_reaper_scheduler
from helpdesk.tickets.events import TicketEventBus
from helpdesk.tickets.handoff import SupportHandoffCoordinator
from helpdesk.tickets.reaper import InactivityPolicy, InactivityReaper
from helpdesk.tickets.repository import TicketRepository
from helpdesk.tickets.service import TicketService


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    if dsn.startswith("postgres://"):
        return "postgresql+asyncpg://" + dsn[len("postgres://") :]
    return dsn


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.token_verifier = TokenVerifier.from_settings(settings)
    app.state.event_bus = TicketEventBus()

    assistant = AssistantClient.from_settings(settings) if settings.assistant_enabled else None
    notifier = TicketNotifier.from_settings(settings)

    db_engine = None
    scheduled = False
    app.state.ticket_service = None
    app.state.profile_repository = None
    app.state.reaper = None
    try:
        db_engine = create_async_engine(_to_asyncpg_dsn(settings.postgres_dsn), future=True)
        session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
        ticket_repository = TicketRepository(session_factory, engine=db_engine)
        await ticket_repository.ensure_schema()
        profile_repository = ProfileRepository(session_factory)

        coordinator = SupportHandoffCoordinator(
            ticket_repository,
            assistant,
            events=app.state.event_bus,
            assistant_user_id=settings.assistant_user_id,
            acknowledgment=settings.escalation_acknowledgment,
        )
        app.state.ticket_service = TicketService(
            ticket_repository,
            profile_repository,
            coordinator,
            events=app.state.event_bus,
            notifier=notifier,
        )
        app.state.profile_repository = profile_repository
        app.state.reaper = InactivityReaper(
            ticket_repository,
            policy=InactivityPolicy.from_days(settings.reaper_stale_after_days),
            events=app.state.event_bus,
        )
        if settings.reaper_schedule_enabled:
            start_reaper_scheduler(app.state.reaper, hour=settings.reaper_schedule_hour)
            scheduled = True
    except Exception:  # pragma: no cover - service initialisation best effort
        logger.exception("Ticket service initialisation failed; API will answer 503")
        app.state.ticket_service = None
        app.state.profile_repository = None
        app.state.reaper = None
        if db_engine is not None:
            await db_engine.dispose()
            db_engine = None
    try:
        yield
    finally:
        if scheduled:
            stop_reaper_scheduler()
        if db_engine is not None:
            await db_engine.dispose()
        if assistant is not None:
            await assistant.close()
        await notifier.close()
        shutdown_tracer(tracer_provider)
        logging.getLogger(__name__).info("Helpdesk API shut down")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(ping.router)
    app.include_router(profiles.router)
    app.include_router(tickets.router)
    app.include_router(ratings.router)
    app.include_router(maintenance.router)
    return app


app = create_app()
