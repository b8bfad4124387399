from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from hoteldesk.api.errors import register_exception_handlers
from hoteldesk.api.routes import metrics, ping, realtime, tickets
from hoteldesk.core.config import get_settings
from hoteldesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from hoteldesk.dependencies.auth import demo_users
from hoteldesk.realtime import ConnectionRegistry, TicketHub, TicketNotifier
from hoteldesk.tickets.repository import TicketRepository
from hoteldesk.tickets.service import TicketService
from hoteldesk.tickets.state import TicketStateMachine


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    return dsn


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider

    db_engine = create_async_engine(_to_asyncpg_dsn(settings.database_url), future=True)
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
    ticket_repository = TicketRepository(session_factory, engine=db_engine)
    try:
        await ticket_repository.ensure_schema()
        if settings.seed_demo_users:
            created = await ticket_repository.ensure_users(demo_users(settings))
            logger.info("Seeded %d demo users", created)
    except Exception:
        logger.exception("Database initialisation failed")
        await db_engine.dispose()
        shutdown_tracer(tracer_provider)
        raise

    registry = ConnectionRegistry()
    ticket_service = TicketService(
        ticket_repository,
        notifier=TicketNotifier(registry),
        state_machine=TicketStateMachine(strict=settings.enforce_status_transitions),
        max_number_attempts=settings.ticket_number_max_attempts,
        page_size_max=settings.ticket_page_size_max,
    )

    app.state.db_engine = db_engine
    app.state.db_session_factory = session_factory
    app.state.connection_registry = registry
    app.state.ticket_service = ticket_service
    app.state.ticket_hub = TicketHub(registry, ticket_service.can_view_ticket)
    try:
        yield
    finally:
        await db_engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(ping.router)
    app.include_router(metrics.router)
    app.include_router(tickets.router)
    app.include_router(realtime.router)
    return app


app = create_app()
