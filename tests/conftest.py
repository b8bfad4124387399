from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from hoteldesk.metrics import MetricsRegistry, register_default_metrics
from hoteldesk.tickets.repository import TicketRepository
from tests.factories import ALL_USERS, FixedClock


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


@pytest_asyncio.fixture
async def repository(engine: AsyncEngine, session_factory: async_sessionmaker) -> TicketRepository:
    repo = TicketRepository(session_factory, engine=engine)
    await repo.ensure_users(ALL_USERS)
    return repo


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def metrics() -> MetricsRegistry:
    registry = MetricsRegistry()
    register_default_metrics(registry)
    return registry
