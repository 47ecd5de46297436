"""Shared test fixtures: in-memory SQLite engine, sessions and an API client."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from hoodie.config import get_settings
from hoodie.db.base import Base
from hoodie.db.models import User
from hoodie.dependencies import get_db, get_redis_dep
from hoodie.main import create_app

WALLET = "JCUdhSvVG4nDL2ZzFbLrAXkSq1gYxgvGeZ2zRZEYpump"
ADMIN_WALLET = "AdminWa11etXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXX"

# Midday, so a test never straddles the midnight reset.
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Drop cached settings so env overrides in one test do not leak into the next."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Shared in-memory SQLite database with the schema created from the models."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> User:
    user = User(
        wallet_address=ADMIN_WALLET,
        display_name="Admin",
        total_xp=0,
        level=1,
        is_admin=True,
        created_at=NOW,
        updated_at=NOW,
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def client(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the database swapped for the test engine and no Redis."""
    app = create_app()

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def _no_redis() -> AsyncGenerator[None, None]:
        yield None

    app.dependency_overrides[get_db] = _session
    app.dependency_overrides[get_redis_dep] = _no_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
