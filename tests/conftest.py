"""Shared test fixtures.

Tests run against a throwaway SQLite database (aiosqlite) per test, with the
badge catalog synced into it. Redis is replaced by an AsyncMock.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from prophezeiung.badges.catalog import BadgeCatalog, get_catalog, load_catalog
from prophezeiung.badges.service import sync_catalog
from prophezeiung.config import get_settings
from prophezeiung.db.base import Base
from prophezeiung.db.models import Authenticator, Prophecy, Rating, Round, User

ADMIN_TOKEN = "test-admin-token"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    """Fresh settings per test with a known admin token."""
    monkeypatch.setenv("PROPH_ADMIN_API_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("PROPH_LOG_FORMAT", "console")
    monkeypatch.setenv("PROPH_BADGE_STEP_TIMEOUT_SECONDS", "5")
    get_settings.cache_clear()
    get_catalog.cache_clear()
    yield
    get_settings.cache_clear()
    get_catalog.cache_clear()


@pytest.fixture
def catalog() -> BadgeCatalog:
    return load_catalog()


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory bound to a fresh SQLite file with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'badges.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory, catalog) -> AsyncGenerator[AsyncSession, None]:
    """A session on a database whose badges table mirrors the catalog."""
    async with session_factory() as session:
        await sync_catalog(session, catalog)
        yield session


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    redis.xack = AsyncMock(return_value=1)
    return redis


class ActivityFactory:
    """Creates users, rounds, prophecies and ratings, committing each one."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def user(self, username: str, *, is_bot: bool = False, status: str = "APPROVED") -> User:
        return await self._save(User(username=username, display_name=username.title(), is_bot=is_bot, status=status))

    async def round(self, title: str = "Runde", *, published_at: datetime | None = None) -> Round:
        return await self._save(Round(
            title=title,
            submission_deadline=T0 + timedelta(days=7),
            rating_deadline=T0 + timedelta(days=14),
            fulfillment_date=T0 + timedelta(days=60),
            results_published_at=published_at,
        ))

    async def prophecy(
        self,
        creator: User,
        round_: Round,
        *,
        fulfilled: bool | None = None,
        created_at: datetime | None = None,
    ) -> Prophecy:
        kwargs = {"created_at": created_at} if created_at else {}
        return await self._save(Prophecy(
            title=f"Prophezeiung von {creator.username}",
            creator_id=creator.id,
            round_id=round_.id,
            fulfilled=fulfilled,
            **kwargs,
        ))

    async def prophecies(self, creator: User, round_: Round, count: int, **kwargs) -> list[Prophecy]:
        return [await self.prophecy(creator, round_, **kwargs) for _ in range(count)]

    async def rating(
        self,
        prophecy: Prophecy,
        user: User,
        value: int,
        *,
        created_at: datetime | None = None,
    ) -> Rating:
        kwargs = {"created_at": created_at} if created_at else {}
        return await self._save(Rating(prophecy_id=prophecy.id, user_id=user.id, value=value, **kwargs))

    async def passkey(self, user: User) -> Authenticator:
        return await self._save(Authenticator(credential_id=f"cred-{user.username}", user_id=user.id))


@pytest.fixture
def factory(db_session: AsyncSession) -> ActivityFactory:
    return ActivityFactory(db_session)


@pytest_asyncio.fixture
async def client(session_factory, db_session, catalog, mock_redis) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with DB, Redis and catalog overridden."""
    from prophezeiung.dependencies import get_badge_catalog, get_db, get_redis_dep
    from prophezeiung.main import create_app

    app = create_app()

    async def _override_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_redis_dep] = lambda: mock_redis
    app.dependency_overrides[get_badge_catalog] = lambda: catalog

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
