"""Pytest fixtures for testing."""
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.main import create_app
from core.config import Settings
from core.redis import RedisClient
from db.session import build_engine, build_session_factory
from models.base import Base
from models.user import User
from services import token_service
from services.storage import Storage
from tests.helpers import ADMIN_KEY, UserFactory


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        admin_key=ADMIN_KEY,
        admin_username="cloud",
    )


@pytest.fixture
def fake_server() -> FakeServer:
    """One in-memory Redis server per test."""
    return FakeServer()


@pytest.fixture
async def redis_client(fake_server: FakeServer) -> AsyncGenerator[RedisClient]:
    """Connected RedisClient backed by fakeredis, with Lua scripts loaded."""
    client = RedisClient(
        url="redis://fake",
        client=FakeRedis(server=fake_server),
    )
    await client.connect()
    yield client
    await client.close()


@pytest.fixture
async def async_engine(settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """SQLite engine with the schema created."""
    engine = build_engine(settings.database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the app and test helpers."""
    return build_session_factory(async_engine)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """A session for service-level tests; committed rows are visible to the app."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session_factory: async_sessionmaker[AsyncSession]) -> UserFactory:
    """
    Create a committed user with an API token.

    Usage: user, token = await make_user("alice", friend_ids=[2], account_type="PRO")
    """

    async def _make_user(username: str, **fields: Any) -> tuple[User, str]:
        async with session_factory() as session:
            storage = Storage(session)
            user = User(username=username, **fields)
            session.add(user)
            await session.flush()
            _, plaintext = await token_service.issue_token(storage, user.id)
            await session.commit()
            await session.refresh(user)
            return user, plaintext

    return _make_user


@pytest.fixture
def app(
    settings: Settings,
    redis_client: RedisClient,
    session_factory: async_sessionmaker[AsyncSession],
) -> FastAPI:
    """Application wired to fakeredis and the test database."""
    return create_app(settings, redis_client=redis_client, session_factory=session_factory)


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """HTTP client for the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client
