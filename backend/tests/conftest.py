"""Pytest fixtures for testing."""
import os
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, patch

# Settings are read when app modules are imported; configure them first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["APP_ENV"] = "development"
os.environ["REDIS_ENABLED"] = "false"
os.environ["AUTH_URL"] = "http://auth.test"
os.environ["AUTH_ANON_KEY"] = "test-anon-key"
os.environ["SITE_URL"] = ""

import fakeredis.aioredis  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from core.auth_client import AuthClient, AuthUser, OAuthRedirect, UserLookup  # noqa: E402
from core.redis import RedisClient  # noqa: E402
from models.base import Base  # noqa: E402
from services.bookmark_store import BookmarkStore  # noqa: E402
from services.change_feed import LocalChangeFeed  # noqa: E402
from services.reconciler import ReconcilerRegistry  # noqa: E402


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """In-memory SQLite engine shared by every session in a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """A session on the test database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def change_feed() -> AsyncGenerator[LocalChangeFeed]:
    """In-process change feed, shut down after the test."""
    feed = LocalChangeFeed()
    yield feed
    await feed.close()


@pytest.fixture
def store(db_session: AsyncSession, change_feed: LocalChangeFeed) -> BookmarkStore:
    """Bookmark store on the test database and change feed."""
    return BookmarkStore(db_session, change_feed)


@pytest.fixture
async def redis_client() -> AsyncGenerator[RedisClient]:
    """RedisClient backed by fakeredis."""
    client = RedisClient(url="redis://fake", enabled=True)
    with patch("core.redis.Redis", return_value=fakeredis.aioredis.FakeRedis()):
        await client.connect()
    yield client
    await client.close()


@pytest.fixture
def user() -> AuthUser:
    """The signed-in user for API tests."""
    return AuthUser(id="user-1", email="ada@example.com", full_name="Ada Lovelace")


@pytest.fixture
def other_user() -> AuthUser:
    """A second, unrelated user."""
    return AuthUser(id="user-2", email="grace@example.com", full_name="Grace Hopper")


@pytest.fixture
def auth_client() -> AsyncMock:
    """
    Identity provider double.

    Anonymous by default; tests sign a user in by setting
    `auth_client.get_user.return_value`.
    """
    client = AsyncMock(spec=AuthClient)
    client.get_user.return_value = UserLookup(user=None)
    client.sign_in_with_oauth.return_value = OAuthRedirect(
        url="http://auth.test/auth/v1/authorize?provider=google",
        code_verifier="test-verifier",
    )
    return client


@pytest.fixture
async def client(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    auth_client: AsyncMock,
    change_feed: LocalChangeFeed,
) -> AsyncGenerator[AsyncClient]:
    """Create a test client with database, provider and change feed overrides."""
    # Clear the settings cache so it picks up the test environment
    from core.config import get_settings

    get_settings.cache_clear()

    from api.dependencies import get_session_factory
    from api.main import app
    from db.session import get_async_session

    async def override_get_async_session() -> AsyncGenerator[AsyncSession]:
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_async_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    # ASGITransport does not run the lifespan; provide what it would set up
    app.state.auth_client = auth_client
    app.state.change_feed = change_feed
    app.state.reconcilers = ReconcilerRegistry()

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def signed_in(client: AsyncClient, auth_client: AsyncMock, user: AuthUser) -> AuthUser:
    """Sign `user` in: the provider accepts the client's access token."""
    auth_client.get_user.return_value = UserLookup(user=user)
    client.cookies.set("sb-access-token", "access-token")
    client.cookies.set("sb-refresh-token", "refresh-token")
    return user
