"""FastAPI dependencies for injection."""
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.auth_client import AuthClient, AuthUser
from core.config import get_settings
from db.session import async_session_factory, get_async_session
from services.bookmark_store import BookmarkStore
from services.change_feed import ChangeFeed
from services.reconciler import ReconcilerRegistry


def get_current_user(request: Request) -> AuthUser:
    """
    Return the user resolved by the session gate.

    Raises:
        HTTPException: 401 if the request carries no valid session.
    """
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def get_optional_user(request: Request) -> AuthUser | None:
    """Return the gate-resolved user, or None for anonymous requests."""
    return getattr(request.state, "user", None)


def get_auth_client(request: Request) -> AuthClient:
    """Identity provider client created at startup."""
    return request.app.state.auth_client


def get_change_feed(request: Request) -> ChangeFeed:
    """Change feed chosen at startup (Redis or in-process)."""
    return request.app.state.change_feed


def get_reconciler_registry(request: Request) -> ReconcilerRegistry:
    """Registry of reconcilers behind open event streams."""
    return request.app.state.reconcilers


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Session factory for work that outlives the request scope.

    Event streams keep their own session open for the life of the connection;
    request-scoped sessions are closed before a streamed body is sent.
    """
    return async_session_factory


async def get_bookmark_store(
    db: AsyncSession = Depends(get_async_session),
    change_feed: ChangeFeed = Depends(get_change_feed),
) -> BookmarkStore:
    """Bookmark store bound to the request's session."""
    return BookmarkStore(db, change_feed)


__all__ = [
    "get_async_session",
    "get_auth_client",
    "get_bookmark_store",
    "get_change_feed",
    "get_current_user",
    "get_optional_user",
    "get_reconciler_registry",
    "get_session_factory",
    "get_settings",
]
