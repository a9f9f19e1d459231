"""FastAPI application entry point."""
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from api.routers import auth, bookmarks, dashboard, health
from core.auth_client import AuthClient
from core.config import get_settings
from core.redis import RedisClient, set_redis_client
from core.session_gate import SessionGateMiddleware
from services.change_feed import ChangeFeed, LocalChangeFeed, RedisChangeFeed
from services.reconciler import ReconcilerRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifespan - startup and shutdown."""
    app_settings = get_settings()

    # Startup: Connect to Redis
    redis_client = RedisClient(
        url=app_settings.redis_url,
        enabled=app_settings.redis_enabled,
        pool_size=app_settings.redis_pool_size,
    )
    await redis_client.connect()
    set_redis_client(redis_client)

    # Startup: Change feed - Redis fans out across processes, local only within this one
    change_feed: ChangeFeed
    if redis_client.is_connected:
        change_feed = RedisChangeFeed(redis_client)
    else:
        logger.warning("Redis unavailable; change events reach this process only")
        change_feed = LocalChangeFeed()
    app.state.change_feed = change_feed
    app.state.reconcilers = ReconcilerRegistry()

    # Startup: Identity provider client
    app.state.auth_client = AuthClient.from_settings(app_settings)

    yield

    # Shutdown: Close live channels, the provider client and Redis
    await change_feed.close()
    await app.state.auth_client.close()
    await redis_client.close()
    set_redis_client(None)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request and add security headers to response."""
        response = await call_next(request)
        # HSTS: enforce HTTPS for 1 year, including subdomains
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        return response


app = FastAPI(
    title="Smart Bookmarks",
    description="Personal bookmarks with Google sign-in and live sync across tabs.",
    version="0.1.0",
    lifespan=lifespan,
)

# Session gate (runs before every route, applies rotated cookies to every response)
app.add_middleware(SessionGateMiddleware)

# Security headers middleware (outermost, so gate redirects carry them too)
app.add_middleware(SecurityHeadersMiddleware)

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(dashboard.router)
app.include_router(bookmarks.router)
