"""Dashboard page, its live event stream and the stream's mutation endpoints."""
import asyncio
import json
import logging
import secrets
from collections.abc import AsyncGenerator
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.dependencies import (
    get_bookmark_store,
    get_change_feed,
    get_current_user,
    get_optional_user,
    get_reconciler_registry,
    get_session_factory,
    get_settings,
)
from api.pages import render_dashboard
from core.auth_client import AuthUser
from core.config import Settings
from core.session_gate import DASHBOARD_PATH, LOGIN_PATH
from schemas.bookmark import BookmarkResponse
from services.bookmark_store import BookmarkStore
from services.change_feed import ChangeFeed
from services.reconciler import (
    ALREADY_DELETED,
    CREATE_FAILED,
    CREATE_IN_PROGRESS,
    DELETE_FAILED,
    DELETE_IN_PROGRESS,
    DISPOSED,
    BookmarkReconciler,
    MutationResult,
    ReconcilerRegistry,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["dashboard"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

KEEPALIVE_COMMENT = ": ping\n\n"

_FAILURE_STATUS = {
    ALREADY_DELETED: 404,
    CREATE_FAILED: 503,
    CREATE_IN_PROGRESS: 409,
    DELETE_FAILED: 503,
    DELETE_IN_PROGRESS: 409,
    DISPOSED: 410,
}


class BookmarkFormData(BaseModel):
    """Raw form input; validated by the reconciler so messages reach the form."""

    title: str = ""
    url: str = ""


class MutationResponse(BaseModel):
    """Result of a create or delete issued through a live list."""

    ok: bool
    bookmark: BookmarkResponse | None = None


def format_sse(event: str, data: dict[str, Any]) -> str:
    """Encode one Server-Sent Events message."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def load_snapshot(store: BookmarkStore, owner_id: str) -> list[BookmarkResponse]:
    """Read the owner's list; a failed read yields an empty list."""
    try:
        return await store.list(owner_id)
    except SQLAlchemyError:
        logger.exception("bookmark_list_failed owner_id=%s", owner_id)
        return []


async def state_messages(
    reconciler: BookmarkReconciler, keepalive_seconds: float,
) -> AsyncGenerator[str]:
    """Encoded `state` events from a reconciler, with keep-alive comments while idle."""
    updates = reconciler.updates()
    next_state = asyncio.ensure_future(anext(updates))
    try:
        while True:
            done, _ = await asyncio.wait({next_state}, timeout=keepalive_seconds)
            if not done:
                yield KEEPALIVE_COMMENT
                continue
            try:
                state = next_state.result()
            except StopAsyncIteration:
                return
            yield format_sse("state", state.to_payload())
            next_state = asyncio.ensure_future(anext(updates))
    finally:
        next_state.cancel()


def _raise_for_failure(result: MutationResult) -> None:
    if not result.ok:
        # Anything unlisted is a validation message
        status_code = _FAILURE_STATUS.get(result.error or "", 422)
        raise HTTPException(status_code=status_code, detail=result.error)


@router.get("/")
async def root(user: AuthUser | None = Depends(get_optional_user)) -> RedirectResponse:
    """Send signed-in users to the dashboard and everyone else to login."""
    return RedirectResponse(DASHBOARD_PATH if user is not None else LOGIN_PATH)


@router.get(DASHBOARD_PATH, response_class=HTMLResponse)
async def dashboard(
    current_user: AuthUser = Depends(get_current_user),
    store: BookmarkStore = Depends(get_bookmark_store),
) -> HTMLResponse:
    """Render the dashboard with the server-read list."""
    items = await load_snapshot(store, current_user.id)
    return HTMLResponse(render_dashboard(current_user, items))


@router.get(f"{DASHBOARD_PATH}/events")
async def dashboard_events(
    current_user: AuthUser = Depends(get_current_user),
    change_feed: ChangeFeed = Depends(get_change_feed),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    registry: ReconcilerRegistry = Depends(get_reconciler_registry),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    """
    Stream the live list as Server-Sent Events.

    Events:
        ready: `{"stream_id": ...}` - id to send create/delete requests to.
        state: the full reconciled list state, on connect and after every change.

    A `: ping` comment is sent when nothing changed for a while so proxies
    do not drop the idle connection.

    The reconciler is disposed when the client disconnects.
    """
    owner_id = current_user.id
    stream_id = secrets.token_urlsafe(16)

    async def event_stream() -> AsyncGenerator[str]:
        async with session_factory() as db:
            store = BookmarkStore(db, change_feed)
            reconciler = BookmarkReconciler(store, owner_id)
            registry.register(stream_id, reconciler)
            logger.info("live_list_opened owner_id=%s stream_id=%s", owner_id, stream_id)
            try:
                # Subscribe before reading so nothing committed in between is missed
                reconciler.hold_changes()
                await reconciler.start()
                reconciler.replace_snapshot(await load_snapshot(store, owner_id))
                yield format_sse("ready", {"stream_id": stream_id})
                async for message in state_messages(
                    reconciler, settings.sse_keepalive_seconds,
                ):
                    yield message
            finally:
                registry.unregister(stream_id)
                await reconciler.dispose()
                logger.info("live_list_closed owner_id=%s stream_id=%s", owner_id, stream_id)

    return StreamingResponse(
        event_stream(), media_type="text/event-stream", headers=SSE_HEADERS,
    )


def _live_reconciler(
    stream_id: str, owner_id: str, registry: ReconcilerRegistry,
) -> BookmarkReconciler:
    reconciler = registry.get(stream_id, owner_id)
    if reconciler is None:
        raise HTTPException(status_code=404, detail="Live list not found")
    return reconciler


@router.post(
    f"{DASHBOARD_PATH}/streams/{{stream_id}}/bookmarks",
    response_model=MutationResponse,
    status_code=201,
)
async def create_through_stream(
    stream_id: str,
    data: BookmarkFormData,
    current_user: AuthUser = Depends(get_current_user),
    registry: ReconcilerRegistry = Depends(get_reconciler_registry),
) -> MutationResponse:
    """Create a bookmark through a live list; the list updates from the event."""
    reconciler = _live_reconciler(stream_id, current_user.id, registry)
    result = await reconciler.request_create(data.title, data.url)
    _raise_for_failure(result)
    return MutationResponse(ok=True, bookmark=result.bookmark)


@router.delete(
    f"{DASHBOARD_PATH}/streams/{{stream_id}}/bookmarks/{{bookmark_id}}",
    response_model=MutationResponse,
)
async def delete_through_stream(
    stream_id: str,
    bookmark_id: UUID,
    current_user: AuthUser = Depends(get_current_user),
    registry: ReconcilerRegistry = Depends(get_reconciler_registry),
) -> MutationResponse:
    """Delete a bookmark through a live list; the list updates from the event."""
    reconciler = _live_reconciler(stream_id, current_user.id, registry)
    result = await reconciler.request_delete(bookmark_id)
    _raise_for_failure(result)
    return MutationResponse(ok=True)
