"""Bookmark JSON endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_bookmark_store, get_current_user
from core.auth_client import AuthUser
from schemas.bookmark import BookmarkCreate, BookmarkListResponse, BookmarkResponse
from services.bookmark_store import BookmarkStore
from services.exceptions import BookmarkNotFoundError, BookmarkValidationError

router = APIRouter(prefix="/api/bookmarks", tags=["bookmarks"])


@router.post("/", response_model=BookmarkResponse, status_code=201)
async def create_bookmark(
    data: BookmarkCreate,
    current_user: AuthUser = Depends(get_current_user),
    store: BookmarkStore = Depends(get_bookmark_store),
) -> BookmarkResponse:
    """
    Create a bookmark.

    The URL gets `https://` when it has no scheme. Open live lists pick the
    new bookmark up from its change event.
    """
    try:
        return await store.create(current_user.id, data.title, data.url)
    except BookmarkValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/", response_model=BookmarkListResponse)
async def list_bookmarks(
    current_user: AuthUser = Depends(get_current_user),
    store: BookmarkStore = Depends(get_bookmark_store),
) -> BookmarkListResponse:
    """List the current user's bookmarks, newest first."""
    items = await store.list(current_user.id)
    return BookmarkListResponse(items=items, total=len(items))


@router.delete("/{bookmark_id}", status_code=204)
async def delete_bookmark(
    bookmark_id: UUID,
    current_user: AuthUser = Depends(get_current_user),
    store: BookmarkStore = Depends(get_bookmark_store),
) -> None:
    """Delete one of the current user's bookmarks."""
    try:
        await store.delete(current_user.id, bookmark_id)
    except BookmarkNotFoundError:
        raise HTTPException(status_code=404, detail="Bookmark not found")
