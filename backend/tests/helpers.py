"""Helpers shared across test modules."""
import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

from uuid6 import uuid7

from schemas.bookmark import BookmarkResponse

BASE_TIME = datetime(2026, 1, 1, tzinfo=UTC)


def make_bookmark(
    n: int,
    owner_id: str = "user-1",
    bookmark_id: UUID | None = None,
) -> BookmarkResponse:
    """Bookmark number `n`; higher numbers are newer."""
    return BookmarkResponse(
        id=bookmark_id or uuid7(),
        owner_id=owner_id,
        title=f"Bookmark {n}",
        url=f"https://example.com/{n}",
        created_at=BASE_TIME + timedelta(minutes=n),
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until `predicate` holds; fails the test on timeout."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


async def settle() -> None:
    """Let queued callbacks and tasks run."""
    for _ in range(10):
        await asyncio.sleep(0)
