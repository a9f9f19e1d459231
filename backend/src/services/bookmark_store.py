"""
Bookmark store: owner-scoped persistence plus change notification.

Every write commits first and is published on the change feed second, so a
subscriber never sees an event for a row that was rolled back. Publishing is
best-effort: a failed publish is logged and the write still succeeds; live
lists converge on their next snapshot.
"""
import asyncio
import contextlib
import logging
from collections.abc import Callable
from enum import StrEnum
from types import TracebackType
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.bookmark import Bookmark
from schemas.bookmark import BookmarkResponse
from schemas.changes import (
    BookmarkDeleted,
    BookmarkInserted,
    DeletedRecord,
    change_owner,
    parse_change,
)
from services.change_feed import ChangeChannel, ChangeFeed, ChangeFeedError
from services.exceptions import BookmarkNotFoundError, BookmarkValidationError

logger = logging.getLogger(__name__)


class ChannelStatus(StrEnum):
    """Lifecycle of a change subscription."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


InsertCallback = Callable[[BookmarkResponse], None]
DeleteCallback = Callable[[UUID], None]
StatusCallback = Callable[[ChannelStatus], None]


class StoreSubscription:
    """
    A live subscription to one owner's bookmark changes.

    Status moves connecting -> connected once the feed confirms the channel,
    and to error when the channel cannot be opened or drops while open.
    Callbacks run on the event loop, one event at a time, in arrival order.
    Events for other owners and malformed payloads are dropped.
    """

    def __init__(
        self,
        change_feed: ChangeFeed,
        owner_id: str,
        on_insert: InsertCallback,
        on_delete: DeleteCallback,
        on_status: StatusCallback | None = None,
    ) -> None:
        self._change_feed = change_feed
        self._owner_id = owner_id
        self._on_insert = on_insert
        self._on_delete = on_delete
        self._on_status = on_status
        self._status = ChannelStatus.CONNECTING
        self._channel: ChangeChannel | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def owner_id(self) -> str:
        """Owner this subscription is scoped to."""
        return self._owner_id

    @property
    def status(self) -> ChannelStatus:
        """Current channel status."""
        return self._status

    @property
    def closed(self) -> bool:
        """True once close() has been called."""
        return self._closed

    def _set_status(self, status: ChannelStatus) -> None:
        self._status = status
        if self._on_status is not None:
            self._on_status(status)

    async def open(self) -> None:
        """Open the channel and start delivering events."""
        self._set_status(ChannelStatus.CONNECTING)
        try:
            self._channel = await self._change_feed.open(self._owner_id)
        except ChangeFeedError as e:
            logger.warning("bookmark_subscription_failed owner_id=%s error=%s", self._owner_id, e)
            self._set_status(ChannelStatus.ERROR)
            return
        if self._closed:
            # Closed while the channel was being confirmed
            await self._channel.close()
            return
        self._set_status(ChannelStatus.CONNECTED)
        self._task = asyncio.create_task(
            self._pump(self._channel), name=f"bookmark-subscription:{self._owner_id}",
        )

    async def _pump(self, channel: ChangeChannel) -> None:
        try:
            async for payload in channel:
                self._dispatch(payload)
        except ChangeFeedError as e:
            logger.warning("bookmark_subscription_dropped owner_id=%s error=%s", self._owner_id, e)
        if not self._closed:
            self._set_status(ChannelStatus.ERROR)

    def _dispatch(self, payload: dict) -> None:
        try:
            change = parse_change(payload)
        except ValueError as e:  # includes pydantic.ValidationError
            logger.warning(
                "bookmark_change_rejected owner_id=%s error=%s", self._owner_id, e,
            )
            return
        if change_owner(change) != self._owner_id:
            logger.warning(
                "bookmark_change_foreign_owner owner_id=%s event_owner=%s",
                self._owner_id,
                change_owner(change),
            )
            return
        if isinstance(change, BookmarkInserted):
            self._on_insert(change.record)
        else:
            self._on_delete(change.old_record.id)

    async def close(self) -> None:
        """Stop delivering events and release the channel. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        if self._channel is not None:
            await self._channel.close()

    async def __aenter__(self) -> "StoreSubscription":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


class BookmarkStore:
    """Owner-scoped bookmark persistence bound to one database session."""

    def __init__(self, db: AsyncSession, change_feed: ChangeFeed) -> None:
        self._db = db
        self._change_feed = change_feed

    async def create(self, owner_id: str, title: str, url: str) -> BookmarkResponse:
        """
        Insert a bookmark for an owner and announce it.

        The URL must already be normalized (see schemas.validators); it is
        stored as given.

        Raises:
            BookmarkValidationError: If owner, title or URL is empty.
        """
        if not owner_id:
            raise BookmarkValidationError("An owner is required.")
        if not title or not title.strip():
            raise BookmarkValidationError("Please enter a title for your bookmark.")
        if not url or not url.strip():
            raise BookmarkValidationError("Please enter a URL.")

        bookmark = Bookmark(owner_id=owner_id, title=title, url=url)
        self._db.add(bookmark)
        try:
            await self._db.flush()
            await self._db.commit()
        except SQLAlchemyError:
            await self._db.rollback()
            raise

        record = BookmarkResponse.model_validate(bookmark)
        logger.info("bookmark_created owner_id=%s bookmark_id=%s", owner_id, record.id)
        await self._publish(owner_id, BookmarkInserted(record=record))
        return record

    async def delete(self, owner_id: str, bookmark_id: UUID) -> None:
        """
        Delete one of the owner's bookmarks and announce it.

        Raises:
            BookmarkNotFoundError: If no bookmark with that id belongs to the owner.
        """
        try:
            result = await self._db.execute(
                delete(Bookmark).where(
                    Bookmark.id == bookmark_id,
                    Bookmark.owner_id == owner_id,
                ),
            )
            if result.rowcount == 0:
                await self._db.rollback()
                raise BookmarkNotFoundError(bookmark_id)
            await self._db.commit()
        except SQLAlchemyError:
            await self._db.rollback()
            raise

        logger.info("bookmark_deleted owner_id=%s bookmark_id=%s", owner_id, bookmark_id)
        await self._publish(
            owner_id,
            BookmarkDeleted(old_record=DeletedRecord(id=bookmark_id), owner_id=owner_id),
        )

    async def subscribe(
        self,
        owner_id: str,
        on_insert: InsertCallback,
        on_delete: DeleteCallback,
        on_status: StatusCallback | None = None,
    ) -> StoreSubscription:
        """
        Subscribe to the owner's changes.

        Returns once the channel is confirmed or has failed; the outcome is
        reported through `on_status` and the subscription's `status`.
        """
        subscription = StoreSubscription(
            self._change_feed, owner_id, on_insert, on_delete, on_status,
        )
        await subscription.open()
        return subscription

    async def _publish(self, owner_id: str, change: BookmarkInserted | BookmarkDeleted) -> None:
        published = await self._change_feed.publish(owner_id, change.model_dump(mode="json"))
        if not published:
            logger.warning(
                "bookmark_change_not_published owner_id=%s type=%s", owner_id, change.type,
            )

    # Defined last: the method name shadows the builtin inside the class body
    async def list(self, owner_id: str) -> list[BookmarkResponse]:
        """
        All of the owner's bookmarks, newest first.

        The read transaction is ended before returning, so a session kept by a
        long-lived caller (an event stream) does not hold a connection.
        """
        try:
            result = await self._db.execute(
                select(Bookmark)
                .where(Bookmark.owner_id == owner_id)
                .order_by(Bookmark.created_at.desc(), Bookmark.id.desc()),
            )
            items = [BookmarkResponse.model_validate(b) for b in result.scalars().all()]
            await self._db.commit()
        except SQLAlchemyError:
            await self._db.rollback()
            raise
        return items
