"""
Live bookmark list reconciliation.

A `BookmarkReconciler` owns the list one connected browser view shows. It is
seeded with a server-read snapshot and then kept in step with the store
purely through change events:

- remote insert: ignored if the id is already listed, otherwise prepended
- remote delete: removes the id if listed, otherwise nothing happens
- local create/delete requests go to the store and never touch the list;
  the matching change event (which the requesting view also receives) does

The list therefore never holds an id twice and never shows an unconfirmed
write. Prepending does not re-sort, so an insert carrying an older
`created_at` than its neighbours (clock skew) stays on top until the next
snapshot.

All transitions are synchronous and run on the event loop, so they never
interleave. Only the store calls inside `request_create`/`request_delete`
suspend.
"""
import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from schemas.bookmark import BookmarkCreate, BookmarkResponse
from schemas.validators import first_error_message
from services.bookmark_store import BookmarkStore, ChannelStatus, StoreSubscription
from services.exceptions import BookmarkNotFoundError, BookmarkValidationError

logger = logging.getLogger(__name__)

CREATE_IN_PROGRESS = "A bookmark is already being saved."
DELETE_IN_PROGRESS = "This bookmark is already being deleted."
ALREADY_DELETED = "This bookmark no longer exists."
CREATE_FAILED = "Could not save the bookmark. Please try again."
DELETE_FAILED = "Could not delete the bookmark. Please try again."
DISPOSED = "This live list has been closed."


@dataclass(frozen=True)
class ReconcilerState:
    """Immutable view of a reconciler at one point in time."""

    items: tuple[BookmarkResponse, ...]
    status: ChannelStatus
    error: str | None = None
    pending_deletes: frozenset[UUID] = field(default_factory=frozenset)
    is_creating: bool = False

    @property
    def total(self) -> int:
        """Number of listed bookmarks."""
        return len(self.items)

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready representation streamed to the browser."""
        return {
            "items": [item.model_dump(mode="json") for item in self.items],
            "total": self.total,
            "status": self.status.value,
            "error": self.error,
            "pending_deletes": sorted(str(i) for i in self.pending_deletes),
            "is_creating": self.is_creating,
        }


@dataclass(frozen=True)
class MutationResult:
    """Outcome of a create or delete request."""

    ok: bool
    error: str | None = None
    bookmark: BookmarkResponse | None = None


class BookmarkReconciler:
    """Keeps one view's bookmark list consistent with the store."""

    def __init__(
        self,
        store: BookmarkStore,
        owner_id: str,
        initial_snapshot: Iterable[BookmarkResponse] = (),
    ) -> None:
        self._store = store
        self._owner_id = owner_id
        self._items: OrderedDict[UUID, BookmarkResponse] = OrderedDict()
        self._status = ChannelStatus.CONNECTING
        self._error: str | None = None
        self._pending_deletes: set[UUID] = set()
        self._is_creating = False
        self._subscription: StoreSubscription | None = None
        self._disposed = False
        # One store (and database session) per reconciler; calls are serialized
        self._store_lock = asyncio.Lock()
        self._version = 0
        self._changed = asyncio.Event()
        # Changes seen while a snapshot is being read; replayed over it
        self._held_changes: list[BookmarkResponse | UUID] | None = None
        self._load(initial_snapshot)

    @property
    def owner_id(self) -> str:
        """Owner whose bookmarks are listed."""
        return self._owner_id

    @property
    def disposed(self) -> bool:
        """True once dispose() has been called."""
        return self._disposed

    def state(self) -> ReconcilerState:
        """Snapshot of the current state."""
        return ReconcilerState(
            items=tuple(self._items.values()),
            status=self._status,
            error=self._error,
            pending_deletes=frozenset(self._pending_deletes),
            is_creating=self._is_creating,
        )

    def _notify(self) -> None:
        self._version += 1
        self._changed.set()
        self._changed = asyncio.Event()

    def _load(self, snapshot: Iterable[BookmarkResponse]) -> None:
        self._items = OrderedDict()
        for item in snapshot:
            # First occurrence wins; the snapshot is already newest-first
            self._items.setdefault(item.id, item)

    def hold_changes(self) -> None:
        """
        Remember remote changes until the next `replace_snapshot`.

        Call before subscribing and reading a snapshot: events that arrive
        while the read is in flight are replayed over the snapshot, so a
        change committed during the read is neither lost nor undone.
        """
        self._held_changes = []

    def replace_snapshot(self, snapshot: Iterable[BookmarkResponse]) -> None:
        """Replace the list wholesale with a freshly read snapshot."""
        if self._disposed:
            return
        self._load(snapshot)
        held, self._held_changes = self._held_changes or [], None
        for change in held:
            if isinstance(change, BookmarkResponse):
                self._insert(change)
            else:
                self._items.pop(change, None)
        self._notify()

    def apply_insert(self, record: BookmarkResponse) -> None:
        """Remote insert: prepend unless already listed."""
        if self._disposed or record.owner_id != self._owner_id:
            return
        if self._held_changes is not None:
            self._held_changes.append(record)
        if self._insert(record):
            self._notify()

    def _insert(self, record: BookmarkResponse) -> bool:
        if record.id in self._items:
            logger.debug("reconciler_duplicate_insert bookmark_id=%s", record.id)
            return False
        self._items[record.id] = record
        self._items.move_to_end(record.id, last=False)
        return True

    def apply_delete(self, bookmark_id: UUID) -> None:
        """Remote delete: remove if listed."""
        if self._disposed:
            return
        if self._held_changes is not None:
            self._held_changes.append(bookmark_id)
        if self._items.pop(bookmark_id, None) is not None:
            self._notify()

    def _apply_status(self, status: ChannelStatus) -> None:
        if self._disposed or status == self._status:
            return
        self._status = status
        self._notify()

    async def request_create(self, title: str, url: str) -> MutationResult:
        """
        Validate, normalize and store a new bookmark.

        The list is not touched; the insert event adds the bookmark. Invalid
        input is rejected before the store is called.
        """
        if self._disposed:
            return MutationResult(ok=False, error=DISPOSED)
        if self._is_creating:
            return MutationResult(ok=False, error=CREATE_IN_PROGRESS)
        try:
            data = BookmarkCreate(title=title, url=url)
        except ValidationError as e:
            message = first_error_message(e)
            self._set_error(message)
            return MutationResult(ok=False, error=message)

        self._is_creating = True
        self._error = None
        self._notify()
        try:
            async with self._store_lock:
                record = await self._store.create(self._owner_id, data.title, data.url)
        except BookmarkValidationError as e:
            return self._finish_create(MutationResult(ok=False, error=str(e)))
        except SQLAlchemyError:
            logger.exception("reconciler_create_failed owner_id=%s", self._owner_id)
            return self._finish_create(MutationResult(ok=False, error=CREATE_FAILED))
        return self._finish_create(MutationResult(ok=True, bookmark=record))

    def _finish_create(self, result: MutationResult) -> MutationResult:
        if self._disposed:
            # Arrived after teardown; nothing left to update
            return result
        self._is_creating = False
        self._error = result.error
        self._notify()
        return result

    async def request_delete(self, bookmark_id: UUID) -> MutationResult:
        """
        Ask the store to delete a bookmark.

        The item stays listed until the delete event arrives; on failure it
        simply stays and the error is surfaced.
        """
        if self._disposed:
            return MutationResult(ok=False, error=DISPOSED)
        if bookmark_id in self._pending_deletes:
            return MutationResult(ok=False, error=DELETE_IN_PROGRESS)

        self._pending_deletes.add(bookmark_id)
        self._error = None
        self._notify()
        try:
            async with self._store_lock:
                await self._store.delete(self._owner_id, bookmark_id)
        except BookmarkNotFoundError:
            result = MutationResult(ok=False, error=ALREADY_DELETED)
        except SQLAlchemyError:
            logger.exception(
                "reconciler_delete_failed owner_id=%s bookmark_id=%s",
                self._owner_id,
                bookmark_id,
            )
            result = MutationResult(ok=False, error=DELETE_FAILED)
        else:
            result = MutationResult(ok=True)

        if not self._disposed:
            self._pending_deletes.discard(bookmark_id)
            self._error = result.error
            self._notify()
        return result

    def _set_error(self, message: str | None) -> None:
        self._error = message
        self._notify()

    async def start(self) -> None:
        """Open the change subscription for the current owner."""
        if self._disposed or self._subscription is not None:
            return
        self._status = ChannelStatus.CONNECTING
        self._notify()
        subscription = await self._store.subscribe(
            self._owner_id,
            on_insert=self.apply_insert,
            on_delete=self.apply_delete,
            on_status=self._apply_status,
        )
        if self._disposed:
            await subscription.close()
            return
        self._subscription = subscription

    async def switch_owner(
        self, owner_id: str, snapshot: Iterable[BookmarkResponse],
    ) -> None:
        """Tear down the current subscription, then follow another owner."""
        if self._disposed:
            return
        await self._close_subscription()
        self._owner_id = owner_id
        self._pending_deletes.clear()
        self._is_creating = False
        self._error = None
        self._held_changes = None
        self._load(snapshot)
        self._notify()
        await self.start()

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    async def dispose(self) -> None:
        """
        Stop reconciling and release the subscription.

        The reconciler is marked disposed before anything is awaited, so no
        event or request result can change its state afterwards.
        """
        if self._disposed:
            return
        self._disposed = True
        self._notify()
        await self._close_subscription()
        logger.debug("reconciler_disposed owner_id=%s", self._owner_id)

    async def updates(self) -> AsyncIterator[ReconcilerState]:
        """Yield the current state, then each change, until disposed."""
        seen = -1
        while True:
            if self._version != seen:
                seen = self._version
                yield self.state()
            if self._disposed:
                return
            changed = self._changed
            if self._version == seen:
                await changed.wait()


class ReconcilerRegistry:
    """
    Live reconcilers by stream id.

    Each open event stream registers its reconciler so that create/delete
    requests from the same browser view reach it.
    """

    def __init__(self) -> None:
        self._reconcilers: dict[str, BookmarkReconciler] = {}

    def __len__(self) -> int:
        return len(self._reconcilers)

    def register(self, stream_id: str, reconciler: BookmarkReconciler) -> None:
        """Track a reconciler."""
        self._reconcilers[stream_id] = reconciler

    def unregister(self, stream_id: str) -> None:
        """Forget a reconciler; unknown ids are ignored."""
        self._reconcilers.pop(stream_id, None)

    def get(self, stream_id: str, owner_id: str) -> BookmarkReconciler | None:
        """Look up a live reconciler belonging to the owner."""
        reconciler = self._reconcilers.get(stream_id)
        if reconciler is None or reconciler.disposed or reconciler.owner_id != owner_id:
            return None
        return reconciler
