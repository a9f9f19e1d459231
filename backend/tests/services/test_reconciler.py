"""Tests for the live list reconciler."""
import asyncio
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.bookmark_store import BookmarkStore, ChannelStatus
from services.change_feed import LocalChangeFeed
from services.exceptions import BookmarkNotFoundError
from services.reconciler import (
    ALREADY_DELETED,
    CREATE_IN_PROGRESS,
    DELETE_FAILED,
    DELETE_IN_PROGRESS,
    DISPOSED,
    BookmarkReconciler,
    ReconcilerRegistry,
    ReconcilerState,
)
from tests.helpers import make_bookmark, settle, wait_until


def titles(reconciler: BookmarkReconciler) -> list[str]:
    """Titles in list order."""
    return [item.title for item in reconciler.state().items]


@pytest.fixture
def mock_store() -> AsyncMock:
    """Store double for tests that only exercise local transitions."""
    return AsyncMock(spec=BookmarkStore)


@pytest.fixture
async def reconciler(store: BookmarkStore) -> AsyncGenerator[BookmarkReconciler]:
    """Started reconciler for user-1 over the real store."""
    engine = BookmarkReconciler(store, "user-1")
    await engine.start()
    yield engine
    await engine.dispose()


class TestInitialState:
    """Tests for construction."""

    def test__seeded_with_snapshot(self, mock_store: AsyncMock) -> None:
        """The snapshot is listed in the given order."""
        snapshot = [make_bookmark(3), make_bookmark(2), make_bookmark(1)]

        state = BookmarkReconciler(mock_store, "user-1", snapshot).state()

        assert [i.title for i in state.items] == ["Bookmark 3", "Bookmark 2", "Bookmark 1"]
        assert state.status == ChannelStatus.CONNECTING
        assert state.error is None
        assert state.is_creating is False
        assert state.pending_deletes == frozenset()

    def test__duplicate_ids_in_snapshot_collapse(self, mock_store: AsyncMock) -> None:
        """A snapshot never yields two entries with one id."""
        first = make_bookmark(2)
        snapshot = [first, make_bookmark(1, bookmark_id=first.id)]

        state = BookmarkReconciler(mock_store, "user-1", snapshot).state()

        assert [i.title for i in state.items] == ["Bookmark 2"]

    def test__state_is_immutable_snapshot(self, mock_store: AsyncMock) -> None:
        """Later transitions do not change a previously returned state."""
        engine = BookmarkReconciler(mock_store, "user-1", [make_bookmark(1)])
        before = engine.state()

        engine.apply_insert(make_bookmark(2))

        assert before.total == 1
        assert engine.state().total == 2


class TestRemoteInsert:
    """Tests for insert events."""

    def test__prepends(self, mock_store: AsyncMock) -> None:
        """[B3, B2, B1] + insert B4 -> [B4, B3, B2, B1]."""
        engine = BookmarkReconciler(
            mock_store, "user-1", [make_bookmark(3), make_bookmark(2), make_bookmark(1)],
        )

        engine.apply_insert(make_bookmark(4))

        assert titles(engine) == ["Bookmark 4", "Bookmark 3", "Bookmark 2", "Bookmark 1"]

    def test__duplicate_insert_is_noop(self, mock_store: AsyncMock) -> None:
        """Delivering the same insert twice leaves one entry."""
        engine = BookmarkReconciler(mock_store, "user-1", [make_bookmark(1)])
        new = make_bookmark(2)

        engine.apply_insert(new)
        engine.apply_insert(new)

        assert [i.id for i in engine.state().items].count(new.id) == 1
        assert engine.state().total == 2

    def test__insert_of_listed_snapshot_item_is_noop(self, mock_store: AsyncMock) -> None:
        """An event for an item already in the snapshot does not move it."""
        b2, b1 = make_bookmark(2), make_bookmark(1)
        engine = BookmarkReconciler(mock_store, "user-1", [b2, b1])

        engine.apply_insert(b1)

        assert titles(engine) == ["Bookmark 2", "Bookmark 1"]

    def test__older_insert_still_prepended(self, mock_store: AsyncMock) -> None:
        """Inserts are not re-sorted by created_at."""
        engine = BookmarkReconciler(mock_store, "user-1", [make_bookmark(5)])

        engine.apply_insert(make_bookmark(1))

        assert titles(engine) == ["Bookmark 1", "Bookmark 5"]

    def test__other_owner_ignored(self, mock_store: AsyncMock) -> None:
        """Records for another owner never enter the list."""
        engine = BookmarkReconciler(mock_store, "user-1")

        engine.apply_insert(make_bookmark(1, owner_id="user-2"))

        assert engine.state().items == ()


class TestRemoteDelete:
    """Tests for delete events."""

    def test__removes_listed_item(self, mock_store: AsyncMock) -> None:
        """The deleted id leaves the list; order of the rest is kept."""
        b3, b2, b1 = make_bookmark(3), make_bookmark(2), make_bookmark(1)
        engine = BookmarkReconciler(mock_store, "user-1", [b3, b2, b1])

        engine.apply_delete(b2.id)

        assert titles(engine) == ["Bookmark 3", "Bookmark 1"]

    def test__absent_id_is_noop(self, mock_store: AsyncMock) -> None:
        """Deleting an id that is not listed changes nothing."""
        engine = BookmarkReconciler(mock_store, "user-1", [make_bookmark(1)])
        before = engine.state()

        engine.apply_delete(make_bookmark(9).id)

        assert engine.state() == before

    def test__duplicate_delete_is_noop(self, mock_store: AsyncMock) -> None:
        """A second delete event for the same id is harmless."""
        b1 = make_bookmark(1)
        engine = BookmarkReconciler(mock_store, "user-1", [b1, make_bookmark(0)])

        engine.apply_delete(b1.id)
        engine.apply_delete(b1.id)

        assert titles(engine) == ["Bookmark 0"]


class TestReplaceSnapshot:
    """Tests for snapshot replacement."""

    def test__replaces_wholesale(self, mock_store: AsyncMock) -> None:
        """Local items are dropped in favour of the new snapshot."""
        engine = BookmarkReconciler(mock_store, "user-1", [make_bookmark(1)])
        engine.apply_insert(make_bookmark(2))

        engine.replace_snapshot([make_bookmark(7), make_bookmark(6)])

        assert titles(engine) == ["Bookmark 7", "Bookmark 6"]

    def test__changes_during_read_replayed(self, mock_store: AsyncMock) -> None:
        """Events that arrive while the snapshot is read survive the replace."""
        b2, b1 = make_bookmark(2), make_bookmark(1)
        engine = BookmarkReconciler(mock_store, "user-1")
        engine.hold_changes()

        # Committed after the read started: not in the snapshot
        engine.apply_insert(make_bookmark(5))
        engine.apply_delete(b1.id)
        engine.replace_snapshot([b2, b1])

        assert titles(engine) == ["Bookmark 5", "Bookmark 2"]

    def test__held_insert_already_in_snapshot_not_duplicated(
        self, mock_store: AsyncMock,
    ) -> None:
        """An event also covered by the snapshot leaves a single entry."""
        b3 = make_bookmark(3)
        engine = BookmarkReconciler(mock_store, "user-1")
        engine.hold_changes()

        engine.apply_insert(b3)
        engine.replace_snapshot([b3, make_bookmark(1)])

        assert titles(engine) == ["Bookmark 3", "Bookmark 1"]

    def test__replay_happens_once(self, mock_store: AsyncMock) -> None:
        """Later snapshots are not affected by earlier held changes."""
        engine = BookmarkReconciler(mock_store, "user-1")
        engine.hold_changes()
        engine.apply_insert(make_bookmark(5))
        engine.replace_snapshot([])

        engine.replace_snapshot([make_bookmark(1)])

        assert titles(engine) == ["Bookmark 1"]


class TestRequestCreate:
    """Tests for local create requests."""

    async def test__invalid_url_rejected_before_store(self, mock_store: AsyncMock) -> None:
        """'not a url' never reaches the store."""
        engine = BookmarkReconciler(mock_store, "user-1")

        result = await engine.request_create("Example", "not a url")

        assert result.ok is False
        assert result.error == "Please enter a valid URL (e.g. https://example.com)."
        assert engine.state().error == result.error
        mock_store.create.assert_not_awaited()

    async def test__missing_title_rejected(self, mock_store: AsyncMock) -> None:
        """A blank title is rejected with the form message."""
        engine = BookmarkReconciler(mock_store, "user-1")

        result = await engine.request_create("  ", "example.com")

        assert result.error == "Please enter a title for your bookmark."
        mock_store.create.assert_not_awaited()

    async def test__normalizes_before_store(self, mock_store: AsyncMock) -> None:
        """create('Example', 'example.com') stores https://example.com."""
        mock_store.create.return_value = make_bookmark(1)
        engine = BookmarkReconciler(mock_store, "user-1")

        result = await engine.request_create(" Example ", "example.com")

        assert result.ok is True
        mock_store.create.assert_awaited_once_with("user-1", "Example", "https://example.com")

    async def test__no_optimistic_insert(self, mock_store: AsyncMock) -> None:
        """A successful create does not add to the list by itself."""
        mock_store.create.return_value = make_bookmark(1)
        engine = BookmarkReconciler(mock_store, "user-1")

        await engine.request_create("Example", "example.com")

        assert engine.state().items == ()
        assert engine.state().is_creating is False

    async def test__insert_arrives_through_subscription(
        self, reconciler: BookmarkReconciler,
    ) -> None:
        """The creating view receives its own insert event."""
        result = await reconciler.request_create("Docs", "docs.rs")

        assert result.ok is True
        await wait_until(lambda: reconciler.state().total == 1)
        assert reconciler.state().items[0].url == "https://docs.rs"

    async def test__duplicate_in_flight_rejected(self, mock_store: AsyncMock) -> None:
        """A second create while one is pending is refused without a store call."""
        release = asyncio.Event()

        async def slow_create(*_args: object) -> object:
            await release.wait()
            return make_bookmark(1)

        mock_store.create.side_effect = slow_create
        engine = BookmarkReconciler(mock_store, "user-1")

        first = asyncio.create_task(engine.request_create("One", "one.example"))
        await wait_until(lambda: engine.state().is_creating)
        second = await engine.request_create("Two", "two.example")
        release.set()
        await first

        assert second.ok is False
        assert second.error == CREATE_IN_PROGRESS
        assert mock_store.create.await_count == 1
        assert engine.state().is_creating is False

    async def test__store_failure_surfaced(self, mock_store: AsyncMock) -> None:
        """Database errors become an error message; the list is unchanged."""
        mock_store.create.side_effect = OperationalError("INSERT", {}, Exception("db down"))
        engine = BookmarkReconciler(mock_store, "user-1", [make_bookmark(1)])

        result = await engine.request_create("Docs", "docs.rs")

        assert result.ok is False
        assert engine.state().error == result.error
        assert titles(engine) == ["Bookmark 1"]


class TestRequestDelete:
    """Tests for local delete requests."""

    async def test__item_stays_until_event(self, mock_store: AsyncMock) -> None:
        """A successful delete call alone does not remove the item."""
        b1 = make_bookmark(1)
        engine = BookmarkReconciler(mock_store, "user-1", [b1])

        result = await engine.request_delete(b1.id)

        assert result.ok is True
        mock_store.delete.assert_awaited_once_with("user-1", b1.id)
        assert titles(engine) == ["Bookmark 1"]
        assert engine.state().pending_deletes == frozenset()

    async def test__removed_when_event_arrives(
        self, reconciler: BookmarkReconciler,
    ) -> None:
        """The delete event removes the item."""
        await reconciler.request_create("Docs", "docs.rs")
        await wait_until(lambda: reconciler.state().total == 1)
        bookmark_id = reconciler.state().items[0].id

        result = await reconciler.request_delete(bookmark_id)

        assert result.ok is True
        await wait_until(lambda: reconciler.state().total == 0)

    async def test__failure_leaves_item_and_surfaces_error(
        self, mock_store: AsyncMock,
    ) -> None:
        """A failed delete keeps the item and reports the error."""
        mock_store.delete.side_effect = OperationalError("DELETE", {}, Exception("db down"))
        b1 = make_bookmark(1)
        engine = BookmarkReconciler(mock_store, "user-1", [b1])

        result = await engine.request_delete(b1.id)

        assert result.error == DELETE_FAILED
        assert engine.state().error == DELETE_FAILED
        assert titles(engine) == ["Bookmark 1"]
        assert engine.state().pending_deletes == frozenset()

    async def test__already_gone(self, mock_store: AsyncMock) -> None:
        """Deleting a bookmark someone else already deleted fails gracefully."""
        b1 = make_bookmark(1)
        mock_store.delete.side_effect = BookmarkNotFoundError(b1.id)
        engine = BookmarkReconciler(mock_store, "user-1", [b1])

        result = await engine.request_delete(b1.id)

        assert result.ok is False
        assert result.error == ALREADY_DELETED

    async def test__duplicate_in_flight_rejected(self, mock_store: AsyncMock) -> None:
        """A second delete of the same id while pending is refused."""
        release = asyncio.Event()

        async def slow_delete(*_args: object) -> None:
            await release.wait()

        mock_store.delete.side_effect = slow_delete
        b1 = make_bookmark(1)
        engine = BookmarkReconciler(mock_store, "user-1", [b1])

        first = asyncio.create_task(engine.request_delete(b1.id))
        await wait_until(lambda: b1.id in engine.state().pending_deletes)
        second = await engine.request_delete(b1.id)
        release.set()
        await first

        assert second.error == DELETE_IN_PROGRESS
        assert mock_store.delete.await_count == 1


class TestLifecycle:
    """Tests for start, switch_owner, dispose and updates."""

    async def test__start_connects(self, reconciler: BookmarkReconciler) -> None:
        """Starting confirms the subscription."""
        assert reconciler.state().status == ChannelStatus.CONNECTED

    async def test__start_twice_opens_one_subscription(
        self, reconciler: BookmarkReconciler, change_feed: LocalChangeFeed,
    ) -> None:
        """At most one live subscription per reconciler."""
        await reconciler.start()

        assert change_feed.subscriber_count("user-1") == 1

    async def test__channel_loss_reports_error_and_keeps_list(
        self, store: BookmarkStore, change_feed: LocalChangeFeed,
    ) -> None:
        """When the channel drops, status is error and the list stays as it was."""
        engine = BookmarkReconciler(store, "user-1", [make_bookmark(1)])
        await engine.start()

        await change_feed.close()
        await wait_until(lambda: engine.state().status == ChannelStatus.ERROR)

        assert titles(engine) == ["Bookmark 1"]
        await engine.dispose()

    async def test__dispose_releases_subscription(
        self, store: BookmarkStore, change_feed: LocalChangeFeed,
    ) -> None:
        """Disposing closes the channel."""
        engine = BookmarkReconciler(store, "user-1")
        await engine.start()

        await engine.dispose()

        assert engine.disposed
        assert change_feed.subscriber_count("user-1") == 0

    async def test__events_after_dispose_ignored(self, mock_store: AsyncMock) -> None:
        """No transition changes a disposed reconciler."""
        engine = BookmarkReconciler(mock_store, "user-1", [make_bookmark(1)])
        await engine.dispose()
        before = engine.state()

        engine.apply_insert(make_bookmark(2))
        engine.replace_snapshot([])

        assert engine.state() == before
        assert (await engine.request_create("Docs", "docs.rs")).error == DISPOSED
        assert (await engine.request_delete(make_bookmark(3).id)).error == DISPOSED

    async def test__result_after_dispose_discarded(self, mock_store: AsyncMock) -> None:
        """An in-flight create that finishes after dispose does not touch state."""
        release = asyncio.Event()

        async def slow_create(*_args: object) -> object:
            await release.wait()
            raise OperationalError("INSERT", {}, Exception("late failure"))

        mock_store.create.side_effect = slow_create
        engine = BookmarkReconciler(mock_store, "user-1")
        pending = asyncio.create_task(engine.request_create("Docs", "docs.rs"))
        await wait_until(lambda: engine.state().is_creating)

        await engine.dispose()
        frozen = engine.state()
        release.set()
        result = await pending

        assert result.ok is False
        assert engine.state() == frozen
        assert engine.state().error is None

    async def test__switch_owner_tears_down_first(
        self, store: BookmarkStore, change_feed: LocalChangeFeed,
    ) -> None:
        """Switching owners closes the old channel before opening the new one."""
        engine = BookmarkReconciler(store, "user-1", [make_bookmark(1)])
        await engine.start()

        await engine.switch_owner("user-2", [make_bookmark(5, owner_id="user-2")])

        assert change_feed.subscriber_count("user-1") == 0
        assert change_feed.subscriber_count("user-2") == 1
        assert engine.owner_id == "user-2"
        assert titles(engine) == ["Bookmark 5"]
        assert engine.state().status == ChannelStatus.CONNECTED
        await engine.dispose()

    async def test__updates_stream_until_dispose(self, mock_store: AsyncMock) -> None:
        """updates() yields the current state, each change, and ends on dispose."""
        engine = BookmarkReconciler(mock_store, "user-1")
        received: list[ReconcilerState] = []

        async def consume() -> None:
            async for state in engine.updates():
                received.append(state)

        consumer = asyncio.create_task(consume())
        await settle()
        engine.apply_insert(make_bookmark(1))
        await settle()
        engine.apply_insert(make_bookmark(2))
        await settle()
        await engine.dispose()
        async with asyncio.timeout(2):
            await consumer

        assert received[0].total == 0
        assert [s.total for s in received[1:3]] == [1, 2]


class TestCrossTab:
    """Scenarios with several live views."""

    async def test__create_in_one_tab_appears_in_other(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        change_feed: LocalChangeFeed,
    ) -> None:
        """Tab A creates; tab B (same user) shows it; tab C (other user) does not."""
        async with (
            session_factory() as session_a,
            session_factory() as session_b,
            session_factory() as session_c,
        ):
            tab_a = BookmarkReconciler(BookmarkStore(session_a, change_feed), "user-1")
            tab_b = BookmarkReconciler(BookmarkStore(session_b, change_feed), "user-1")
            tab_c = BookmarkReconciler(BookmarkStore(session_c, change_feed), "user-2")
            for tab in (tab_a, tab_b, tab_c):
                await tab.start()

            result = await tab_a.request_create("Docs", "https://docs.rs")

            await wait_until(lambda: tab_b.state().total == 1)
            await wait_until(lambda: tab_a.state().total == 1)
            assert tab_b.state().items[0].id == result.bookmark.id
            assert tab_b.state().items[0].title == "Docs"
            await settle()
            assert tab_c.state().total == 0

            for tab in (tab_a, tab_b, tab_c):
                await tab.dispose()

    async def test__concurrent_delete(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        change_feed: LocalChangeFeed,
    ) -> None:
        """Both tabs lose X; a later delete of X from tab B fails gracefully."""
        async with session_factory() as session_a, session_factory() as session_b:
            store_a = BookmarkStore(session_a, change_feed)
            x = await store_a.create("user-1", "X", "https://x.example")
            snapshot = await store_a.list("user-1")
            tab_a = BookmarkReconciler(store_a, "user-1", snapshot)
            tab_b = BookmarkReconciler(BookmarkStore(session_b, change_feed), "user-1", snapshot)
            await tab_a.start()
            await tab_b.start()

            assert (await tab_a.request_delete(x.id)).ok is True
            await wait_until(lambda: tab_a.state().total == 0)
            await wait_until(lambda: tab_b.state().total == 0)

            late = await tab_b.request_delete(x.id)

            assert late.ok is False
            assert late.error == ALREADY_DELETED
            assert tab_b.state().error == ALREADY_DELETED

            await tab_a.dispose()
            await tab_b.dispose()


class TestReconcilerRegistry:
    """Tests for the stream registry."""

    async def test__lookup_scoped_to_owner(self, mock_store: AsyncMock) -> None:
        """A stream id only resolves for its owner and while live."""
        registry = ReconcilerRegistry()
        engine = BookmarkReconciler(mock_store, "user-1")
        registry.register("stream-1", engine)

        assert registry.get("stream-1", "user-1") is engine
        assert registry.get("stream-1", "user-2") is None
        assert registry.get("unknown", "user-1") is None

        await engine.dispose()
        assert registry.get("stream-1", "user-1") is None

        registry.unregister("stream-1")
        registry.unregister("stream-1")
        assert len(registry) == 0
