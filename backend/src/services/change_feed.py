"""
Change feed: fan-out of bookmark change events to every live subscriber.

Events are published per owner on the channel `bookmarks:owner:<owner_id>`.
Two implementations share one interface:

- `RedisChangeFeed` - Redis pub/sub, reaches subscribers in every process.
- `LocalChangeFeed` - in-process queues, used when Redis is disabled or
  unreachable (single-process deployments and tests).

Delivery is at-most-once and unordered relative to the write that caused it;
subscribers must tolerate duplicates and missing events.
"""
import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Any

from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from core.redis import RedisClient

logger = logging.getLogger(__name__)


class ChangeFeedError(Exception):
    """Raised when a channel cannot be opened or fails while open."""

    pass


def channel_name(owner_id: str) -> str:
    """Channel carrying one owner's bookmark changes."""
    return f"bookmarks:owner:{owner_id}"


class ChangeChannel(ABC):
    """
    One open subscription to an owner's change events.

    Iterating yields raw payload dicts. Iteration ends when the channel is
    closed from the feed side and raises ChangeFeedError on failure.
    """

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        """Iterate over incoming payloads."""

    @abstractmethod
    async def close(self) -> None:
        """Release the subscription. Safe to call more than once."""


class ChangeFeed(ABC):
    """Publish/subscribe interface for bookmark change events."""

    @abstractmethod
    async def publish(self, owner_id: str, payload: dict[str, Any]) -> bool:
        """Publish a payload to an owner's channel. Returns False if it was not sent."""

    @abstractmethod
    async def open(self, owner_id: str) -> ChangeChannel:
        """
        Open a confirmed subscription to an owner's channel.

        Raises:
            ChangeFeedError: If the subscription cannot be established.
        """

    async def close(self) -> None:  # noqa: B027
        """Shut the feed down. Open channels end."""


class _LocalChannel(ChangeChannel):
    """Queue-backed channel for the in-process feed."""

    _END = object()

    def __init__(self, feed: "LocalChangeFeed", owner_id: str) -> None:
        self._feed = feed
        self._owner_id = owner_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def owner_id(self) -> str:
        """Owner this channel is scoped to."""
        return self._owner_id

    def deliver(self, payload: dict[str, Any]) -> None:
        """Queue a payload for this subscriber."""
        if not self._closed:
            # Each subscriber gets its own copy, as it would off the wire
            self._queue.put_nowait(copy.deepcopy(payload))

    def end(self) -> None:
        """End iteration from the feed side."""
        self._queue.put_nowait(self._END)

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is self._END:
                return
            yield item

    async def close(self) -> None:
        """Detach from the feed and end iteration."""
        if self._closed:
            return
        self._closed = True
        self._feed._detach(self)
        self._queue.put_nowait(self._END)


class LocalChangeFeed(ChangeFeed):
    """In-process change feed backed by one asyncio queue per subscriber."""

    def __init__(self) -> None:
        self._channels: dict[str, set[_LocalChannel]] = defaultdict(set)
        self._closed = False

    def subscriber_count(self, owner_id: str) -> int:
        """Number of open channels for an owner."""
        return len(self._channels.get(owner_id, ()))

    async def publish(self, owner_id: str, payload: dict[str, Any]) -> bool:
        """Deliver a payload to every open channel of the owner."""
        if self._closed:
            return False
        for channel in list(self._channels.get(owner_id, ())):
            channel.deliver(payload)
        return True

    async def open(self, owner_id: str) -> ChangeChannel:
        """Open a channel; confirmed immediately."""
        if self._closed:
            raise ChangeFeedError("Change feed is shut down")
        channel = _LocalChannel(self, owner_id)
        self._channels[owner_id].add(channel)
        return channel

    def _detach(self, channel: _LocalChannel) -> None:
        """Forget a closed channel."""
        channels = self._channels.get(channel.owner_id)
        if channels is None:
            return
        channels.discard(channel)
        if not channels:
            del self._channels[channel.owner_id]

    async def close(self) -> None:
        """End every open channel and refuse new ones."""
        self._closed = True
        for channels in list(self._channels.values()):
            for channel in list(channels):
                channel.end()
        self._channels.clear()


class _RedisChannel(ChangeChannel):
    """Pub/sub-backed channel."""

    def __init__(self, pubsub: PubSub, name: str) -> None:
        self._pubsub = pubsub
        self._name = name
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except json.JSONDecodeError:
                    logger.warning("change_feed_bad_message channel=%s", self._name)
                    continue
        except RedisError as e:
            if self._closed:
                return
            raise ChangeFeedError(f"Redis channel {self._name} failed: {e}") from e

    async def close(self) -> None:
        """Unsubscribe and release the pub/sub connection."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self._name)
        except RedisError as e:
            logger.warning("Redis UNSUBSCRIBE failed: %s", e)
        finally:
            await self._pubsub.aclose()


class RedisChangeFeed(ChangeFeed):
    """Change feed over Redis pub/sub."""

    def __init__(self, redis_client: RedisClient) -> None:
        self._redis = redis_client

    async def publish(self, owner_id: str, payload: dict[str, Any]) -> bool:
        """Publish a JSON payload on the owner's channel."""
        return await self._redis.publish(channel_name(owner_id), json.dumps(payload))

    async def open(self, owner_id: str) -> ChangeChannel:
        """Subscribe to the owner's channel; returns once Redis confirms."""
        pubsub = self._redis.pubsub()
        if pubsub is None:
            raise ChangeFeedError("Redis is not connected")
        name = channel_name(owner_id)
        try:
            await pubsub.subscribe(name)
        except RedisError as e:
            await pubsub.aclose()
            raise ChangeFeedError(f"Could not subscribe to {name}: {e}") from e
        return _RedisChannel(pubsub, name)
