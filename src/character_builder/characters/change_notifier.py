"""
Live feeds of character metadata and of the latest version.

Observers subscribe per character and per feed. All subscribers of the same
feed share one store subscription, which is released when the last of them
closes. Each subscriber owns a bounded queue; a slow consumer loses the oldest
pending values rather than stalling the writer, and always ends up holding the
most recent one.
"""

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

from ..core.context import CharacterBuilderContext
from ..core.logging import get_logger
from ..core.protocols import Unsubscribe
from .types import Character, CharacterMetadata, CharacterVersion, character_path, versions_path

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

T = TypeVar("T")

METADATA_FEED = "metadata"
VERSIONS_FEED = "versions"

_CLOSED = object()
_NOTHING = object()


class Subscription(Generic[T]):
    """One observer's view of a feed.

    Iterate with ``async for``, or pull single values with :meth:`next`. The
    handle is also an async context manager that closes itself on exit.
    """

    def __init__(
        self,
        subscription_id: str,
        feed: str,
        character_id: str,
        maxsize: int,
        on_close: Callable[["Subscription[T]"], None],
    ):
        self.id = subscription_id
        self.feed = feed
        self.character_id = character_id
        self.dropped = 0
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=max(1, maxsize))
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            if item is not _CLOSED:
                self.dropped += 1
        self._queue.put_nowait(item)

    def push(self, value: T) -> None:
        """Queue a value, dropping the oldest one when the queue is full."""
        if not self._closed:
            self._put(value)

    def pending(self) -> int:
        """Values waiting to be consumed."""
        return self._queue.qsize()

    async def next(self, timeout: Optional[float] = None) -> T:
        """Wait for the next value.

        Raises:
            StopAsyncIteration: If the subscription is closed and drained
            asyncio.TimeoutError: If ``timeout`` elapsed first
        """
        return await asyncio.wait_for(self.__anext__(), timeout)

    def close(self) -> None:
        """Stop receiving values; waiting consumers wake up and stop."""
        if self._closed:
            return
        self._closed = True
        self._put(_CLOSED)
        self._on_close(self)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class _Channel:
    """Shared store subscription behind one (character, feed) pair."""

    def __init__(
        self,
        feed: str,
        character_id: str,
        transform: Callable[[Any], Any],
        change_key: Callable[[Any], Hashable],
    ):
        self.feed = feed
        self.character_id = character_id
        self.transform = transform
        self.change_key = change_key
        self.subscribers: Dict[str, Subscription] = {}
        self.unsubscribe: Optional[Unsubscribe] = None
        self.last_value: Any = None
        self.last_key: Any = _NOTHING
        self.priming = False
        self.suppressed = 0


def _to_metadata(raw: Any) -> Optional[CharacterMetadata]:
    return Character.from_record(raw).metadata() if raw else None


def _to_latest_version(raw: Any) -> Optional[CharacterVersion]:
    if not raw:
        return None
    latest = max(raw, key=lambda doc: doc.get("versionNumber", 0))
    return CharacterVersion.from_record(latest)


def _version_key(version: Optional[CharacterVersion]) -> Hashable:
    return version.change_key if version is not None else None


class ChangeNotifier:
    """Fans store changes out to per-character subscribers."""

    def __init__(self, context: CharacterBuilderContext):
        self.store = context.store
        self.config = context.config.notifier
        self._channels: Dict[Tuple[str, str], _Channel] = {}
        self._ids = itertools.count(1)

    def subscribe_metadata(self, character_id: str) -> Subscription[Optional[CharacterMetadata]]:
        """Feed of the character's metadata; None once the character is gone."""
        return self._attach(
            METADATA_FEED,
            character_id,
            character_path(character_id),
            _to_metadata,
            lambda metadata: metadata,
        )

    def subscribe_versions(self, character_id: str) -> Subscription[Optional[CharacterVersion]]:
        """Feed of the character's highest-numbered version, drafts included.

        A version is delivered again when its draft flag flips, so observers
        see a commit even though the version id stays the same.
        """
        return self._attach(
            VERSIONS_FEED,
            character_id,
            versions_path(character_id),
            _to_latest_version,
            _version_key,
        )

    def _attach(
        self,
        feed: str,
        character_id: str,
        path: str,
        transform: Callable[[Any], Any],
        change_key: Callable[[Any], Hashable],
    ) -> Subscription:
        key = (character_id, feed)
        channel = self._channels.get(key)
        subscription: Subscription = Subscription(
            f"{feed}-{next(self._ids)}",
            feed,
            character_id,
            self.config.subscriber_queue_size,
            self._detach,
        )

        if channel is None:
            channel = _Channel(feed, character_id, transform, change_key)
            self._channels[key] = channel
            channel.subscribers[subscription.id] = subscription
            # The store replays the current value synchronously on subscribe
            channel.priming = True
            try:
                channel.unsubscribe = self.store.subscribe(
                    path, lambda raw: self._on_change(channel, raw)
                )
            finally:
                channel.priming = False
            structured_logger.debug(
                "Opened change feed", character_id=character_id, feed=feed
            )
        else:
            channel.subscribers[subscription.id] = subscription
            if self.config.replay_latest_on_subscribe and channel.last_key is not _NOTHING:
                subscription.push(channel.last_value)

        return subscription

    def _detach(self, subscription: Subscription) -> None:
        key = (subscription.character_id, subscription.feed)
        channel = self._channels.get(key)
        if channel is None or channel.subscribers.pop(subscription.id, None) is None:
            return
        if not channel.subscribers:
            del self._channels[key]
            if channel.unsubscribe is not None:
                channel.unsubscribe()
            structured_logger.debug(
                "Closed change feed",
                character_id=subscription.character_id,
                feed=subscription.feed,
                suppressed=channel.suppressed,
            )

    def _on_change(self, channel: _Channel, raw: Any) -> None:
        try:
            value = channel.transform(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(
                f"Malformed {channel.feed} record for character {channel.character_id}: {e}"
            )
            return

        change_key = channel.change_key(value)
        if change_key == channel.last_key:
            channel.suppressed += 1
            return
        channel.last_key = change_key
        channel.last_value = value

        if channel.priming and not self.config.replay_latest_on_subscribe:
            return
        for subscription in list(channel.subscribers.values()):
            subscription.push(value)

    def active_feeds(self) -> List[Tuple[str, str]]:
        """(character_id, feed) pairs with at least one subscriber."""
        return list(self._channels)

    def subscriber_count(self, character_id: str, feed: str) -> int:
        channel = self._channels.get((character_id, feed))
        return len(channel.subscribers) if channel else 0

    def close_all(self) -> None:
        """Close every open subscription."""
        for channel in list(self._channels.values()):
            for subscription in list(channel.subscribers.values()):
                subscription.close()
