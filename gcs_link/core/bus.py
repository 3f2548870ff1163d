"""Fan-out streams and latest-value holders used by every listener."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import (
    AsyncIterator,
    Callable,
    Generic,
    List,
    Optional,
    Set,
    TypeVar,
)

from .models import Frame

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_QUEUE_SIZE = 256


class LatestValue(Generic[T]):
    """Conflated observable holding the most recent value.

    Subscribers receive the current value immediately and then each distinct
    replacement. A slow subscriber only ever sees the newest value it missed.
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._watchers: Set[asyncio.Queue[T]] = set()

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        for queue in list(self._watchers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(value)

    async def subscribe(self) -> AsyncIterator[T]:
        queue: asyncio.Queue[T] = asyncio.Queue(maxsize=1)
        self._watchers.add(queue)
        try:
            yield self._value
            while True:
                yield await queue.get()
        finally:
            self._watchers.discard(queue)

    async def wait_for(
        self, predicate: Callable[[T], bool], timeout: Optional[float] = None
    ) -> bool:
        """Return True once ``predicate`` holds, False if ``timeout`` elapses."""

        async def _watch() -> bool:
            async with contextlib.aclosing(self.subscribe()) as values:
                async for value in values:
                    if predicate(value):
                        return True
            return False

        try:
            return await asyncio.wait_for(_watch(), timeout=timeout)
        except asyncio.TimeoutError:
            return False


class Subscription(Generic[T]):
    """A bounded per-subscriber queue attached to a :class:`Broadcast`."""

    def __init__(
        self,
        broadcast: "Broadcast[T]",
        predicate: Optional[Callable[[T], bool]],
        maxsize: int,
    ) -> None:
        self._broadcast = broadcast
        self._predicate = predicate
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, item: T) -> None:
        if self._predicate is not None and not self._predicate(item):
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    async def receive(
        self,
        predicate: Optional[Callable[[T], bool]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[T]:
        """Wait for the next queued item matching ``predicate``.

        Non-matching items are discarded. Returns None on timeout.
        """

        async def _next() -> T:
            while True:
                item = await self._queue.get()
                if predicate is None or predicate(item):
                    return item

        try:
            return await asyncio.wait_for(_next(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        self._broadcast._detach(self)

    def __enter__(self) -> "Subscription[T]":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        return await self._queue.get()


class Broadcast(Generic[T]):
    """Publish/subscribe fan-out where no item is consumed exclusively.

    ``publish`` never blocks: a subscriber whose queue is full loses its
    oldest item, other subscribers are unaffected.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = max(1, queue_size)
        self._subscribers: List[Subscription[T]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self, predicate: Optional[Callable[[T], bool]] = None
    ) -> Subscription[T]:
        subscription = Subscription(self, predicate, self._queue_size)
        self._subscribers.append(subscription)
        return subscription

    def publish(self, item: T) -> None:
        for subscription in list(self._subscribers):
            try:
                subscription.offer(item)
            except Exception:
                LOGGER.exception("Subscriber filter failed; item skipped")

    def _detach(self, subscription: Subscription[T]) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(subscription)


class FrameBus(Broadcast[Frame]):
    """Shared stream of inbound frames fed by the connection supervisor."""

    def subscribe_types(
        self,
        *message_types: str,
        sender: Optional[Callable[[Frame], bool]] = None,
    ) -> Subscription[Frame]:
        wanted = frozenset(message_types)

        def _matches(frame: Frame) -> bool:
            if frame.type not in wanted:
                return False
            return sender is None or sender(frame)

        return self.subscribe(_matches)
