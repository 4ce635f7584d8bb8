"""Typed, cancellable event streams used by the scanner and service layer.

Each subscriber owns its own bounded queue; a broadcaster fans published
items out to every open stream. Streams end when the broadcaster closes or
when the subscriber closes its handle.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import AsyncIterator, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class EventStream(Generic[T]):
    """Async iterator over items published after the stream was opened."""

    def __init__(self, broadcaster: "EventBroadcaster[T]", maxsize: int) -> None:
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, item: object) -> None:
        if self._queue.full():
            # Slow consumers lose the oldest item rather than blocking producers.
            self._queue.get_nowait()
            logger.debug("Event stream full; dropped oldest item", extra={"event": "stream_drop"})
        self._queue.put_nowait(item)

    def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._offer(_CLOSED)

    def close(self) -> None:
        """Stop receiving items; pending iteration finishes after queued items."""

        self._broadcaster._detach(self)
        self._finish()

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def next(self, timeout: Optional[float] = None) -> T:
        """Return the next item, raising ``StopAsyncIteration`` once closed."""

        if timeout is None:
            return await self.__anext__()
        return await asyncio.wait_for(self.__anext__(), timeout)

    async def __aenter__(self) -> "EventStream[T]":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        self.close()


class EventBroadcaster(Generic[T]):
    """Fan-out of typed items to independent subscriber streams."""

    def __init__(self, *, maxsize: int = 50) -> None:
        self._maxsize = max(2, int(maxsize))
        self._streams: list[EventStream[T]] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> EventStream[T]:
        stream: EventStream[T] = EventStream(self, self._maxsize)
        with self._lock:
            if self._closed:
                stream._finish()
                return stream
            self._streams.append(stream)
        return stream

    def _detach(self, stream: EventStream[T]) -> None:
        with self._lock:
            if stream in self._streams:
                self._streams.remove(stream)

    def publish(self, item: T) -> None:
        with self._lock:
            if self._closed:
                return
            streams = list(self._streams)
        for stream in streams:
            stream._offer(item)

    def close(self) -> None:
        """End every open stream; later subscribers receive an already-ended stream."""

        with self._lock:
            self._closed = True
            streams = list(self._streams)
            self._streams.clear()
        for stream in streams:
            stream._finish()

    def reopen(self) -> None:
        with self._lock:
            self._closed = False

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._streams)


__all__ = ["EventBroadcaster", "EventStream"]
