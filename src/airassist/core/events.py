"""
core/events.py — Typed broadcast channels

Each subsystem owns an EventChannel and publishes its state transitions and
notifications on it. Consumers subscribe and read from their own unbounded
queue, so a slow subscriber never blocks the publisher or its peers and no
event is dropped.

Usage:
    channel: EventChannel[SessionEvent] = EventChannel("session")
    sub = channel.subscribe()
    channel.publish(SessionEvent(kind=SessionEventKind.OPENED))
    event = await sub.get()
"""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

T = TypeVar("T")


class Subscription(Generic[T]):
    """One subscriber's view of a channel. Async-iterable until closed."""

    def __init__(self, channel: "EventChannel[T]") -> None:
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _deliver(self, event: T) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    async def get(self) -> T:
        return await self._queue.get()

    def get_nowait(self) -> T:
        """Return the next event or raise asyncio.QueueEmpty."""
        return self._queue.get_nowait()

    def drain(self) -> list[T]:
        """Return every event currently buffered, oldest first."""
        events: list[T] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._closed = True
        self._channel.unsubscribe(self)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()


class EventChannel(Generic[T]):
    """Fan-out of published events to every live subscription, in order."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._subscribers: list[Subscription[T]] = []

    def subscribe(self) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription[T]) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def publish(self, event: T) -> None:
        for sub in list(self._subscribers):
            sub._deliver(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
