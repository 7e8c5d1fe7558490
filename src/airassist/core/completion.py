"""
core/completion.py — Single-resolution completion handle

Returned by long-running operations (clip playback) whose outcome is
reported exactly once. Later resolve() calls are ignored and return False,
so racing finishers (natural end vs. stop vs. device failure) cannot
report twice.
"""

from __future__ import annotations

import asyncio
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class Completion(Generic[T]):

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._value: Optional[T] = None

    def resolve(self, value: T) -> bool:
        """Settle the completion. Returns False if it was already settled."""
        if self._event.is_set():
            return False
        self._value = value
        self._event.set()
        return True

    def done(self) -> bool:
        return self._event.is_set()

    def result(self) -> T:
        if not self._event.is_set():
            raise asyncio.InvalidStateError("completion is not resolved yet")
        return self._value  # type: ignore[return-value]

    async def wait(self) -> T:
        await self._event.wait()
        return self._value  # type: ignore[return-value]

    def __await__(self):
        return self.wait().__await__()

    @classmethod
    def resolved(cls, value: T) -> "Completion[T]":
        c: Completion[T] = cls()
        c.resolve(value)
        return c
