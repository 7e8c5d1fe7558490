"""
network/offline_queue.py — Offline outbound buffer

Messages produced while the session is not OPEN wait here and are sent, in
arrival order, once it is. Each drain call removes and sends at most the
head entry. An entry that fails to send after being dequeued is reported
through on_failed and is not re-enqueued.

The queue is persisted under `pendingMessages` after every mutation so a
restart does not lose unsent speech.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from airassist.exceptions import DeliveryError, StorageError
from airassist.network.session import NetworkSessionManager
from airassist.observability.logger import get_logger
from airassist.storage.kv_store import KeyValueStore

log = get_logger(__name__)

PENDING_MESSAGES_KEY = "pendingMessages"


# ─────────────────────────────────────────────────────────────────────────────
# Pending entries
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class AudioPayload:
    clip_b64: str
    transcription: str = ""


@dataclass
class TextPayload:
    text: str


Payload = Union[AudioPayload, TextPayload]


@dataclass
class PendingOutbound:
    payload: Payload
    original_message_id: str
    enqueued_at: float

    def to_record(self) -> dict[str, Any]:
        if isinstance(self.payload, AudioPayload):
            payload = {
                "kind": "audio",
                "audio": self.payload.clip_b64,
                "transcription": self.payload.transcription,
            }
        else:
            payload = {"kind": "text", "text": self.payload.text}
        return {
            "payload": payload,
            "messageId": self.original_message_id,
            "enqueuedAt": self.enqueued_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "PendingOutbound":
        p = record["payload"]
        if p.get("kind") == "audio":
            payload: Payload = AudioPayload(p["audio"], p.get("transcription", ""))
        else:
            payload = TextPayload(p["text"])
        return cls(
            payload=payload,
            original_message_id=str(record["messageId"]),
            enqueued_at=float(record.get("enqueuedAt", time.time())),
        )


class DrainResult(str, Enum):
    NOTHING = "nothing"   # queue empty
    OFFLINE = "offline"   # session not OPEN, nothing dequeued
    SENT    = "sent"
    FAILED  = "failed"    # dequeued, send failed, reported via on_failed

    def __bool__(self) -> bool:
        return self is DrainResult.SENT


FailedHook = Callable[[PendingOutbound, DeliveryError], Union[None, Awaitable[None]]]
WireEncoder = Callable[[PendingOutbound], dict]


# ─────────────────────────────────────────────────────────────────────────────
# Queue
# ─────────────────────────────────────────────────────────────────────────────

class OfflineMessageQueue:

    def __init__(
        self,
        session: NetworkSessionManager,
        encode: WireEncoder,
        store: Optional[KeyValueStore] = None,
        on_failed: Optional[FailedHook] = None,
    ) -> None:
        self._session = session
        self._encode = encode
        self._store = store
        self._on_failed = on_failed
        self._items: deque[PendingOutbound] = deque()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def peek(self) -> Optional[PendingOutbound]:
        return self._items[0] if self._items else None

    def snapshot(self) -> list[PendingOutbound]:
        return list(self._items)

    async def load(self) -> int:
        """Restore persisted entries. Returns how many were loaded."""
        if self._store is None:
            return 0
        records = await self._store.get(PENDING_MESSAGES_KEY, [])
        restored = []
        for record in records or []:
            try:
                restored.append(PendingOutbound.from_record(record))
            except (KeyError, TypeError, ValueError) as e:
                log.warning("offline_queue.bad_record", error=str(e))
        self._items.extend(restored)
        if restored:
            log.info("offline_queue.loaded", count=len(restored))
        return len(restored)

    async def enqueue(self, pending: PendingOutbound) -> None:
        async with self._lock:
            self._items.append(pending)
            await self._persist()
        log.info(
            "offline_queue.enqueued",
            message_id=pending.original_message_id,
            depth=len(self._items),
        )

    async def drain_one_if_possible(self) -> DrainResult:
        """Send the head entry if the session is OPEN. At most one per call."""
        async with self._lock:
            if not self._items:
                return DrainResult.NOTHING
            if not self._session.is_open:
                return DrainResult.OFFLINE
            item = self._items.popleft()
            await self._persist()

        sent = await self._session.send(self._encode(item))
        if sent:
            log.info(
                "offline_queue.sent",
                message_id=item.original_message_id,
                remaining=len(self._items),
            )
            return DrainResult.SENT

        error = DeliveryError("Queued message could not be sent", item.original_message_id)
        log.warning("offline_queue.send_failed", message_id=item.original_message_id)
        if self._on_failed is not None:
            result = self._on_failed(item, error)
            if inspect.isawaitable(result):
                await result
        return DrainResult.FAILED

    async def clear(self) -> None:
        async with self._lock:
            self._items.clear()
            await self._persist()

    async def _persist(self) -> None:
        if self._store is None:
            return
        try:
            await self._store.set(PENDING_MESSAGES_KEY, [i.to_record() for i in self._items])
        except StorageError as e:
            log.warning("offline_queue.persist_failed", error=str(e))
