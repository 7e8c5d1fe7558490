"""
conversation/log.py — Ordered conversation log

Appends preserve call order. A message is only ever mutated in place to
fill in a server-confirmed transcript or to update its delivery state.
The last `limit` messages are persisted under `conversationHistory`.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Optional

from airassist.conversation.models import DeliveryState, Message
from airassist.exceptions import StorageError
from airassist.observability.logger import get_logger
from airassist.storage.kv_store import KeyValueStore

log = get_logger(__name__)

CONVERSATION_HISTORY_KEY = "conversationHistory"


class ConversationLog:

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        limit: int = 100,
        persist: bool = True,
    ) -> None:
        self._store = store
        self.limit = limit
        self.persist = persist
        self._messages: list[Message] = []

    # ── Reads ─────────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def messages(self) -> list[Message]:
        return list(self._messages)

    def find(self, message_id: str) -> Optional[Message]:
        for message in reversed(self._messages):
            if message.id == message_id:
                return message
        return None

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    # ── Mutations ─────────────────────────────────────────────────────────────

    def append(self, message: Message) -> Message:
        self._messages.append(message)
        return message

    def update_text(self, message_id: str, text: str) -> Optional[Message]:
        message = self.find(message_id)
        if message is not None:
            message.text = text
        return message

    def set_delivery(self, message_id: str, state: DeliveryState) -> Optional[Message]:
        message = self.find(message_id)
        if message is not None:
            message.delivery_state = state
        return message

    def clear(self) -> None:
        self._messages = []

    # ── Persistence ───────────────────────────────────────────────────────────

    async def load(self) -> int:
        if self._store is None or not self.persist:
            return 0
        records = await self._store.get(CONVERSATION_HISTORY_KEY, [])
        restored: list[Message] = []
        for record in (records or [])[-self.limit:]:
            try:
                restored.append(Message.from_record(record))
            except (KeyError, TypeError, ValueError) as e:
                log.warning("conversation_log.bad_record", error=str(e))
        self._messages = restored + self._messages
        return len(restored)

    async def save(self) -> None:
        if self._store is None or not self.persist:
            return
        records = [m.to_record() for m in self._messages[-self.limit:]]
        try:
            await self._store.set(CONVERSATION_HISTORY_KEY, records)
        except StorageError as e:
            log.warning("conversation_log.save_failed", error=str(e))
