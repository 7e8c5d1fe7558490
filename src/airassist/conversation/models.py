"""
conversation/models.py — Conversation data types
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Sender(str, Enum):
    USER      = "user"
    ASSISTANT = "assistant"
    SYSTEM    = "system"


class DeliveryState(str, Enum):
    SENT      = "sent"
    QUEUED    = "queued"
    DELIVERED = "delivered"
    FAILED    = "failed"


class ConversationState(str, Enum):
    IDLE              = "idle"
    RECORDING         = "recording"
    AWAITING_RESPONSE = "awaiting_response"
    SPEAKING          = "speaking"


_id_counter = itertools.count(1)


def new_message_id() -> str:
    """Millisecond timestamp plus a per-process counter: unique and roughly ordered."""
    return f"{int(time.time() * 1000)}-{next(_id_counter)}"


@dataclass
class Message:
    text: str
    sender: Sender
    id: str = field(default_factory=new_message_id)
    created_at: float = field(default_factory=time.time)
    delivery_state: DeliveryState = DeliveryState.DELIVERED

    @property
    def is_user(self) -> bool:
        return self.sender is Sender.USER

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "sender": self.sender.value,
            "createdAt": self.created_at,
            "deliveryState": self.delivery_state.value,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Message":
        return cls(
            id=str(record["id"]),
            text=str(record.get("text", "")),
            sender=Sender(record["sender"]),
            created_at=float(record.get("createdAt", time.time())),
            delivery_state=DeliveryState(record.get("deliveryState", DeliveryState.DELIVERED.value)),
        )


class ConversationEventKind(str, Enum):
    STATE_CHANGED   = "state_changed"
    MESSAGE_ADDED   = "message_added"
    MESSAGE_UPDATED = "message_updated"
    CLEARED         = "cleared"


@dataclass
class ConversationEvent:
    kind: ConversationEventKind
    state: Optional[ConversationState] = None
    message: Optional[Message] = None
