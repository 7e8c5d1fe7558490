"""
network/protocol.py — Assistant wire protocol

JSON messages exchanged with the assistant server. Every message carries
a `type` field.

Client → Server:
    audioMessage  {audio, transcription, userId, userName, voice, timestamp, messageId}
    textMessage   {text, userId, userName, voice, timestamp, messageId}
    ping          {}

Server → Client:
    aiResponse    {text, audioBase64?, transcription?, messageId}
    error         {message}
    pong          {}

Timestamps are epoch milliseconds. Malformed inbound payloads raise
ProtocolError from parse_inbound().
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from airassist.exceptions import ProtocolError


# ─────────────────────────────────────────────────────────────────────────────
# Message types
# ─────────────────────────────────────────────────────────────────────────────

class MessageType(str, Enum):

    # Client → Server
    AUDIO       = "audioMessage"
    TEXT        = "textMessage"
    PING        = "ping"

    # Server → Client
    AI_RESPONSE = "aiResponse"
    ERROR       = "error"
    PONG        = "pong"


@dataclass
class Identity:
    """Who is speaking and which voice they want back."""
    user_id: str
    user_name: str
    voice: str = "default"


# ─────────────────────────────────────────────────────────────────────────────
# Outbound builders
# ─────────────────────────────────────────────────────────────────────────────

def _now_ms() -> int:
    return int(time.time() * 1000)


def make_audio_message(
    audio_b64: str,
    transcription: str,
    identity: Identity,
    message_id: str,
    timestamp: Optional[int] = None,
) -> dict[str, Any]:
    return {
        "type": MessageType.AUDIO.value,
        "audio": audio_b64,
        "transcription": transcription,
        "userId": identity.user_id,
        "userName": identity.user_name,
        "voice": identity.voice,
        "timestamp": timestamp if timestamp is not None else _now_ms(),
        "messageId": message_id,
    }


def make_text_message(
    text: str,
    identity: Identity,
    message_id: str,
    timestamp: Optional[int] = None,
) -> dict[str, Any]:
    return {
        "type": MessageType.TEXT.value,
        "text": text,
        "userId": identity.user_id,
        "userName": identity.user_name,
        "voice": identity.voice,
        "timestamp": timestamp if timestamp is not None else _now_ms(),
        "messageId": message_id,
    }


def make_ping() -> dict[str, Any]:
    return {"type": MessageType.PING.value}


def encode(message: Union[dict, str]) -> str:
    return message if isinstance(message, str) else json.dumps(message)


# ─────────────────────────────────────────────────────────────────────────────
# Inbound messages
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class AiResponse:
    text: str
    message_id: Optional[str] = None
    audio_base64: Optional[str] = None
    transcription: Optional[str] = None

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_base64)


@dataclass
class ErrorNotice:
    message: str


@dataclass
class Pong:
    pass


InboundMessage = Union[AiResponse, ErrorNotice, Pong]


def _optional_str(d: dict, key: str, raw: Any) -> Optional[str]:
    value = d.get(key)
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool) and key == "messageId":
        # Some servers echo numeric ids
        return str(value)
    if not isinstance(value, str):
        raise ProtocolError(f"Field '{key}' must be a string", raw=raw)
    return value


def parse_inbound(raw: Union[str, bytes]) -> InboundMessage:
    """Parse one inbound frame. Raises ProtocolError if it is not a known message."""
    try:
        d = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Inbound frame is not JSON: {e}", raw=raw) from e
    if not isinstance(d, dict):
        raise ProtocolError("Inbound frame is not a JSON object", raw=raw)

    msg_type = d.get("type")
    if msg_type == MessageType.AI_RESPONSE.value:
        text = d.get("text")
        if not isinstance(text, str):
            raise ProtocolError("aiResponse is missing 'text'", raw=raw)
        return AiResponse(
            text=text,
            message_id=_optional_str(d, "messageId", raw),
            audio_base64=_optional_str(d, "audioBase64", raw) or None,
            transcription=_optional_str(d, "transcription", raw) or None,
        )
    if msg_type == MessageType.ERROR.value:
        message = d.get("message")
        if not isinstance(message, str):
            message = "Unknown server error"
        return ErrorNotice(message=message)
    if msg_type == MessageType.PONG.value:
        return Pong()
    raise ProtocolError(f"Unknown inbound message type: {msg_type!r}", raw=raw)
