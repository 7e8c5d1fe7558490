"""
network/ — assistant session: wire protocol, transport, keepalive/reconnect
and the offline outbound queue.
"""

from airassist.network.offline_queue import (
    AudioPayload,
    DrainResult,
    OfflineMessageQueue,
    PendingOutbound,
    TextPayload,
)
from airassist.network.protocol import (
    AiResponse,
    ErrorNotice,
    Identity,
    MessageType,
    Pong,
    parse_inbound,
)
from airassist.network.session import (
    NetworkSessionManager,
    SessionEvent,
    SessionEventKind,
    SessionState,
)
from airassist.network.transport import WebsocketTransport

__all__ = [
    "AudioPayload",
    "DrainResult",
    "OfflineMessageQueue",
    "PendingOutbound",
    "TextPayload",
    "AiResponse",
    "ErrorNotice",
    "Identity",
    "MessageType",
    "Pong",
    "parse_inbound",
    "NetworkSessionManager",
    "SessionEvent",
    "SessionEventKind",
    "SessionState",
    "WebsocketTransport",
]
