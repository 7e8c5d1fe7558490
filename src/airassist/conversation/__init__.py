"""
conversation/ — message log and the turn-taking coordinator.
"""

from airassist.conversation.coordinator import ConversationCoordinator
from airassist.conversation.log import ConversationLog
from airassist.conversation.models import (
    ConversationEvent,
    ConversationEventKind,
    ConversationState,
    DeliveryState,
    Message,
    Sender,
)

__all__ = [
    "ConversationCoordinator",
    "ConversationLog",
    "ConversationEvent",
    "ConversationEventKind",
    "ConversationState",
    "DeliveryState",
    "Message",
    "Sender",
]
