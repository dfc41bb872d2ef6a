"""ORM models for database persistence."""

from .base import Base, UTCDateTime, utcnow
from .conversation import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    Conversation,
    ConversationStatus,
    generate_conversation_id,
)
from .message import ConversationMessage, MessageRole

__all__ = [
    "Base",
    "UTCDateTime",
    "utcnow",
    "Conversation",
    "ConversationMessage",
    "ConversationStatus",
    "MessageRole",
    "IN_FLIGHT_STATUSES",
    "TERMINAL_STATUSES",
    "generate_conversation_id",
]
