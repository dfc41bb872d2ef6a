"""Conversation model: one record per troubleshooting session."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UTCDateTime, utcnow


class ConversationStatus(str, Enum):
    """Lifecycle states of a conversation."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position in the lifecycle; a conversation only ever moves up."""
        if self.is_terminal:
            return 2
        return 1 if self == ConversationStatus.ACTIVE else 0


TERMINAL_STATUSES = frozenset(
    {ConversationStatus.COMPLETED, ConversationStatus.FAILED, ConversationStatus.TIMEOUT}
)
IN_FLIGHT_STATUSES = frozenset({ConversationStatus.PENDING, ConversationStatus.ACTIVE})


def generate_conversation_id(now: Optional[datetime] = None) -> str:
    """Generate a unique id that sorts lexicographically by creation time.

    Format: conv-<12 hex digits of epoch milliseconds><16 random hex digits>
    """
    now = now or utcnow()
    millis = int(now.timestamp() * 1000)
    return f"conv-{millis:012x}{uuid4().hex[:16]}"


class Conversation(Base):
    """A user's troubleshooting session with the bot."""

    __tablename__ = "conversations"
    __table_args__ = (
        Index("idx_conversations_channel_created", "channel_id", "created_at"),
        Index("idx_conversations_status", "status"),
        Index("idx_conversations_expiry", "expiry"),
    )

    conversation_id: Mapped[str] = mapped_column(String, primary_key=True)
    channel_id: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=ConversationStatus.PENDING.value
    )
    initial_command: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    last_heartbeat: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    execution_ref: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    worker_ref: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expiry: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    @classmethod
    def new(
        cls,
        channel_id: str,
        user_id: str,
        initial_command: str,
        retention: timedelta = timedelta(days=7),
    ) -> "Conversation":
        """Build a pending conversation with a fresh id and expiry."""
        now = utcnow()
        return cls(
            conversation_id=generate_conversation_id(now),
            channel_id=channel_id,
            user_id=user_id,
            status=ConversationStatus.PENDING.value,
            initial_command=initial_command,
            created_at=now,
            expiry=now + retention,
        )

    @property
    def status_enum(self) -> ConversationStatus:
        return ConversationStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum.is_terminal

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.conversation_id}, channel={self.channel_id}, "
            f"status={self.status})>"
        )
