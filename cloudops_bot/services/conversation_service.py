"""Service for conversation records and their ordered message history."""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..exceptions import ConversationExistsError, ConversationNotFoundError
from ..orm import (
    Conversation,
    ConversationMessage,
    ConversationStatus,
    MessageRole,
    utcnow,
)
from .database import DatabaseService

logger = logging.getLogger(__name__)


class ConversationService:
    """Durable storage for conversations and their message history.

    Every operation is safe to call concurrently for different
    conversations. Calls for the same conversation from two writers are
    not coordinated; only one worker ever owns a conversation.
    """

    def __init__(self, db_service: DatabaseService):
        self.db_service = db_service

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Store a new conversation in the pending state.

        Raises:
            ConversationExistsError: If the identifier is already taken.
        """
        conversation.status = ConversationStatus.PENDING.value
        conversation.completed_at = None
        try:
            async with self.db_service.session() as session:
                session.add(conversation)
                await session.commit()
        except IntegrityError as e:
            raise ConversationExistsError(conversation.conversation_id) from e

        logger.info(
            "Created conversation %s for channel %s (user %s)",
            conversation.conversation_id,
            conversation.channel_id,
            conversation.user_id,
        )
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        """Fetch a conversation by id.

        Raises:
            ConversationNotFoundError: If no such conversation exists.
        """
        async with self.db_service.session() as session:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            return conversation

    async def update_status(
        self,
        conversation_id: str,
        status: ConversationStatus,
        error: Optional[str] = None,
    ) -> bool:
        """Move a conversation to a new status.

        Statuses only move forward, pending to active to a terminal one.
        A move back or sideways, such as active to pending or a second
        activation, is logged and ignored. Terminal statuses are absorbing:
        once a conversation is completed, failed or timed out, further calls
        are ignored too, so completed_at is written exactly once.

        Args:
            conversation_id: Conversation to update.
            status: New status.
            error: Failure detail, recorded only for FAILED.

        Returns:
            True if the status changed, False if the move was refused.

        Raises:
            ConversationNotFoundError: If no such conversation exists.
        """
        status = ConversationStatus(status)
        async with self.db_service.session() as session:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)

            current = conversation.status_enum
            if current.is_terminal:
                logger.info(
                    "Ignoring %s for conversation %s: already %s",
                    status.value,
                    conversation_id,
                    conversation.status,
                )
                return False
            if status.rank <= current.rank:
                logger.warning(
                    "Refusing to move conversation %s from %s to %s",
                    conversation_id,
                    current.value,
                    status.value,
                )
                return False

            previous = conversation.status
            conversation.status = status.value
            if status.is_terminal:
                conversation.completed_at = utcnow()
            if status == ConversationStatus.FAILED:
                conversation.error = error or "Unknown error"
            await session.commit()

        logger.info(
            "Conversation %s: %s -> %s", conversation_id, previous, status.value
        )
        return True

    async def update_heartbeat(
        self, conversation_id: str, timestamp: Optional[datetime] = None
    ) -> bool:
        """Record worker liveness.

        The stored heartbeat never moves backwards. Store errors are logged
        and reported as False rather than raised; losing a heartbeat only
        affects liveness detection.
        """
        timestamp = timestamp or utcnow()
        try:
            async with self.db_service.session() as session:
                result = await session.execute(
                    update(Conversation)
                    .where(
                        Conversation.conversation_id == conversation_id,
                        or_(
                            Conversation.last_heartbeat.is_(None),
                            Conversation.last_heartbeat < timestamp,
                        ),
                    )
                    .values(last_heartbeat=timestamp)
                )
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.warning("Heartbeat update failed for %s: %s", conversation_id, e)
            return False

    async def update_refs(
        self,
        conversation_id: str,
        execution_ref: Optional[str] = None,
        worker_ref: Optional[str] = None,
    ) -> None:
        """Record the supervising execution and/or running worker references."""
        values = {}
        if execution_ref is not None:
            values["execution_ref"] = execution_ref
        if worker_ref is not None:
            values["worker_ref"] = worker_ref
        if not values:
            return

        async with self.db_service.session() as session:
            result = await session.execute(
                update(Conversation)
                .where(Conversation.conversation_id == conversation_id)
                .values(**values)
            )
            await session.commit()
            if result.rowcount == 0:
                raise ConversationNotFoundError(conversation_id)

    async def find_latest_by_channel(self, channel_id: str) -> Conversation:
        """Most recently created conversation for a channel.

        Raises:
            ConversationNotFoundError: If the channel has no conversations.
        """
        async with self.db_service.session() as session:
            result = await session.execute(
                select(Conversation)
                .where(Conversation.channel_id == channel_id)
                .order_by(Conversation.created_at.desc(), Conversation.conversation_id.desc())
                .limit(1)
            )
            conversation = result.scalar_one_or_none()
            if conversation is None:
                raise ConversationNotFoundError(f"channel:{channel_id}")
            return conversation

    async def find_by_status(self, status: ConversationStatus) -> List[Conversation]:
        """All conversations currently in a status, oldest first."""
        status = ConversationStatus(status)
        async with self.db_service.session() as session:
            result = await session.execute(
                select(Conversation)
                .where(Conversation.status == status.value)
                .order_by(Conversation.created_at)
            )
            return list(result.scalars().all())

    async def append_message(
        self, conversation_id: str, role: MessageRole, content: str
    ) -> ConversationMessage:
        """Append a message at the next sequence index.

        The index is the current message count, so a single writer per
        conversation yields 0, 1, 2, ... without gaps. Messages inherit
        the parent conversation's expiry.

        Raises:
            ConversationNotFoundError: If the conversation does not exist.
        """
        role = MessageRole(role)
        async with self.db_service.session() as session:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)

            count_result = await session.execute(
                select(func.count())
                .select_from(ConversationMessage)
                .where(ConversationMessage.conversation_id == conversation_id)
            )
            next_index = count_result.scalar_one()

            message = ConversationMessage(
                conversation_id=conversation_id,
                sequence_index=next_index,
                role=role.value,
                content=content,
                created_at=utcnow(),
                expiry=conversation.expiry,
            )
            session.add(message)
            await session.commit()

        logger.debug(
            "Saved message %d (%s) for conversation %s", next_index, role.value, conversation_id
        )
        return message

    async def list_messages(self, conversation_id: str) -> List[ConversationMessage]:
        """Full history of a conversation in sequence order."""
        async with self.db_service.session() as session:
            result = await session.execute(
                select(ConversationMessage)
                .where(ConversationMessage.conversation_id == conversation_id)
                .order_by(ConversationMessage.sequence_index)
            )
            return list(result.scalars().all())

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete conversations and messages past their expiry.

        Returns:
            Number of conversations removed.
        """
        now = now or utcnow()
        async with self.db_service.session() as session:
            expired_ids = select(Conversation.conversation_id).where(Conversation.expiry < now)
            await session.execute(
                delete(ConversationMessage).where(
                    or_(
                        ConversationMessage.expiry < now,
                        ConversationMessage.conversation_id.in_(expired_ids),
                    )
                )
            )
            result = await session.execute(
                delete(Conversation).where(Conversation.expiry < now)
            )
            await session.commit()
            purged = result.rowcount or 0

        if purged:
            logger.info("Purged %d expired conversation(s)", purged)
        return purged
