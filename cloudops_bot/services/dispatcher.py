"""Turns a validated app mention into a running conversation."""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ..config import Config
from ..exceptions import (
    ConversationExistsError,
    ConversationNotFoundError,
    DispatchError,
    ExecutionStartError,
    MessagingError,
)
from ..orm import IN_FLIGHT_STATUSES, Conversation, ConversationStatus
from ..slack_client import MessagingClient, clean_message_text
from .channel_creator import ChannelCreator
from .conversation_service import ConversationService
from .orchestrator import ExecutionOrchestrator

logger = logging.getLogger(__name__)

ACK_MESSAGE = "🚀 Starting CloudOps assistant... I'll respond in a moment."
PRIVATE_ACK_MESSAGE = "🚀 Starting CloudOps assistant in <#{channel_id}>."
BUSY_MESSAGE = (
    "⏳ A CloudOps conversation is already running in this channel. "
    "Reply there, or say `done` to end it first."
)
START_FAILED_MESSAGE = "❌ Failed to start assistant. Please try again."


class Dispatcher:
    """Creates the conversation record and asks the orchestrator for a worker."""

    def __init__(
        self,
        config: Config,
        conversation_service: ConversationService,
        messaging: MessagingClient,
        orchestrator: ExecutionOrchestrator,
        channel_creator: Optional[ChannelCreator] = None,
    ):
        self.config = config
        self.conversation_service = conversation_service
        self.messaging = messaging
        self.orchestrator = orchestrator
        self.channel_creator = channel_creator or ChannelCreator(messaging)

    async def dispatch(self, channel_id: str, user_id: str, command: str) -> Conversation:
        """Start a conversation for a mention.

        Args:
            channel_id: Channel the mention came from.
            user_id: User who mentioned the bot.
            command: Raw mention text.

        Returns:
            The new conversation, or the in-flight one already running in
            the channel.

        Raises:
            DispatchError: If the conversation could not be stored or its
                worker could not be started.
        """
        logger.info(
            "Handling app mention from user %s in channel %s: %s", user_id, channel_id, command
        )

        # Best-effort deduplication; near-simultaneous mentions can still race
        in_flight = await self._find_in_flight(channel_id)
        if in_flight is not None:
            logger.info(
                "Conversation %s already %s in channel %s, not starting another",
                in_flight.conversation_id,
                in_flight.status,
                channel_id,
            )
            await self._post_best_effort(channel_id, BUSY_MESSAGE)
            return in_flight

        conversation_channel = channel_id
        if self.config.slack.private_channels:
            try:
                conversation_channel = await self.channel_creator.create_conversation_channel(
                    user_id
                )
            except MessagingError as e:
                await self._post_best_effort(channel_id, START_FAILED_MESSAGE)
                raise DispatchError(f"Failed to create conversation channel: {e}") from e

        conversation = Conversation.new(
            channel_id=conversation_channel,
            user_id=user_id,
            initial_command=clean_message_text(command) or command,
            retention=self.config.conversation.retention,
        )

        try:
            await self.conversation_service.create_conversation(conversation)
        except (SQLAlchemyError, ConversationExistsError) as e:
            logger.error("Failed to save conversation: %s", e)
            await self._post_best_effort(conversation_channel, START_FAILED_MESSAGE)
            raise DispatchError(f"Failed to save conversation: {e}") from e

        if conversation_channel != channel_id:
            await self._post_best_effort(
                channel_id, PRIVATE_ACK_MESSAGE.format(channel_id=conversation_channel)
            )
        await self._post_best_effort(conversation_channel, ACK_MESSAGE)

        payload = {
            "conversationId": conversation.conversation_id,
            "channelId": conversation.channel_id,
            "userId": conversation.user_id,
        }
        try:
            execution_ref = await self.orchestrator.start_run(
                conversation.conversation_id, payload
            )
        except ExecutionStartError as e:
            logger.error(
                "Failed to start worker for conversation %s: %s", conversation.conversation_id, e
            )
            await self._post_best_effort(conversation_channel, START_FAILED_MESSAGE)
            try:
                await self.conversation_service.update_status(
                    conversation.conversation_id,
                    ConversationStatus.FAILED,
                    error=f"Failed to start worker: {e}",
                )
            except SQLAlchemyError as store_error:
                logger.error(
                    "Failed to mark conversation %s as failed: %s",
                    conversation.conversation_id,
                    store_error,
                )
            raise DispatchError(
                f"Failed to start worker: {e}", conversation_id=conversation.conversation_id
            ) from e

        logger.info(
            "Started execution %s for conversation %s", execution_ref, conversation.conversation_id
        )
        conversation.execution_ref = execution_ref
        try:
            await self.conversation_service.update_refs(
                conversation.conversation_id, execution_ref=execution_ref
            )
        except (SQLAlchemyError, ConversationNotFoundError) as e:
            logger.warning(
                "Failed to record execution %s on conversation %s: %s",
                execution_ref,
                conversation.conversation_id,
                e,
            )

        return conversation

    async def _find_in_flight(self, channel_id: str) -> Optional[Conversation]:
        try:
            latest = await self.conversation_service.find_latest_by_channel(channel_id)
        except ConversationNotFoundError:
            return None
        except SQLAlchemyError as e:
            raise DispatchError(f"Failed to look up conversations for {channel_id}: {e}") from e
        if latest.status_enum in IN_FLIGHT_STATUSES:
            return latest
        return None

    async def _post_best_effort(self, channel_id: str, text: str) -> None:
        try:
            await self.messaging.post_message(channel_id, text)
        except MessagingError as e:
            logger.warning("Failed to post to %s: %s", channel_id, e)
