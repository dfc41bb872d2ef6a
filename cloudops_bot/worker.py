"""Worker lifecycle: the turn loop, heartbeat renewal and inactivity watchdog."""

import asyncio
import logging
import os
import socket
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .config import ConversationConfig
from .exceptions import ConversationNotFoundError, MessagingError
from .llm_handler import SYSTEM_PROMPT, ModelClient
from .orm import (
    Conversation,
    ConversationMessage,
    ConversationStatus,
    MessageRole,
    utcnow,
)
from .services.channel_creator import ChannelCreator
from .services.conversation_service import ConversationService
from .slack_client import InputSource, MessagingClient, clean_message_text

logger = logging.getLogger(__name__)

HEARTBEAT_ATTEMPTS = 3

STOP_INACTIVITY = "inactivity"
STOP_TERMINATED = "terminated"

COMPLETED_MESSAGE = "✅ Conversation closed. Mention me again if you need anything else."
INACTIVITY_MESSAGE = "⏰ Closing this conversation after {minutes:g} minutes of inactivity."
TERMINATED_MESSAGE = "⏰ This conversation reached its time limit and has been closed."
FAILED_MESSAGE = "❌ Something went wrong and this conversation has ended: {error}"


def default_worker_ref() -> str:
    """host:pid of the current process."""
    return f"{socket.gethostname()}:{os.getpid()}"


class ConversationWorker:
    """Runs one conversation from activation to a terminal status.

    Three tasks share the event loop: the turn loop, which waits for user
    input and answers it; the heartbeat, which renews last_heartbeat on a
    fixed interval; and the watchdog, which stops the turn loop once the
    user has been silent longer than the inactivity threshold. Inactivity
    counts only time spent waiting for input, from the last user message
    or the end of the last turn, whichever is later.

    The turn loop notices a stop request at iteration boundaries. If it
    has not finished within the shutdown grace period the watchdog cancels
    it outright.
    """

    def __init__(
        self,
        conversation_service: ConversationService,
        messaging: MessagingClient,
        model: ModelClient,
        input_source: InputSource,
        config: ConversationConfig,
        worker_ref: Optional[str] = None,
        channel_creator: Optional[ChannelCreator] = None,
        archive_channel: bool = False,
    ):
        self.conversation_service = conversation_service
        self.messaging = messaging
        self.model = model
        self.input_source = input_source
        self.config = config
        self.worker_ref = worker_ref or default_worker_ref()
        self.channel_creator = channel_creator or ChannelCreator(messaging)
        self.archive_channel = archive_channel

        self._exit_phrases = {phrase.strip().lower() for phrase in config.exit_phrases}
        self._stop_event = asyncio.Event()
        self._stop_reason: Optional[str] = None
        self._last_activity = utcnow()
        self._turn_in_progress = False

    @property
    def stop_reason(self) -> Optional[str]:
        return self._stop_reason

    def request_stop(self, reason: str = STOP_TERMINATED) -> None:
        """Ask the turn loop to end the conversation as timed out."""
        if self._stop_reason is None:
            self._stop_reason = reason
            logger.info("Stop requested (%s)", reason)
        self._stop_event.set()

    def is_exit_phrase(self, text: str) -> bool:
        return text.strip().rstrip(".!").strip().lower() in self._exit_phrases

    async def run(self, conversation_id: str) -> ConversationStatus:
        """Drive a conversation to a terminal status and return it."""
        try:
            conversation = await self.conversation_service.get_conversation(conversation_id)
            history = await self.conversation_service.list_messages(conversation_id)
        except ConversationNotFoundError as e:
            logger.error("Cannot start worker: %s", e)
            return ConversationStatus.FAILED
        except SQLAlchemyError as e:
            logger.error("Failed to load conversation %s: %s", conversation_id, e)
            await self._record_outcome(
                conversation_id, ConversationStatus.FAILED, f"Failed to load conversation: {e}"
            )
            return ConversationStatus.FAILED

        if conversation.is_terminal:
            logger.warning(
                "Conversation %s is already %s, nothing to do",
                conversation_id,
                conversation.status,
            )
            return conversation.status_enum

        try:
            activated = await self.conversation_service.update_status(
                conversation_id, ConversationStatus.ACTIVE
            )
            if activated:
                await self.conversation_service.update_refs(
                    conversation_id, worker_ref=self.worker_ref
                )
        except ConversationNotFoundError as e:
            logger.error("Conversation vanished before activation: %s", e)
            return ConversationStatus.FAILED
        except SQLAlchemyError as e:
            logger.error("Failed to activate conversation %s: %s", conversation_id, e)
            await self._record_outcome(
                conversation_id, ConversationStatus.FAILED, f"Failed to activate conversation: {e}"
            )
            return ConversationStatus.FAILED

        if not activated:
            # Already claimed or finished by someone else
            try:
                current = await self.conversation_service.get_conversation(conversation_id)
            except (ConversationNotFoundError, SQLAlchemyError) as e:
                logger.error(
                    "Could not re-read conversation %s after activation was refused: %s",
                    conversation_id,
                    e,
                )
                return ConversationStatus.FAILED
            logger.warning(
                "Conversation %s is %s, not starting another worker",
                conversation_id,
                current.status,
            )
            return current.status_enum

        logger.info(
            "Conversation %s active on %s (%d prior message(s))",
            conversation_id,
            self.worker_ref,
            len(history),
        )

        self._last_activity = utcnow()
        turn_task = asyncio.create_task(self._turn_loop(conversation, history))
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(conversation_id))
        watchdog_task = asyncio.create_task(self._watchdog(turn_task))

        try:
            await asyncio.wait({turn_task})
        finally:
            for task in (heartbeat_task, watchdog_task):
                task.cancel()
            await asyncio.gather(heartbeat_task, watchdog_task, return_exceptions=True)
            if not turn_task.done():
                turn_task.cancel()

        if turn_task.cancelled():
            outcome, error = ConversationStatus.TIMEOUT, None
        elif turn_task.exception() is not None:
            outcome, error = ConversationStatus.FAILED, str(turn_task.exception())
        else:
            outcome, error = turn_task.result()

        await self._finish(conversation, outcome, error)
        return outcome

    async def _turn_loop(
        self, conversation: Conversation, history: list[ConversationMessage]
    ) -> tuple[ConversationStatus, Optional[str]]:
        conversation_id = conversation.conversation_id

        # A fresh conversation opens with the command from the mention
        pending_input: Optional[str] = None
        if not history:
            pending_input = (
                clean_message_text(conversation.initial_command) or conversation.initial_command
            )

        while True:
            if self._stop_event.is_set():
                return ConversationStatus.TIMEOUT, None

            try:
                if pending_input is not None:
                    text, pending_input = pending_input, None
                else:
                    text = await self._wait_for_input()
                    if text is None:
                        return ConversationStatus.TIMEOUT, None

                self._last_activity = utcnow()

                if self.is_exit_phrase(text):
                    logger.info("Conversation %s ended by user", conversation_id)
                    return ConversationStatus.COMPLETED, None

                self._turn_in_progress = True
                try:
                    await self._take_turn(conversation, history, text)
                finally:
                    self._turn_in_progress = False
                    self._last_activity = utcnow()

            except Exception as e:
                logger.exception("Turn failed for conversation %s", conversation_id)
                return ConversationStatus.FAILED, str(e) or e.__class__.__name__

    async def _take_turn(
        self, conversation: Conversation, history: list[ConversationMessage], text: str
    ) -> None:
        """One turn: persist input, ask the model, persist and post the reply."""
        conversation_id = conversation.conversation_id

        user_message = await self.conversation_service.append_message(
            conversation_id, MessageRole.USER, text
        )
        history.append(user_message)

        reply = await self.model.complete(history, SYSTEM_PROMPT)

        assistant_message = await self.conversation_service.append_message(
            conversation_id, MessageRole.ASSISTANT, reply
        )
        history.append(assistant_message)

        await self.messaging.post_message(conversation.channel_id, reply)
        await self.conversation_service.update_heartbeat(conversation_id)
        logger.info(
            "Conversation %s: turn complete (%d messages)", conversation_id, len(history)
        )

    async def _wait_for_input(self) -> Optional[str]:
        """Next user input, or None once a stop has been requested."""
        input_task = asyncio.ensure_future(self.input_source.next_input())
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {input_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (input_task, stop_task):
                if not task.done():
                    task.cancel()

        if stop_task in done:
            return None
        return input_task.result()

    async def _heartbeat_loop(self, conversation_id: str) -> None:
        interval = self.config.heartbeat_interval_seconds
        while True:
            await self._beat(conversation_id, retry_base=min(1.0, interval / 4))
            await asyncio.sleep(interval)

    async def _beat(self, conversation_id: str, retry_base: float) -> bool:
        for attempt in range(1, HEARTBEAT_ATTEMPTS + 1):
            if await self.conversation_service.update_heartbeat(conversation_id, utcnow()):
                return True
            if attempt < HEARTBEAT_ATTEMPTS:
                await asyncio.sleep(retry_base * (2 ** (attempt - 1)))
        logger.warning(
            "Heartbeat for conversation %s not recorded after %d attempts",
            conversation_id,
            HEARTBEAT_ATTEMPTS,
        )
        return False

    async def _watchdog(self, turn_task: asyncio.Task) -> None:
        interval = self.config.watchdog_interval_seconds
        threshold = self.config.inactivity_timeout

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set() or turn_task.done():
                break
            if self._turn_in_progress:
                continue
            idle = utcnow() - self._last_activity
            if idle >= threshold:
                logger.info(
                    "No input for %.0fs (limit %.0fs), timing out",
                    idle.total_seconds(),
                    threshold.total_seconds(),
                )
                self.request_stop(STOP_INACTIVITY)

        if turn_task.done():
            return
        await asyncio.wait({turn_task}, timeout=self.config.shutdown_grace_seconds)
        if not turn_task.done():
            logger.warning(
                "Turn loop still busy %.0fs after stop request, cancelling it",
                self.config.shutdown_grace_seconds,
            )
            turn_task.cancel()

    async def _record_outcome(
        self, conversation_id: str, outcome: ConversationStatus, error: Optional[str]
    ) -> bool:
        try:
            return await self.conversation_service.update_status(conversation_id, outcome, error)
        except (SQLAlchemyError, ConversationNotFoundError) as e:
            # Left for the reconciliation sweep
            logger.error(
                "Failed to record %s for conversation %s: %s", outcome.value, conversation_id, e
            )
            return False

    async def _finish(
        self,
        conversation: Conversation,
        outcome: ConversationStatus,
        error: Optional[str],
    ) -> None:
        conversation_id = conversation.conversation_id
        await self._record_outcome(conversation_id, outcome, error)

        if outcome == ConversationStatus.COMPLETED:
            message = COMPLETED_MESSAGE
        elif outcome == ConversationStatus.TIMEOUT and self._stop_reason == STOP_TERMINATED:
            message = TERMINATED_MESSAGE
        elif outcome == ConversationStatus.TIMEOUT:
            message = INACTIVITY_MESSAGE.format(minutes=self.config.inactivity_timeout_minutes)
        else:
            message = FAILED_MESSAGE.format(error=error)

        try:
            await self.messaging.post_message(conversation.channel_id, message)
        except MessagingError as e:
            logger.warning("Failed to post closing message for %s: %s", conversation_id, e)

        if self.archive_channel:
            await self.channel_creator.archive_conversation_channel(conversation.channel_id)

        logger.info("Conversation %s finished: %s", conversation_id, outcome.value)
