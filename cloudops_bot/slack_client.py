"""Slack messaging client and the channel-backed input source for workers."""

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from .exceptions import MessagingError

logger = logging.getLogger(__name__)

_MENTION_PATTERN = re.compile(r"<@[A-Z0-9]+(?:\|[^>]*)?>")


def clean_message_text(text: Optional[str]) -> str:
    """Strip user mentions and control characters from Slack message text."""
    if not text:
        return ""
    text = _MENTION_PATTERN.sub("", text)
    # Remove null bytes and other control characters (except newlines and tabs)
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)
    for char in ("\u200b", "\u200c", "\u200d", "\ufeff"):  # zero-width characters, BOM
        text = text.replace(char, "")
    return text.strip()


@dataclass
class ChannelMessage:
    """A message read back from a channel."""

    ts: str
    user_id: Optional[str]
    text: str
    bot_id: Optional[str] = None
    subtype: Optional[str] = None


class MessagingClient(ABC):
    """What the bot needs from the messaging platform."""

    @abstractmethod
    async def post_message(self, channel_id: str, text: str) -> str:
        """Post text to a channel and return the message timestamp."""

    @abstractmethod
    async def create_channel(self, name: str) -> str:
        """Create a private channel and return its id."""

    @abstractmethod
    async def invite_user(self, channel_id: str, user_id: str) -> None:
        """Invite a user into a channel."""

    @abstractmethod
    async def archive_channel(self, channel_id: str) -> None:
        """Archive a channel."""

    @abstractmethod
    async def fetch_messages(self, channel_id: str, oldest: str) -> list[ChannelMessage]:
        """Messages posted to a channel after `oldest`, oldest first."""


class SlackClient(MessagingClient):
    """MessagingClient backed by the Slack Web API.

    Every failure, whether Slack rejected the call or the transport broke
    before an answer came back, surfaces as MessagingError.
    """

    def __init__(self, bot_token: str, client: Optional[AsyncWebClient] = None):
        self.client = client or AsyncWebClient(token=bot_token)

    async def _call(self, action: str, method: str, **kwargs: Any):
        try:
            return await getattr(self.client, method)(**kwargs)
        except SlackApiError as e:
            raise MessagingError(f"{action}: {e.response['error']}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MessagingError(f"{action}: {e.__class__.__name__}: {e}") from e

    async def post_message(self, channel_id: str, text: str) -> str:
        response = await self._call(
            f"post message to {channel_id}", "chat_postMessage", channel=channel_id, text=text
        )
        return response["ts"]

    async def create_channel(self, name: str) -> str:
        response = await self._call(
            f"create channel {name}", "conversations_create", name=name, is_private=True
        )
        return response["channel"]["id"]

    async def invite_user(self, channel_id: str, user_id: str) -> None:
        await self._call(
            f"invite {user_id} to {channel_id}",
            "conversations_invite",
            channel=channel_id,
            users=user_id,
        )

    async def archive_channel(self, channel_id: str) -> None:
        await self._call(
            f"archive channel {channel_id}", "conversations_archive", channel=channel_id
        )

    async def fetch_messages(self, channel_id: str, oldest: str) -> list[ChannelMessage]:
        response = await self._call(
            f"read history of {channel_id}",
            "conversations_history",
            channel=channel_id,
            oldest=oldest,
            inclusive=False,
            limit=100,
        )

        messages = [
            ChannelMessage(
                ts=item["ts"],
                user_id=item.get("user"),
                text=item.get("text", ""),
                bot_id=item.get("bot_id"),
                subtype=item.get("subtype"),
            )
            for item in response.get("messages", [])
        ]
        # Slack returns newest first
        messages.sort(key=lambda m: float(m.ts))
        return messages


class InputSource(ABC):
    """Where a worker's follow-up user inputs come from."""

    @abstractmethod
    async def next_input(self) -> str:
        """Block until the next user input is available and return it."""


class SlackChannelInput(InputSource):
    """Polls a channel for new messages from the conversation's user."""

    def __init__(
        self,
        messaging: MessagingClient,
        channel_id: str,
        user_id: str,
        poll_interval: float = 2.0,
        oldest: Optional[str] = None,
    ):
        self.messaging = messaging
        self.channel_id = channel_id
        self.user_id = user_id
        self.poll_interval = poll_interval
        self._cursor = oldest or f"{time.time():.6f}"
        self._pending: deque[str] = deque()

    async def next_input(self) -> str:
        while not self._pending:
            try:
                messages = await self.messaging.fetch_messages(self.channel_id, self._cursor)
            except MessagingError as e:
                logger.warning("Polling %s failed: %s", self.channel_id, e)
                messages = []

            for message in messages:
                self._cursor = max(self._cursor, message.ts, key=float)
                if message.bot_id or message.subtype or message.user_id != self.user_id:
                    continue
                text = clean_message_text(message.text)
                if text:
                    self._pending.append(text)

            if not self._pending:
                await asyncio.sleep(self.poll_interval)

        return self._pending.popleft()
