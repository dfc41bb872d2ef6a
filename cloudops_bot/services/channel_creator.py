"""Private incident channels for conversations."""

import logging
import random
from datetime import datetime
from typing import Optional

from ..exceptions import MessagingError
from ..orm import utcnow
from ..slack_client import MessagingClient

logger = logging.getLogger(__name__)


def generate_channel_name(now: Optional[datetime] = None) -> str:
    """Channel name of the form incident-YYYYMMDD-HHMMSS-NNNN.

    The random suffix separates channels created within the same second.
    """
    now = now or utcnow()
    return f"incident-{now:%Y%m%d-%H%M%S}-{random.randint(0, 9999):04d}"


class ChannelCreator:
    """Creates and archives per-conversation private channels."""

    def __init__(self, messaging: MessagingClient):
        self.messaging = messaging

    async def create_conversation_channel(self, user_id: str) -> str:
        """Create a private channel and invite the requesting user.

        Returns:
            The new channel id.

        Raises:
            MessagingError: If the channel could not be created.
        """
        channel_name = generate_channel_name()
        logger.info("Creating private channel: %s", channel_name)
        channel_id = await self.messaging.create_channel(channel_name)
        logger.info("Channel created: %s (ID: %s)", channel_name, channel_id)

        try:
            await self.messaging.invite_user(channel_id, user_id)
        except MessagingError as e:
            # The user may already be a member
            logger.warning("Failed to invite %s to %s: %s", user_id, channel_id, e)

        return channel_id

    async def archive_conversation_channel(self, channel_id: str) -> None:
        """Archive a conversation channel; failures are logged only."""
        logger.info("Archiving channel: %s", channel_id)
        try:
            await self.messaging.archive_channel(channel_id)
        except MessagingError as e:
            logger.warning("Failed to archive channel %s: %s", channel_id, e)
