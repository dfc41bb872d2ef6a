"""Exceptions raised across the conversation lifecycle."""

from typing import Optional


class CloudOpsError(Exception):
    """Base class for all bot errors."""


class ConversationNotFoundError(CloudOpsError):
    """No conversation exists with the requested identifier."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class ConversationExistsError(CloudOpsError):
    """A conversation with this identifier was already stored."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation already exists: {conversation_id}")
        self.conversation_id = conversation_id


class ExecutionStartError(CloudOpsError):
    """The launch substrate refused to start a worker run."""


class ModelInvocationError(CloudOpsError):
    """The language model failed after exhausting local retries."""


class MessagingError(CloudOpsError):
    """A messaging platform call failed."""


class DispatchError(CloudOpsError):
    """A mention could not be turned into a running conversation."""

    def __init__(self, message: str, conversation_id: Optional[str] = None):
        super().__init__(message)
        self.conversation_id = conversation_id
