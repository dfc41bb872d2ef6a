"""LLM handler with LangChain integration for multi-turn CloudOps conversations."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from .config import LLMConfig
from .exceptions import ModelInvocationError
from .orm import ConversationMessage, MessageRole

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are CloudOps Bot, a cloud operations assistant. You help users \
troubleshoot and understand their cloud infrastructure from inside a Slack conversation.

Your capabilities:
- Answer questions about cloud services (compute, containers, databases, serverless, monitoring)
- Explain cloud concepts and operational best practices
- Help diagnose issues based on the information the user shares
- Provide step-by-step guidance for common read-only inspection tasks

Guidelines:
- Be concise but thorough in your responses
- Use technical terminology appropriately
- Suggest CLI commands or console actions when relevant
- Always prioritize security and cost optimization
- If you're unsure, acknowledge limitations and suggest next steps

Limitations:
- You never make changes to cloud resources
- You provide guidance, not automated fixes

The user can end the conversation at any time by saying "done".
Respond in a friendly, professional tone. Use Slack markdown for code blocks and commands."""


class ModelClient(ABC):
    """What the worker needs from the language model."""

    @abstractmethod
    async def complete(
        self, history: Sequence[ConversationMessage], system_prompt: str = SYSTEM_PROMPT
    ) -> str:
        """Return the assistant's reply to the ordered conversation history."""


def _backoff(attempt: int, base: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    if attempt <= 0:
        return 0
    return base * (2 ** (attempt - 1))


class LLMHandler(ModelClient):
    """Handles LLM interactions with local retries."""

    def __init__(self, config: LLMConfig, llm: Optional[BaseChatModel] = None) -> None:
        self.config = config
        self.llm = llm or self._create_llm()

    def _create_llm(self) -> BaseChatModel:
        """Create the appropriate LLM based on config."""
        if self.config.provider == "anthropic":
            from langchain_anthropic import ChatAnthropic

            return ChatAnthropic(
                model=self.config.model,
                api_key=self.config.api_key.get_secret_value(),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
        elif self.config.provider == "openai":
            from langchain_openai import ChatOpenAI

            return ChatOpenAI(
                model=self.config.model,
                api_key=self.config.api_key.get_secret_value(),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
        else:
            raise ValueError(f"Unsupported LLM provider: {self.config.provider}")

    def _build_messages(
        self, history: Sequence[ConversationMessage], system_prompt: str
    ) -> list[BaseMessage]:
        messages: list[BaseMessage] = [SystemMessage(content=system_prompt)]
        for entry in history:
            if entry.role == MessageRole.USER.value:
                messages.append(HumanMessage(content=entry.content))
            else:
                messages.append(AIMessage(content=entry.content))
        return messages

    async def complete(
        self, history: Sequence[ConversationMessage], system_prompt: str = SYSTEM_PROMPT
    ) -> str:
        """Invoke the model with the full history, retrying transient failures.

        Raises:
            ModelInvocationError: If every attempt fails or the reply is empty.
        """
        if not history:
            raise ModelInvocationError("Conversation history cannot be empty")

        messages = self._build_messages(history, system_prompt)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.config.max_retries + 1):
            try:
                logger.debug(
                    "Sending %d message(s) to LLM (attempt %d/%d)",
                    len(history),
                    attempt,
                    self.config.max_retries,
                )
                response = await self.llm.ainvoke(messages)
            except Exception as e:
                last_error = e
                logger.warning(
                    "LLM invocation failed (attempt %d/%d): %s",
                    attempt,
                    self.config.max_retries,
                    e,
                )
                if attempt < self.config.max_retries:
                    await asyncio.sleep(_backoff(attempt, self.config.retry_backoff_seconds))
                continue

            response_text = self._extract_text(response)
            if not response_text:
                raise ModelInvocationError("Empty response from model")
            return self._truncate_response(response_text, self.config.max_reply_length)

        raise ModelInvocationError(
            f"Model invocation failed after {self.config.max_retries} attempt(s): {last_error}"
        ) from last_error

    @staticmethod
    def _extract_text(response: BaseMessage) -> str:
        content = response.content
        if isinstance(content, str):
            return content.strip()
        # Content blocks (e.g. Anthropic): join the text parts
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts).strip()

    def _truncate_response(self, text: str, max_length: int) -> str:
        """Truncate text intelligently to fit within max_length."""
        if len(text) <= max_length:
            return text

        # Leave room for ellipsis
        target_length = max_length - 3

        # Try to break at sentence boundary
        truncated = text[:target_length]
        last_period = truncated.rfind(".")
        last_question = truncated.rfind("?")
        last_exclaim = truncated.rfind("!")

        best_break = max(last_period, last_question, last_exclaim)

        if best_break > target_length * 0.5:  # Only use if we keep >50% of content
            return text[: best_break + 1]

        # Otherwise break at word boundary
        last_space = truncated.rfind(" ")
        if last_space > target_length * 0.7:
            return text[:last_space] + "..."

        # Last resort: hard truncate
        return text[:target_length] + "..."
