"""Shared fixtures: a temporary database, configuration and capability doubles."""

from datetime import timedelta
from typing import Optional

import pytest

from cloudops_bot.config import Config, ConversationConfig, LLMConfig, SlackConfig
from cloudops_bot.orm import Conversation
from cloudops_bot.services import ConversationService, init_db_service

from fakes import FakeMessagingClient, FakeModelClient, FakeOrchestrator


@pytest.fixture
async def db_service(tmp_path):
    """Fresh SQLite database per test."""
    db = await init_db_service(tmp_path / "cloudops-test.db")
    yield db
    await db.close()


@pytest.fixture
def conversation_service(db_service):
    return ConversationService(db_service)


@pytest.fixture
def config():
    return Config(
        slack=SlackConfig(bot_token="xoxb-test", signing_secret="test-signing-secret"),
        llm=LLMConfig(api_key="test-key", retry_backoff_seconds=0),
        conversation=ConversationConfig(
            inactivity_timeout_minutes=1,
            heartbeat_interval_seconds=0.05,
            watchdog_interval_seconds=0.05,
            shutdown_grace_seconds=0.2,
        ),
    )


@pytest.fixture
def messaging():
    return FakeMessagingClient()


@pytest.fixture
def model():
    return FakeModelClient()


@pytest.fixture
def orchestrator():
    return FakeOrchestrator()


@pytest.fixture
def make_conversation(conversation_service):
    """Store a conversation, optionally backdated."""

    async def _make(
        channel_id: str = "C1",
        user_id: str = "U1",
        command: str = "list instances",
        age: Optional[timedelta] = None,
    ) -> Conversation:
        conversation = Conversation.new(channel_id, user_id, command)
        if age is not None:
            conversation.created_at = conversation.created_at - age
            conversation.expiry = conversation.expiry - age
        return await conversation_service.create_conversation(conversation)

    return _make
