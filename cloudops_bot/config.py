"""Configuration management for the CloudOps bot."""

import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr


class SlackConfig(BaseModel):
    """Slack workspace connection settings."""

    bot_token: SecretStr = Field(..., description="Bot user OAuth token (xoxb-...)")
    signing_secret: SecretStr = Field(..., description="Signing secret for request verification")
    private_channels: bool = Field(
        default=False, description="Run each conversation in a new private incident channel"
    )
    archive_on_completion: bool = Field(
        default=False, description="Archive private incident channels when the conversation ends"
    )
    poll_interval_seconds: float = Field(default=2.0, gt=0)


class LLMConfig(BaseModel):
    """LLM provider settings."""

    provider: Literal["anthropic", "openai"] = "anthropic"
    api_key: SecretStr = Field(..., description="API key for LLM provider")
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = Field(default=4096, ge=1, le=8192)
    temperature: float = Field(default=0.3, ge=0.0, le=1.0)
    max_retries: int = Field(default=3, ge=1, description="Attempts per model call")
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    max_reply_length: int = Field(default=3900, ge=100)


class ConversationConfig(BaseModel):
    """Conversation lifecycle limits."""

    inactivity_timeout_minutes: float = Field(default=30, gt=0)
    hard_ceiling_minutes: float = Field(default=60, gt=0)
    heartbeat_interval_seconds: float = Field(default=30, gt=0)
    watchdog_interval_seconds: float = Field(default=30, gt=0)
    shutdown_grace_seconds: float = Field(default=10, ge=0)
    stale_heartbeat_seconds: float = Field(
        default=300, gt=0, description="Heartbeat age after which an active conversation is stuck"
    )
    retention_days: int = Field(default=7, ge=1)
    exit_phrases: list[str] = Field(default_factory=lambda: ["done", "exit", "quit", "bye"])

    @property
    def inactivity_timeout(self) -> timedelta:
        return timedelta(minutes=self.inactivity_timeout_minutes)

    @property
    def hard_ceiling(self) -> timedelta:
        return timedelta(minutes=self.hard_ceiling_minutes)

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)


class WorkerConfig(BaseModel):
    """How worker executions are launched and supervised."""

    command: list[str] = Field(
        default_factory=lambda: [sys.executable, "-m", "cloudops_bot.main", "--mode", "worker"],
        description="argv prefix for a worker process; --input <json> is appended",
    )
    max_concurrent_runs: int = Field(default=20, ge=1)
    sweep_interval_seconds: float = Field(default=60, gt=0)


class ServerConfig(BaseModel):
    """Webhook server and storage settings."""

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    database_path: str = Field(
        default="~/.cloudops-bot/cloudops.db", description="Path to SQLite database file"
    )


class Config(BaseModel):
    """Root configuration model."""

    slack: SlackConfig
    llm: LLMConfig
    conversation: ConversationConfig = ConversationConfig()
    worker: WorkerConfig = WorkerConfig()
    server: ServerConfig = ServerConfig()


def load_config(config_path: str | Path = "config.yaml") -> Config:
    """Load and validate configuration from YAML file.

    Supports ${VAR_NAME} syntax for environment variable expansion.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Validated Config object.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValidationError: If config is invalid.
        ValueError: If referenced environment variable is not set.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}\n"
            "Copy config.example.yaml to config.yaml and fill in your values."
        )

    with path.open() as f:
        raw_config = yaml.safe_load(f) or {}

    # Expand environment variables in the format ${VAR_NAME}
    def expand_env_vars(obj):
        if isinstance(obj, dict):
            return {k: expand_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [expand_env_vars(item) for item in obj]
        elif isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
            env_var = obj[2:-1]
            value = os.getenv(env_var)
            if value is None:
                raise ValueError(f"Environment variable '{env_var}' is not set")
            return value
        return obj

    raw_config = expand_env_vars(raw_config)

    return Config(**raw_config)
