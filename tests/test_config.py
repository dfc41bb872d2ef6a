"""Tests for configuration loading."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from cloudops_bot.config import load_config

CONFIG_YAML = """
slack:
  bot_token: ${TEST_SLACK_BOT_TOKEN}
  signing_secret: ${TEST_SLACK_SIGNING_SECRET}
llm:
  api_key: ${TEST_LLM_API_KEY}
conversation:
  inactivity_timeout_minutes: 15
server:
  database_path: /tmp/cloudops-test.db
"""


class TestLoadConfig:
    """Test YAML loading, env expansion and defaults."""

    @pytest.fixture(autouse=True)
    def env(self, monkeypatch):
        monkeypatch.setenv("TEST_SLACK_BOT_TOKEN", "xoxb-from-env")
        monkeypatch.setenv("TEST_SLACK_SIGNING_SECRET", "secret-from-env")
        monkeypatch.setenv("TEST_LLM_API_KEY", "sk-from-env")

    def test_environment_variables_expanded(self, tmp_path):
        """Test that ${VAR} values come from the environment."""
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG_YAML)

        config = load_config(path)

        assert config.slack.bot_token.get_secret_value() == "xoxb-from-env"
        assert config.slack.signing_secret.get_secret_value() == "secret-from-env"
        assert config.llm.api_key.get_secret_value() == "sk-from-env"

    def test_defaults_applied(self, tmp_path):
        """Test lifecycle defaults and overrides."""
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG_YAML)

        config = load_config(path)

        assert config.conversation.inactivity_timeout == timedelta(minutes=15)
        assert config.conversation.hard_ceiling == timedelta(minutes=60)
        assert config.conversation.retention == timedelta(days=7)
        assert "done" in config.conversation.exit_phrases
        assert config.llm.provider == "anthropic"
        assert config.slack.private_channels is False
        assert config.worker.max_concurrent_runs == 20
        assert config.server.database_path == "/tmp/cloudops-test.db"

    def test_secrets_not_exposed_in_repr(self, tmp_path):
        """Test that secrets are masked when printed."""
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG_YAML)

        config = load_config(path)

        assert "secret-from-env" not in repr(config)

    def test_missing_file(self, tmp_path):
        """Test that a missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_unset_environment_variable(self, tmp_path, monkeypatch):
        """Test that an unset variable is reported."""
        monkeypatch.delenv("TEST_LLM_API_KEY")
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG_YAML)

        with pytest.raises(ValueError, match="TEST_LLM_API_KEY"):
            load_config(path)

    def test_invalid_values_rejected(self, tmp_path):
        """Test that out-of-range values fail validation."""
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG_YAML.replace("inactivity_timeout_minutes: 15", "inactivity_timeout_minutes: 0"))

        with pytest.raises(ValidationError):
            load_config(path)
