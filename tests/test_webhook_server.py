"""Tests for the Slack event endpoint."""

import json
import time
from types import SimpleNamespace

from fastapi.testclient import TestClient

from cloudops_bot.config import Config, LLMConfig, SlackConfig
from cloudops_bot.exceptions import DispatchError
from cloudops_bot.webhook_server import compute_slack_signature, create_webhook_app

SIGNING_SECRET = "test-signing-secret"


class RecordingDispatcher:
    """Dispatcher double that records mentions."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def dispatch(self, channel_id, user_id, command):
        self.calls.append((channel_id, user_id, command))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(conversation_id="conv-0000000000001234567890abcdef")


def signed_headers(body: bytes, secret: str = SIGNING_SECRET, timestamp=None) -> dict:
    timestamp = timestamp or str(int(time.time()))
    return {
        "Content-Type": "application/json",
        "X-Slack-Request-Timestamp": timestamp,
        "X-Slack-Signature": compute_slack_signature(body, timestamp, secret),
    }


def mention_payload(**event_overrides) -> bytes:
    event = {
        "type": "app_mention",
        "channel": "C1",
        "user": "U1",
        "text": "<@UBOT> list instances",
        "ts": "1700000000.000100",
    }
    event.update(event_overrides)
    return json.dumps({"type": "event_callback", "event": event}).encode()


class TestWebhookServer:
    """Test signature gating and event routing."""

    def setup_method(self):
        """Set up test fixtures."""
        self.config = Config(
            slack=SlackConfig(bot_token="xoxb-test", signing_secret=SIGNING_SECRET),
            llm=LLMConfig(api_key="test-key"),
        )
        self.dispatcher = RecordingDispatcher()
        self.client = TestClient(create_webhook_app(self.config, self.dispatcher))

    def post(self, body: bytes, headers: dict = None):
        return self.client.post(
            "/slack/events", content=body, headers=headers or signed_headers(body)
        )

    def test_health_check(self):
        """Test health endpoint."""
        response = self.client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_url_verification_echoes_challenge(self):
        """Test that the URL verification challenge is echoed back."""
        body = json.dumps({"type": "url_verification", "challenge": "abc123"}).encode()

        response = self.post(body)

        assert response.status_code == 200
        assert response.json() == {"challenge": "abc123"}
        assert self.dispatcher.calls == []

    def test_url_verification_requires_signature(self):
        """Test that even the challenge handshake is signature-checked."""
        body = json.dumps({"type": "url_verification", "challenge": "abc123"}).encode()

        response = self.post(body, signed_headers(body, secret="wrong-secret"))

        assert response.status_code == 401

    def test_app_mention_dispatched(self):
        """Test that a signed mention is dispatched with channel, user and text."""
        response = self.post(mention_payload())

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert response.json()["conversation_id"].startswith("conv-")
        assert self.dispatcher.calls == [("C1", "U1", "<@UBOT> list instances")]

    def test_invalid_signature_rejected(self):
        """Test that a bad signature yields 401 and nothing is dispatched."""
        body = mention_payload()

        response = self.post(body, signed_headers(body, secret="wrong-secret"))

        assert response.status_code == 401
        assert self.dispatcher.calls == []

    def test_missing_signature_headers_rejected(self):
        """Test that unsigned requests are rejected."""
        response = self.post(mention_payload(), {"Content-Type": "application/json"})

        assert response.status_code == 401
        assert self.dispatcher.calls == []

    def test_stale_timestamp_rejected(self):
        """Test that a replayed request outside the window is rejected."""
        body = mention_payload()
        old = str(int(time.time()) - 600)

        response = self.post(body, signed_headers(body, timestamp=old))

        assert response.status_code == 401
        assert self.dispatcher.calls == []

    def test_malformed_json_rejected(self):
        """Test that a signed but unparsable body yields 400."""
        body = b"{not json"

        response = self.post(body)

        assert response.status_code == 400

    def test_non_object_payload_rejected(self):
        """Test that a signed JSON array yields 400."""
        body = b"[1, 2, 3]"

        response = self.post(body)

        assert response.status_code == 400

    def test_mention_without_channel_rejected(self):
        """Test that a mention missing its channel yields 400."""
        response = self.post(mention_payload(channel=None))

        assert response.status_code == 400
        assert self.dispatcher.calls == []

    def test_dispatch_failure_returns_500(self):
        """Test that a dispatch failure is reported as a server error."""
        self.dispatcher.error = DispatchError("Failed to start worker: capacity exceeded")

        response = self.post(mention_payload())

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to process mention"}

    def test_other_events_acknowledged(self):
        """Test that unrelated event types are acknowledged without dispatch."""
        body = json.dumps({
            "type": "event_callback",
            "event": {"type": "message", "channel": "C1", "user": "U1", "text": "hello"},
        }).encode()

        response = self.post(body)

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert self.dispatcher.calls == []

    def test_bot_mentions_ignored(self):
        """Test that mentions posted by bots are not dispatched."""
        response = self.post(mention_payload(bot_id="B123"))

        assert response.status_code == 200
        assert self.dispatcher.calls == []

    def test_edited_mentions_ignored(self):
        """Test that message subtypes such as edits are not dispatched."""
        response = self.post(mention_payload(subtype="message_changed"))

        assert response.status_code == 200
        assert self.dispatcher.calls == []

    def test_slack_retries_acknowledged_without_dispatch(self):
        """Test that redelivered events do not start a second conversation."""
        body = mention_payload()
        headers = signed_headers(body)
        headers["X-Slack-Retry-Num"] = "1"
        headers["X-Slack-Retry-Reason"] = "http_timeout"

        response = self.post(body, headers)

        assert response.status_code == 200
        assert self.dispatcher.calls == []
