"""Tests for Slack request signature verification."""

import time

from cloudops_bot.webhook_server import compute_slack_signature, verify_slack_signature


class TestSlackSignature:
    """Test HMAC signature and replay window checks."""

    def setup_method(self):
        """Set up test fixtures."""
        self.secret = "8f742231b10e8888abcd99yyyzzz85a5"
        self.body = b'{"type":"event_callback","event":{"type":"app_mention","text":"hi"}}'
        self.now = 1_700_000_000.0
        self.timestamp = str(int(self.now))
        self.signature = compute_slack_signature(self.body, self.timestamp, self.secret)

    def test_signature_format(self):
        """Test that signatures are v0= followed by a hex SHA-256 digest."""
        assert self.signature.startswith("v0=")
        assert len(self.signature) == 3 + 64
        int(self.signature[3:], 16)

    def test_valid_signature_accepted(self):
        """Test that a correctly signed, fresh request is accepted."""
        assert verify_slack_signature(
            self.body, self.timestamp, self.signature, self.secret, now=self.now
        )

    def test_str_and_bytes_body_agree(self):
        """Test that text and raw bodies produce the same signature."""
        assert compute_slack_signature(
            self.body.decode(), self.timestamp, self.secret
        ) == self.signature

    def test_current_time_used_by_default(self):
        """Test verification against the real clock."""
        timestamp = str(int(time.time()))
        signature = compute_slack_signature(self.body, timestamp, self.secret)

        assert verify_slack_signature(self.body, timestamp, signature, self.secret)

    def test_every_single_bit_mutation_rejected(self):
        """Test that flipping any bit of the digest is rejected."""
        prefix, digest = self.signature[:3], self.signature[3:]
        for position in range(len(digest)):
            for bit in (1, 2, 4):
                mutated_char = chr(ord(digest[position]) ^ bit)
                mutated = prefix + digest[:position] + mutated_char + digest[position + 1:]
                assert not verify_slack_signature(
                    self.body, self.timestamp, mutated, self.secret, now=self.now
                ), f"mutation at {position} (bit {bit}) accepted"

    def test_tampered_body_rejected(self):
        """Test that changing the body invalidates the signature."""
        tampered = self.body.replace(b"hi", b"rm -rf")

        assert not verify_slack_signature(
            tampered, self.timestamp, self.signature, self.secret, now=self.now
        )

    def test_wrong_secret_rejected(self):
        """Test that a signature made with another secret is rejected."""
        assert not verify_slack_signature(
            self.body, self.timestamp, self.signature, "another-secret", now=self.now
        )

    def test_old_timestamp_rejected(self):
        """Test that a correctly signed request older than five minutes is rejected."""
        old = str(int(self.now) - 301)
        signature = compute_slack_signature(self.body, old, self.secret)

        assert not verify_slack_signature(self.body, old, signature, self.secret, now=self.now)

    def test_future_timestamp_rejected(self):
        """Test that a timestamp more than five minutes ahead is rejected."""
        future = str(int(self.now) + 301)
        signature = compute_slack_signature(self.body, future, self.secret)

        assert not verify_slack_signature(
            self.body, future, signature, self.secret, now=self.now
        )

    def test_timestamp_within_window_accepted(self):
        """Test that a request just inside the window is accepted."""
        recent = str(int(self.now) - 299)
        signature = compute_slack_signature(self.body, recent, self.secret)

        assert verify_slack_signature(self.body, recent, signature, self.secret, now=self.now)

    def test_malformed_timestamp_rejected(self):
        """Test that a non-numeric timestamp is rejected without raising."""
        assert not verify_slack_signature(
            self.body, "yesterday", self.signature, self.secret, now=self.now
        )

    def test_missing_fields_rejected(self):
        """Test that missing headers or secret are rejected without raising."""
        assert not verify_slack_signature(self.body, None, self.signature, self.secret)
        assert not verify_slack_signature(self.body, self.timestamp, None, self.secret)
        assert not verify_slack_signature(self.body, self.timestamp, "", self.secret)
        assert not verify_slack_signature(self.body, self.timestamp, self.signature, "")

    def test_non_utf8_body_rejected(self):
        """Test that an undecodable body is rejected without raising."""
        assert not verify_slack_signature(
            b"\xff\xfe\xfa", self.timestamp, self.signature, self.secret, now=self.now
        )

    def test_non_ascii_signature_rejected(self):
        """Test that garbage in the signature header is rejected without raising."""
        assert not verify_slack_signature(
            self.body, self.timestamp, "v0=éé", self.secret, now=self.now
        )
