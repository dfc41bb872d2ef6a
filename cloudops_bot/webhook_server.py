"""FastAPI server receiving Slack Events API callbacks."""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import Config
from .exceptions import DispatchError

logger = logging.getLogger(__name__)

SIGNATURE_VERSION = "v0"
MAX_REQUEST_AGE_SECONDS = 300


def compute_slack_signature(body: bytes | str, timestamp: str, secret: str) -> str:
    """Signature Slack would send for this body and timestamp: v0=<hex hmac-sha256>."""
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    base_string = f"{SIGNATURE_VERSION}:{timestamp}:{body}"
    digest = hmac.new(
        secret.encode("utf-8"),
        base_string.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def verify_slack_signature(
    body: bytes | str,
    timestamp: Optional[str],
    signature: Optional[str],
    secret: str,
    now: Optional[float] = None,
) -> bool:
    """Verify a Slack request signature using HMAC SHA-256.

    Args:
        body: Raw request body
        timestamp: X-Slack-Request-Timestamp header value (epoch seconds)
        signature: X-Slack-Signature header value (format: "v0=...")
        secret: Slack signing secret
        now: Current epoch seconds, for tests

    Returns:
        True if the signature matches and the timestamp is within five
        minutes of now, False otherwise. Never raises on malformed input.
    """
    if not timestamp or not signature or not secret:
        logger.warning("Missing signature, timestamp or signing secret")
        return False

    try:
        request_time = int(timestamp)
    except (TypeError, ValueError):
        logger.warning("Invalid request timestamp: %r", timestamp)
        return False

    current_time = time.time() if now is None else now
    if abs(current_time - request_time) > MAX_REQUEST_AGE_SECONDS:
        logger.warning(
            "Request timestamp outside replay window: %d (current: %d)",
            request_time,
            int(current_time),
        )
        return False

    try:
        expected_signature = compute_slack_signature(body, timestamp, secret)
    except UnicodeDecodeError:
        logger.warning("Request body is not valid UTF-8")
        return False

    # Timing-safe comparison to prevent timing attacks
    is_valid = hmac.compare_digest(
        expected_signature.encode("utf-8"), signature.encode("utf-8", errors="replace")
    )

    if not is_valid:
        logger.warning(
            "Signature verification failed. "
            f"Expected: {expected_signature[:16]}..., "
            f"Received: {signature[:16]}..."
        )

    return is_valid


def create_webhook_app(config: Config, dispatcher: Any, lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI webhook application.

    Args:
        config: Application configuration
        dispatcher: Dispatcher that turns mentions into conversations
        lifespan: Optional lifespan context for background services

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="CloudOps Bot",
        description="Slack event receiver for the CloudOps assistant",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "cloudops-bot"
        }

    @app.post("/slack/events")
    async def slack_events(request: Request) -> JSONResponse:
        """Handle incoming Slack events.

        Security:
        - Verifies the request signature before anything else
        - Returns 401 for invalid signatures

        Returns:
            Challenge echo for url_verification, {"ok": true} otherwise
        """
        body = await request.body()
        timestamp = request.headers.get("X-Slack-Request-Timestamp")
        signature = request.headers.get("X-Slack-Signature")

        signing_secret = config.slack.signing_secret.get_secret_value()
        if not verify_slack_signature(body, timestamp, signature, signing_secret):
            logger.warning("Rejected Slack event with invalid signature")
            raise HTTPException(
                status_code=401,
                detail="Invalid signature"
            )

        # Parse payload (signature verified, safe to parse)
        try:
            payload = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Failed to parse Slack event: {e}")
            raise HTTPException(
                status_code=400,
                detail="Invalid event format"
            )
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid event format")

        event_type = payload.get("type")

        if event_type == "url_verification":
            logger.info("Responding to Slack URL verification challenge")
            return JSONResponse({"challenge": payload.get("challenge", "")})

        retry_num = request.headers.get("X-Slack-Retry-Num")
        if retry_num is not None:
            logger.info(
                "Ignoring Slack retry #%s (reason: %s)",
                retry_num,
                request.headers.get("X-Slack-Retry-Reason", "unknown"),
            )
            return JSONResponse({"ok": True})

        event = payload.get("event") or {}
        if event_type == "event_callback" and event.get("type") == "app_mention":
            if event.get("bot_id") or event.get("subtype"):
                logger.debug("Ignoring bot or edited mention")
                return JSONResponse({"ok": True})

            channel_id = event.get("channel")
            user_id = event.get("user")
            if not channel_id or not user_id:
                logger.warning("app_mention without channel or user: %s", event)
                raise HTTPException(status_code=400, detail="Invalid event format")

            try:
                conversation = await dispatcher.dispatch(
                    channel_id, user_id, event.get("text", "")
                )
            except DispatchError as e:
                logger.error("Failed to handle app mention: %s", e)
                return JSONResponse(
                    {"error": "Failed to process mention"},
                    status_code=500
                )

            return JSONResponse(
                {"ok": True, "conversation_id": conversation.conversation_id}
            )

        logger.info("Ignoring event type: %s", event.get("type") or event_type)
        return JSONResponse({"ok": True})

    return app
