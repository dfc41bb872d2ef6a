"""Sweeps conversations whose worker disappeared without reporting an outcome."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from ..config import ConversationConfig
from ..orm import Conversation, ConversationStatus, utcnow
from .conversation_service import ConversationService
from .orchestrator import ExecutionOrchestrator, RunStatus

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """What a single sweep changed."""

    timed_out: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    purged: int = 0


class ReconciliationService:
    """Brings stuck conversations to a terminal status and purges expired ones.

    An active conversation whose heartbeat is older than the stale limit
    is timed out and its run stopped. A pending conversation older than
    the hard ceiling whose run is no longer running never reached a worker:
    it is failed if the run exited with an error and timed out otherwise.
    """

    def __init__(
        self,
        conversation_service: ConversationService,
        orchestrator: Optional[ExecutionOrchestrator],
        config: ConversationConfig,
    ):
        self.conversation_service = conversation_service
        self.orchestrator = orchestrator
        self.config = config

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult()

        stale_after = timedelta(seconds=self.config.stale_heartbeat_seconds)
        for conversation in await self.conversation_service.find_by_status(
            ConversationStatus.ACTIVE
        ):
            last_seen = conversation.last_heartbeat or conversation.created_at
            if now - last_seen <= stale_after:
                continue
            logger.warning(
                "Conversation %s heartbeat stale since %s, marking timeout",
                conversation.conversation_id,
                last_seen.isoformat(),
            )
            await self._stop(conversation)
            if await self.conversation_service.update_status(
                conversation.conversation_id, ConversationStatus.TIMEOUT
            ):
                result.timed_out.append(conversation.conversation_id)

        for conversation in await self.conversation_service.find_by_status(
            ConversationStatus.PENDING
        ):
            if now - conversation.created_at <= self.config.hard_ceiling:
                continue
            run_status = self._run_status(conversation)
            if run_status == RunStatus.RUNNING:
                continue
            if run_status == RunStatus.FAILED:
                logger.warning(
                    "Conversation %s never became active and its run failed",
                    conversation.conversation_id,
                )
                if await self.conversation_service.update_status(
                    conversation.conversation_id,
                    ConversationStatus.FAILED,
                    error="Worker exited before the conversation became active",
                ):
                    result.failed.append(conversation.conversation_id)
            else:
                logger.warning(
                    "Conversation %s still pending after the hard ceiling (run %s)",
                    conversation.conversation_id,
                    run_status.value,
                )
                if await self.conversation_service.update_status(
                    conversation.conversation_id, ConversationStatus.TIMEOUT
                ):
                    result.timed_out.append(conversation.conversation_id)

        result.purged = await self.conversation_service.purge_expired(now)

        if result.timed_out or result.failed:
            logger.info(
                "Sweep: %d timed out, %d failed, %d purged",
                len(result.timed_out),
                len(result.failed),
                result.purged,
            )
        return result

    def _run_status(self, conversation: Conversation) -> RunStatus:
        if self.orchestrator is None or not conversation.execution_ref:
            return RunStatus.UNKNOWN
        return self.orchestrator.get_run_status(conversation.execution_ref)

    async def _stop(self, conversation: Conversation) -> None:
        if self.orchestrator is None or not conversation.execution_ref:
            return
        await self.orchestrator.stop_run(conversation.execution_ref)
