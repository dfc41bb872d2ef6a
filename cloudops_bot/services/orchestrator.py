"""Execution orchestration: start, supervise and bound worker runs."""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from ..exceptions import ExecutionStartError
from ..orm import utcnow

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    """Observable state of a worker run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    UNKNOWN = "unknown"


class ExecutionOrchestrator(ABC):
    """Launches isolated worker runs and enforces their hard ceiling."""

    @abstractmethod
    async def start_run(self, conversation_id: str, payload: dict[str, Any]) -> str:
        """Launch a worker for a conversation and return an execution reference.

        Raises:
            ExecutionStartError: If the run could not be launched.
        """

    @abstractmethod
    async def stop_run(self, execution_ref: str) -> None:
        """Force a run to terminate. Unknown or finished runs are ignored."""

    @abstractmethod
    def get_run_status(self, execution_ref: str) -> RunStatus:
        """Current status of a run."""


@dataclass
class _Run:
    execution_ref: str
    conversation_id: str
    process: asyncio.subprocess.Process
    started_at: datetime = field(default_factory=utcnow)
    timed_out: bool = False
    ceiling_task: Optional[asyncio.Task] = None
    watch_task: Optional[asyncio.Task] = None


class ProcessOrchestrator(ExecutionOrchestrator):
    """Runs each worker as a separate OS process supervised from this event loop.

    At launch a deferred stop is scheduled for launch time + hard ceiling;
    it is cancelled as soon as the process exits on its own.

    Live runs are tracked until their process exits. After that only the
    final status is kept, for the most recent `finished_history` runs.
    """

    def __init__(
        self,
        command: list[str],
        hard_ceiling_seconds: float,
        max_concurrent_runs: int = 20,
        stop_grace_seconds: float = 10.0,
        env: Optional[dict[str, str]] = None,
        finished_history: int = 1000,
    ):
        """
        Initialize the orchestrator.

        Args:
            command: argv prefix of the worker; "--input <json payload>" is appended.
            hard_ceiling_seconds: Maximum lifetime of a run.
            max_concurrent_runs: Runs allowed at once before launches are refused.
            stop_grace_seconds: Time between SIGTERM and SIGKILL when stopping.
            env: Extra environment variables for worker processes.
            finished_history: Finished runs whose status is remembered.
        """
        if not command:
            raise ValueError("Worker command cannot be empty")
        self.command = list(command)
        self.hard_ceiling_seconds = hard_ceiling_seconds
        self.max_concurrent_runs = max_concurrent_runs
        self.stop_grace_seconds = stop_grace_seconds
        self.env = env
        self.finished_history = finished_history
        self._runs: dict[str, _Run] = {}
        self._finished: OrderedDict[str, RunStatus] = OrderedDict()

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    async def start_run(self, conversation_id: str, payload: dict[str, Any]) -> str:
        if not conversation_id or payload.get("conversationId") != conversation_id:
            raise ExecutionStartError(
                f"Malformed run input for {conversation_id!r}: {payload!r}"
            )
        if self.active_runs >= self.max_concurrent_runs:
            raise ExecutionStartError(
                f"Capacity reached ({self.max_concurrent_runs} concurrent runs)"
            )

        execution_ref = f"run-{conversation_id}-{uuid4().hex[:8]}"
        cmd = [*self.command, "--input", json.dumps(payload)]
        env = {**os.environ, **self.env} if self.env else None

        logger.debug("Launching worker: %s", " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(*cmd, env=env)
        except (OSError, ValueError) as e:
            raise ExecutionStartError(f"Failed to launch worker: {e}") from e

        run = _Run(execution_ref=execution_ref, conversation_id=conversation_id, process=process)
        run.ceiling_task = asyncio.create_task(self._enforce_ceiling(run))
        run.watch_task = asyncio.create_task(self._watch(run))
        self._runs[execution_ref] = run

        logger.info(
            "Started run %s (pid %d) for conversation %s, ceiling %.0fs",
            execution_ref,
            process.pid,
            conversation_id,
            self.hard_ceiling_seconds,
        )
        return execution_ref

    async def _watch(self, run: _Run) -> None:
        returncode = await run.process.wait()
        if run.ceiling_task and not run.ceiling_task.done():
            run.ceiling_task.cancel()

        status = self._status_of(run)
        self._runs.pop(run.execution_ref, None)
        self._finished[run.execution_ref] = status
        while len(self._finished) > self.finished_history:
            self._finished.popitem(last=False)

        logger.info(
            "Run %s exited with code %s (%s)", run.execution_ref, returncode, status.value
        )

    async def _enforce_ceiling(self, run: _Run) -> None:
        await asyncio.sleep(self.hard_ceiling_seconds)
        if run.process.returncode is not None:
            return
        logger.warning(
            "Run %s hit the hard ceiling of %.0fs, stopping it",
            run.execution_ref,
            self.hard_ceiling_seconds,
        )
        run.timed_out = True
        await self._terminate(run)

    async def stop_run(self, execution_ref: str) -> None:
        run = self._runs.get(execution_ref)
        if run is None:
            logger.debug("Ignoring stop for unknown or finished run %s", execution_ref)
            return
        if run.process.returncode is not None:
            return
        logger.info("Stopping run %s", execution_ref)
        await self._terminate(run)

    async def _terminate(self, run: _Run) -> None:
        """SIGTERM, then SIGKILL if the process outlives the grace period."""
        try:
            run.process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(run.process.wait(), timeout=self.stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Run %s ignored SIGTERM, killing it", run.execution_ref)
            try:
                run.process.kill()
            except ProcessLookupError:
                return
            await run.process.wait()

    @staticmethod
    def _status_of(run: _Run) -> RunStatus:
        returncode = run.process.returncode
        if returncode is None:
            return RunStatus.RUNNING
        if run.timed_out:
            return RunStatus.TIMED_OUT
        if returncode == 0:
            return RunStatus.SUCCEEDED
        return RunStatus.FAILED

    def get_run_status(self, execution_ref: str) -> RunStatus:
        run = self._runs.get(execution_ref)
        if run is not None:
            return self._status_of(run)
        return self._finished.get(execution_ref, RunStatus.UNKNOWN)

    async def shutdown(self) -> None:
        """Stop every run still alive and wait for their watchers."""
        runs = list(self._runs.values())
        running = [run.execution_ref for run in runs if run.process.returncode is None]
        if running:
            logger.info("Stopping %d running worker(s)", len(running))
        await asyncio.gather(*(self.stop_run(ref) for ref in running), return_exceptions=True)
        watchers = [run.watch_task for run in runs if run.watch_task is not None]
        await asyncio.gather(*watchers, return_exceptions=True)
