"""Service layer for conversation storage, dispatch and supervision."""

from .channel_creator import ChannelCreator
from .conversation_service import ConversationService
from .database import DatabaseService, init_db_service
from .dispatcher import Dispatcher
from .orchestrator import ExecutionOrchestrator, ProcessOrchestrator, RunStatus
from .reconciliation_service import ReconciliationService, SweepResult

__all__ = [
    "ChannelCreator",
    "ConversationService",
    "DatabaseService",
    "Dispatcher",
    "ExecutionOrchestrator",
    "ProcessOrchestrator",
    "ReconciliationService",
    "RunStatus",
    "SweepResult",
    "init_db_service",
]
