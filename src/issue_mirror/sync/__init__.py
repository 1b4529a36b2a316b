"""Sync engine: mirrors a repository's remote issues into the local store."""

from .orchestrator import SyncOrchestrator, SyncResult, SyncState
from .policy import SyncMode, SyncPlan, build_sync_plan, can_stop_early, find_sync_cursor
from .queue import InProcessSyncQueue, SyncQueue
from .writer import IssuePersister, IssueUpsertWriter, PersistResult

__all__ = [
    "InProcessSyncQueue",
    "IssuePersister",
    "IssueUpsertWriter",
    "PersistResult",
    "SyncMode",
    "SyncOrchestrator",
    "SyncPlan",
    "SyncQueue",
    "SyncResult",
    "SyncState",
    "build_sync_plan",
    "can_stop_early",
    "find_sync_cursor",
]
