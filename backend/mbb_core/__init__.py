"""Offline scoreboard sync core reused by the API and scripts."""

from .action_log import ActionLog
from .actions import ActionKind, ActionStatus, QueuedAction
from .cache import OfflineCacheTransport, ServiceWorkerChannel, is_queued_response
from .client import OfflineSyncClient
from .connectivity import ConnectivityMonitor
from .remote import RemoteGameStore, SupabaseGameStore
from .status import StatusReporter, SyncStatus
from .storage import JsonFileStorage, MemoryStorage
from .sync_engine import DrainReport, RetryPolicy, SyncEngine

__all__ = [
    "ActionKind",
    "ActionLog",
    "ActionStatus",
    "ConnectivityMonitor",
    "DrainReport",
    "JsonFileStorage",
    "MemoryStorage",
    "OfflineCacheTransport",
    "OfflineSyncClient",
    "QueuedAction",
    "RemoteGameStore",
    "RetryPolicy",
    "ServiceWorkerChannel",
    "StatusReporter",
    "SupabaseGameStore",
    "SyncEngine",
    "SyncStatus",
    "is_queued_response",
]
