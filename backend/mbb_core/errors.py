from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for failures raised while syncing queued game actions."""


class RetryableSyncError(SyncError):
    """Network or timeout failure; the action is retried with backoff."""


class TerminalSyncError(SyncError):
    """The remote store rejected the action; it needs user intervention."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(TerminalSyncError):
    """The targeted remote game no longer exists."""


class QueueCapacityError(SyncError):
    """Local storage is exhausted and no queued entry could be evicted."""


class QueueCorruptionError(SyncError):
    """The persisted queue could not be parsed."""


class StorageQuotaExceeded(SyncError):
    """A storage write would exceed the configured quota."""


class InvalidTransitionError(ValueError):
    """An action status change that the queue does not allow."""
