"""Synchronization engine: coordinator, error policy, tracking, locks."""

from __future__ import annotations

from .coordinator import (
    SyncBatchSummary,
    SyncResult,
    SynchronizationCoordinator,
)
from .deadline import SyncDeadline
from .errors import (
    SyncAlreadyInProgressError,
    SyncCancelledError,
    SyncError,
    SyncFailedError,
    SyncLockError,
)
from .locks import FileLock, SourceLockManager
from .policy import FailureDecision, FailureDisposition, IngestionErrorPolicy
from .tracking import (
    ErrorSink,
    ErrorTracker,
    JsonLinesErrorSink,
    LoggingErrorSink,
    SyncOperation,
    TrackedError,
)

__all__ = [
    "ErrorSink",
    "ErrorTracker",
    "FailureDecision",
    "FailureDisposition",
    "FileLock",
    "IngestionErrorPolicy",
    "JsonLinesErrorSink",
    "LoggingErrorSink",
    "SourceLockManager",
    "SyncAlreadyInProgressError",
    "SyncBatchSummary",
    "SyncCancelledError",
    "SyncDeadline",
    "SyncError",
    "SyncFailedError",
    "SyncLockError",
    "SyncOperation",
    "SyncResult",
    "SynchronizationCoordinator",
    "TrackedError",
]
