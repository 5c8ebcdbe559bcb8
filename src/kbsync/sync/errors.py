"""Errors raised by synchronization cycles."""

from __future__ import annotations

from typing import TYPE_CHECKING

from kbsync.tenancy import TenantScope

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .policy import FailureDecision

__all__ = [
    "SyncAlreadyInProgressError",
    "SyncCancelledError",
    "SyncError",
    "SyncFailedError",
    "SyncLockError",
]


class SyncError(RuntimeError):
    """Base error for synchronization failures."""


class SyncAlreadyInProgressError(SyncError):
    """Raised when another caller holds the source's synchronization lock."""

    def __init__(self, scope: TenantScope, source_id: str) -> None:
        super().__init__(
            f"Synchronization already in progress for source {source_id!r} "
            f"in {scope}."
        )
        self.scope = scope
        self.source_id = source_id


class SyncLockError(SyncError):
    """Raised when the lock file cannot be created or removed."""


class SyncCancelledError(SyncError):
    """Raised when a cycle stops at its deadline or on cancellation."""

    def __init__(self, *, stage: str, reason: str) -> None:
        super().__init__(f"Synchronization {reason} before {stage}.")
        self.stage = stage
        self.reason = reason


class SyncFailedError(SyncError):
    """Raised when a cycle fails; carries the classified decision."""

    def __init__(
        self,
        *,
        source_id: str,
        decision: "FailureDecision",
        cause: BaseException,
    ) -> None:
        summary = decision.error_message or "retryable failure"
        super().__init__(f"Synchronization of {source_id!r} failed: {summary}")
        self.source_id = source_id
        self.decision = decision
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.decision.retryable
