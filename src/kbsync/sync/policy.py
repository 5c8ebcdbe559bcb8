"""Classify synchronization failures and decide the resulting status."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Sequence

from kbsync.crawl.errors import CrawlFailedError
from kbsync.embeddings.errors import (
    EmbeddingProviderConfigurationError,
    EmbeddingProviderError,
    EmbeddingProviderRetryableError,
)
from kbsync.sources.models import SourceRecord, SourceStatus
from kbsync.vectors.errors import (
    InvalidChunkError,
    StoreAuthorizationError,
    StoreUnavailableError,
    VectorStoreError,
)

from .errors import SyncCancelledError

__all__ = [
    "DEFAULT_MAX_RETRYABLE_FAILURES",
    "FailureDecision",
    "FailureDisposition",
    "IngestionErrorPolicy",
]

DEFAULT_MAX_RETRYABLE_FAILURES = 3


class FailureDisposition(StrEnum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class FailureDecision:
    """Outcome of classifying one failure against a source record.

    ``status`` is the status the record should end in. ``error_message``
    is only set for terminal decisions and is always a sanitized summary.
    """

    disposition: FailureDisposition
    status: SourceStatus
    failure_count: int
    error_message: str | None = None
    escalated: bool = False

    @property
    def retryable(self) -> bool:
        return self.disposition is FailureDisposition.RETRYABLE


# Checked in order; the first matching row wins, so subclasses precede
# their bases.
_CLASSIFICATION: Sequence[
    tuple[tuple[type[BaseException], ...], FailureDisposition]
] = (
    ((SyncCancelledError,), FailureDisposition.CANCELLED),
    (
        (StoreAuthorizationError, InvalidChunkError),
        FailureDisposition.TERMINAL,
    ),
    ((StoreUnavailableError,), FailureDisposition.RETRYABLE),
    ((EmbeddingProviderConfigurationError,), FailureDisposition.TERMINAL),
    ((EmbeddingProviderRetryableError,), FailureDisposition.RETRYABLE),
    ((TimeoutError, ConnectionError), FailureDisposition.RETRYABLE),
)

_MESSAGES: Sequence[tuple[type[BaseException], str]] = (
    (
        InvalidChunkError,
        "Crawled content could not be prepared for the knowledge base.",
    ),
    (
        StoreAuthorizationError,
        "The knowledge store rejected the update; check its credentials.",
    ),
    (StoreUnavailableError, "The knowledge store could not be reached."),
    (VectorStoreError, "The knowledge store could not be updated."),
    (
        EmbeddingProviderConfigurationError,
        "The embedding service is not configured correctly.",
    ),
    (
        EmbeddingProviderRetryableError,
        "The embedding service is unavailable.",
    ),
    (EmbeddingProviderError, "Embedding generation failed."),
    (TimeoutError, "The synchronization timed out."),
    (ConnectionError, "A network connection failed."),
)

_FALLBACK_MESSAGE = "Synchronization failed unexpectedly."


class IngestionErrorPolicy:
    """Decide how a failed cycle leaves its source record.

    Retryable failures keep the pre-failure status so a scheduled retry
    can resume, and bump ``failure_count``. Once the count reaches
    ``max_retryable_failures`` the failure is escalated to terminal.
    Terminal failures move the record to error with a sanitized message.
    Cancellations change nothing.
    """

    def __init__(
        self,
        *,
        max_retryable_failures: int = DEFAULT_MAX_RETRYABLE_FAILURES,
    ) -> None:
        if max_retryable_failures < 1:
            raise ValueError("max_retryable_failures must be >= 1")
        self.max_retryable_failures = max_retryable_failures

    def classify(self, error: BaseException) -> FailureDisposition:
        for types, disposition in _CLASSIFICATION:
            if isinstance(error, types):
                return disposition
        return FailureDisposition.TERMINAL

    def summarize(self, error: BaseException) -> str:
        """Return the operator-visible message for ``error``.

        Raw error text is never used; it may carry store codes or
        credentials.
        """

        if isinstance(error, CrawlFailedError):
            return error.summary
        for error_type, message in _MESSAGES:
            if isinstance(error, error_type):
                return message
        return _FALLBACK_MESSAGE

    def decide(
        self,
        record: SourceRecord,
        error: BaseException,
    ) -> FailureDecision:
        disposition = self.classify(error)
        if disposition is FailureDisposition.CANCELLED:
            return FailureDecision(
                disposition=disposition,
                status=record.status,
                failure_count=record.failure_count,
            )

        failure_count = record.failure_count + 1
        if disposition is FailureDisposition.RETRYABLE:
            if failure_count < self.max_retryable_failures:
                return FailureDecision(
                    disposition=disposition,
                    status=record.status,
                    failure_count=failure_count,
                )
            return FailureDecision(
                disposition=FailureDisposition.TERMINAL,
                status=SourceStatus.ERROR,
                failure_count=failure_count,
                error_message=(
                    f"{self.summarize(error)} Gave up after "
                    f"{failure_count} attempts."
                ),
                escalated=True,
            )

        return FailureDecision(
            disposition=disposition,
            status=SourceStatus.ERROR,
            failure_count=failure_count,
            error_message=self.summarize(error),
        )

    def apply(
        self,
        record: SourceRecord,
        decision: FailureDecision,
        *,
        at: datetime,
    ) -> SourceRecord:
        """Return ``record`` updated per ``decision``.

        A terminal decision for a record that has not started crawling
        (still pending) only bumps the counter; the lifecycle only allows
        the error state from an in-flight cycle.
        """

        if decision.disposition is FailureDisposition.CANCELLED:
            return record
        if (
            decision.status is SourceStatus.ERROR
            and record.status.can_transition_to(SourceStatus.ERROR)
        ):
            return record.fail(
                decision.error_message or _FALLBACK_MESSAGE,
                at=at,
                failure_count=decision.failure_count,
            )
        return record.with_failure_count(decision.failure_count, at=at)
