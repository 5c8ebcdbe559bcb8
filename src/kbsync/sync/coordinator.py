"""Drive one source through a full resynchronization cycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Mapping

from kbsync.core.logging import Logger, get_logger
from kbsync.crawl.models import Crawler
from kbsync.embeddings.embedder import Embedder
from kbsync.sources.errors import (
    SourceError,
    SourceInactiveError,
    SourceNotFoundError,
)
from kbsync.sources.models import (
    SourceRecord,
    SourceStatus,
    is_due_for_resync,
)
from kbsync.sources.repository import SourceRepository
from kbsync.tenancy import TenantScope
from kbsync.vectors.gateway import VectorStoreGateway
from kbsync.vectors.models import VectorFilter
from kbsync.vectors.validation import validate_chunks

from .deadline import SyncDeadline
from .errors import (
    SyncAlreadyInProgressError,
    SyncCancelledError,
    SyncFailedError,
)
from .locks import SourceLockManager
from .policy import FailureDisposition, IngestionErrorPolicy
from .tracking import ErrorTracker, SyncOperation

__all__ = [
    "SyncBatchSummary",
    "SyncResult",
    "SynchronizationCoordinator",
]


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Outcome of a successful cycle."""

    scope: TenantScope
    source_id: str
    status: SourceStatus
    previous_count: int
    deleted_count: int
    upserted_count: int
    page_count: int
    delete_skipped: bool
    started_at: datetime
    finished_at: datetime

    def to_mapping(self) -> dict[str, Any]:
        return {
            **self.scope.as_filter(),
            "source_id": self.source_id,
            "status": self.status.value,
            "previous_count": self.previous_count,
            "deleted_count": self.deleted_count,
            "upserted_count": self.upserted_count,
            "page_count": self.page_count,
            "delete_skipped": self.delete_skipped,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class SyncBatchSummary:
    """Per-source outcomes of :meth:`synchronize_all`."""

    scope: TenantScope
    results: tuple[SyncResult, ...] = ()
    failures: Mapping[str, str] = field(default_factory=dict)
    skipped: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "failures",
            MappingProxyType(dict(self.failures)),
        )

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_mapping(self) -> dict[str, Any]:
        return {
            **self.scope.as_filter(),
            "results": [result.to_mapping() for result in self.results],
            "failures": dict(self.failures),
            "skipped": list(self.skipped),
        }


@dataclass(slots=True)
class _CycleProgress:
    operation: SyncOperation = SyncOperation.PERSIST
    previous_count: int = 0
    deleted_count: int = 0
    delete_skipped: bool = False


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


# Operations without an entry are tracked through ErrorTracker.track.
_OPERATION_TRACKERS: Mapping[SyncOperation, str] = {
    SyncOperation.CRAWL: "track_crawl_error",
    SyncOperation.COUNT: "track_count_error",
    SyncOperation.DELETE: "track_delete_error",
    SyncOperation.EMBED: "track_embedding_error",
    SyncOperation.UPSERT: "track_upsert_error",
}


class SynchronizationCoordinator:
    """Reconcile the vector store with a source's current content.

    One cycle walks the record through crawling and vectorizing, replaces
    the source's chunks (count, delete unless zero, embed, upsert) and
    completes it. Every store call is built from the record's scope, so
    a cycle only ever sees its own tenant's vectors. Failures are tracked,
    classified by :class:`IngestionErrorPolicy`, applied to the record and
    re-raised as :class:`SyncFailedError`.

    Example:
        >>> coordinator = SynchronizationCoordinator(
        ...     sources=repository,
        ...     store=store,
        ...     crawler=crawler,
        ...     embedder=embedder,
        ...     expected_dim=1536,
        ... )  # doctest: +SKIP
        >>> coordinator.synchronize(scope, "docs").status  # doctest: +SKIP
        <SourceStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        *,
        sources: SourceRepository,
        store: VectorStoreGateway,
        crawler: Crawler,
        embedder: Embedder,
        expected_dim: int,
        locks: SourceLockManager | None = None,
        error_policy: IngestionErrorPolicy | None = None,
        tracker: ErrorTracker | None = None,
        now: Callable[[], datetime] | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._sources = sources
        self._store = store
        self._crawler = crawler
        self._embedder = embedder
        self._expected_dim = expected_dim
        self._logger = logger or get_logger(__name__, component="sync")
        self._locks = locks or SourceLockManager(logger=self._logger)
        self._policy = error_policy or IngestionErrorPolicy()
        self._tracker = tracker or ErrorTracker(logger=self._logger)
        self._now = now or _default_now

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def synchronize(
        self,
        scope: TenantScope,
        source_id: str,
        *,
        deadline: SyncDeadline | None = None,
    ) -> SyncResult:
        """Run one resynchronization cycle for ``source_id``.

        Raises:
            SourceNotFoundError: If the scope has no such source.
            SourceInactiveError: If the source is deactivated.
            SyncAlreadyInProgressError: If a cycle for the source is
                already running; nothing is changed.
            SyncCancelledError: If ``deadline`` expired or was cancelled;
                the record keeps its in-flight status.
            SyncFailedError: For any other failure, after the record has
                been updated per the error policy.
        """

        if not isinstance(scope, TenantScope):
            raise TypeError("synchronize requires a TenantScope")
        deadline = deadline or SyncDeadline.never()
        logger = self._logger.bind(**scope.as_filter(), source_id=source_id)

        with self._locks.hold(scope, source_id, action="synchronize"):
            record = self._load_active(scope, source_id)
            return self._run_cycle(record, deadline=deadline, logger=logger)

    def synchronize_all(
        self,
        scope: TenantScope,
        *,
        due_only: bool = False,
        deadline: SyncDeadline | None = None,
    ) -> SyncBatchSummary:
        """Synchronize every active source in ``scope``.

        A failing source is recorded in the summary and the batch moves on.
        Sources locked by another caller are reported as skipped. When
        ``due_only`` is set, completed sources are only included once
        their crawl frequency has elapsed and errored sources are left for
        an operator. Cancellation stops the batch; the sources not yet
        visited are reported as skipped.
        """

        deadline = deadline or SyncDeadline.never()
        records = self._sources.list(scope, active_only=True)
        if due_only:
            now = self._now()
            records = [
                record
                for record in records
                if record.status is SourceStatus.PENDING
                or record.status.in_progress
                or is_due_for_resync(record, now=now)
            ]

        results: list[SyncResult] = []
        failures: dict[str, str] = {}
        skipped: list[str] = []
        for index, record in enumerate(records):
            try:
                results.append(
                    self.synchronize(scope, record.id, deadline=deadline)
                )
            except SyncAlreadyInProgressError:
                skipped.append(record.id)
            except SyncCancelledError as exc:
                failures[record.id] = str(exc)
                skipped.extend(item.id for item in records[index + 1 :])
                break
            except SyncFailedError as exc:
                failures[record.id] = (
                    exc.decision.error_message or "retryable failure"
                )
            except SourceError as exc:
                failures[record.id] = str(exc)

        summary = SyncBatchSummary(
            scope=scope,
            results=tuple(results),
            failures=failures,
            skipped=tuple(skipped),
        )
        self._logger.info(
            "sync-batch-complete",
            **scope.as_filter(),
            synchronized=len(results),
            failed=len(failures),
            skipped=len(skipped),
        )
        return summary

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    def _load_active(self, scope: TenantScope, source_id: str) -> SourceRecord:
        record = self._sources.get(scope, source_id)
        if record is None:
            raise SourceNotFoundError(
                f"Source {source_id!r} not found in {scope}."
            )
        if not record.is_active:
            raise SourceInactiveError(
                f"Source {source_id!r} in {scope} is inactive."
            )
        return record

    def _run_cycle(
        self,
        record: SourceRecord,
        *,
        deadline: SyncDeadline,
        logger: Logger,
    ) -> SyncResult:
        started_at = self._now()
        progress = _CycleProgress()
        logger.info(
            "sync-start",
            url=record.url,
            status=record.status.value,
            failure_count=record.failure_count,
        )

        try:
            deadline.check("crawl")
            record = self._begin(record)

            progress.operation = SyncOperation.CRAWL
            items = self._crawler.crawl(
                record.url,
                record.crawl_settings,
                timeout=deadline.remaining(),
            )

            deadline.check("vectorize")
            progress.operation = SyncOperation.PERSIST
            record = self._persist(
                record.transition(SourceStatus.VECTORIZING, at=self._now())
            )

            selection = VectorFilter(
                scope=record.scope,
                source_type=record.source_type,
                source_url_prefix=record.url,
            )
            deadline.check("count")
            progress.operation = SyncOperation.COUNT
            progress.previous_count = self._store.count(selection)
            logger.info("sync-count", existing=progress.previous_count)

            if progress.previous_count == 0:
                progress.delete_skipped = True
                logger.info("sync-delete-skipped")
            else:
                deadline.check("delete")
                progress.operation = SyncOperation.DELETE
                progress.deleted_count = self._store.delete_by_filter(
                    selection
                )

            deadline.check("embed")
            progress.operation = SyncOperation.EMBED
            chunks = self._embedder.embed(
                items,
                scope=record.scope,
                source_type=record.source_type,
                timeout=deadline.remaining(),
            )

            progress.operation = SyncOperation.UPSERT
            validate_chunks(
                chunks,
                scope=record.scope,
                expected_dim=self._expected_dim,
                logger=logger,
            )
            deadline.check("upsert")
            self._store.upsert(record.scope, chunks)

            progress.operation = SyncOperation.PERSIST
            record = self._persist(
                record.complete(page_count=len(items), at=self._now())
            )
        except Exception as exc:
            error: Exception = exc
            if not isinstance(exc, SyncCancelledError):
                # A collaborator giving up at the deadline is a cancellation.
                interrupted = deadline.interruption(progress.operation.value)
                if interrupted is not None:
                    interrupted.__cause__ = exc
                    error = interrupted
            self._fail(record, error, progress=progress, logger=logger)
            raise  # pragma: no cover - _fail always raises

        result = SyncResult(
            scope=record.scope,
            source_id=record.id,
            status=record.status,
            previous_count=progress.previous_count,
            deleted_count=progress.deleted_count,
            upserted_count=len(chunks),
            page_count=record.page_count,
            delete_skipped=progress.delete_skipped,
            started_at=started_at,
            finished_at=self._now(),
        )
        logger.info(
            "sync-complete",
            previous_count=result.previous_count,
            deleted=result.deleted_count,
            upserted=result.upserted_count,
            page_count=result.page_count,
        )
        return result

    def _begin(self, record: SourceRecord) -> SourceRecord:
        at = self._now()
        if record.status is not SourceStatus.PENDING:
            record = record.transition(SourceStatus.PENDING, at=at)
        return self._persist(record.transition(SourceStatus.CRAWLING, at=at))

    def _persist(self, record: SourceRecord) -> SourceRecord:
        self._sources.save(record)
        return record

    def _track(
        self,
        operation: SyncOperation,
        error: Exception,
        *,
        scope: TenantScope,
        **context: Any,
    ) -> None:
        name = _OPERATION_TRACKERS.get(operation)
        if name is None:
            self._tracker.track(operation, error, scope=scope, **context)
        else:
            getattr(self._tracker, name)(error, scope=scope, **context)

    def _fail(
        self,
        record: SourceRecord,
        error: Exception,
        *,
        progress: _CycleProgress,
        logger: Logger,
    ) -> None:
        decision = self._policy.decide(record, error)
        if decision.disposition is FailureDisposition.CANCELLED:
            logger.warning(
                "sync-cancelled",
                operation=progress.operation.value,
                status=record.status.value,
                error=str(error),
            )
            raise error

        self._track(
            progress.operation,
            error,
            scope=record.scope,
            source_id=record.id,
            source_url=record.url,
            status=record.status.value,
        )
        updated = self._policy.apply(record, decision, at=self._now())
        if updated is not record:
            try:
                self._persist(updated)
            except SourceError as persist_exc:
                # The original failure is what the caller needs to see.
                logger.error(
                    "sync-status-persist-failed",
                    status=updated.status.value,
                    error=str(persist_exc),
                )

        logger.warning(
            "sync-failed",
            operation=progress.operation.value,
            disposition=decision.disposition.value,
            status=updated.status.value,
            failure_count=decision.failure_count,
            escalated=decision.escalated,
            error_type=error.__class__.__name__,
        )
        raise SyncFailedError(
            source_id=record.id,
            decision=decision,
            cause=error,
        ) from error
