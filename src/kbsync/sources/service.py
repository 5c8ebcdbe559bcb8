"""Operator actions on knowledge sources."""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Sequence
from urllib.parse import urlsplit

from kbsync.core.logging import Logger, get_logger
from kbsync.sync.errors import SyncAlreadyInProgressError
from kbsync.sync.locks import SourceLockManager
from kbsync.sync.tracking import ErrorTracker
from kbsync.tenancy import TenantScope
from kbsync.vectors.errors import VectorStoreError
from kbsync.vectors.gateway import VectorStoreGateway
from kbsync.vectors.models import VectorFilter

from .crawl_settings import DEFAULT_MAX_PAGES, CrawlSettingsPolicy
from .errors import (
    SourceActiveError,
    SourceInactiveError,
    SourceNotFoundError,
)
from .models import SourceRecord, SourceStatus, SourceType, is_due_for_resync
from .repository import SourceRepository

__all__ = ["SourceService"]


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


def _validate_url(url: str, source_type: SourceType) -> str:
    value = url.strip()
    if not value:
        raise ValueError("url cannot be empty")
    if source_type is SourceType.WEBSITE_CRAWLED:
        parts = urlsplit(value)
        if parts.scheme not in {"http", "https"} or not parts.hostname:
            raise ValueError(f"Website sources need an http(s) URL: {url!r}")
    return value


class SourceService:
    """Register, toggle, reschedule, and remove sources.

    Actions touching the vector store or a source's status take the same
    per-source lock as the synchronization coordinator, so they never race
    a running cycle.
    """

    def __init__(
        self,
        *,
        repository: SourceRepository,
        store: VectorStoreGateway,
        locks: SourceLockManager | None = None,
        tracker: ErrorTracker | None = None,
        default_max_pages: int = DEFAULT_MAX_PAGES,
        now: Callable[[], datetime] | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._repository = repository
        self._store = store
        self._logger = logger or get_logger(__name__, component="sources")
        self._locks = locks or SourceLockManager(logger=self._logger)
        self._tracker = tracker or ErrorTracker(logger=self._logger)
        self._default_max_pages = default_max_pages
        self._now = now or _default_now

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def find(self, scope: TenantScope, source_id: str) -> SourceRecord | None:
        return self._repository.get(scope, source_id)

    def get(self, scope: TenantScope, source_id: str) -> SourceRecord:
        """Return the source or raise :class:`SourceNotFoundError`."""

        record = self._repository.get(scope, source_id)
        if record is None:
            raise SourceNotFoundError(
                f"Source {source_id!r} not found in {scope}."
            )
        return record

    def list(
        self,
        scope: TenantScope,
        *,
        active_only: bool = False,
    ) -> Sequence[SourceRecord]:
        return self._repository.list(scope, active_only=active_only)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register(
        self,
        scope: TenantScope,
        *,
        url: str,
        name: str,
        source_type: SourceType = SourceType.WEBSITE_CRAWLED,
        description: str | None = None,
        crawl_settings: Any = None,
        source_id: str | None = None,
    ) -> SourceRecord:
        """Create a pending source.

        ``crawl_settings`` is the raw operator payload; malformed fields
        fall back to defaults instead of rejecting the source.

        Raises:
            ValueError: If ``url`` is unusable for ``source_type``.
            SourceExistsError: If ``source_id`` is already registered.
        """

        now = self._now()
        record = SourceRecord(
            scope=scope,
            id=source_id or uuid.uuid4().hex,
            url=_validate_url(url, source_type),
            name=name,
            source_type=source_type,
            description=description,
            crawl_settings=CrawlSettingsPolicy.from_raw(
                crawl_settings,
                default_max_pages=self._default_max_pages,
                logger=self._logger,
            ),
            created_at=now,
            updated_at=now,
        )
        self._repository.insert(record)
        self._logger.info(
            "source-registered",
            source_id=record.id,
            url=record.url,
            source_type=record.source_type.value,
            **scope.as_filter(),
        )
        return record

    def update_crawl_settings(
        self,
        scope: TenantScope,
        source_id: str,
        crawl_settings: Any,
    ) -> SourceRecord:
        with self._locks.hold(scope, source_id, action="update-settings"):
            record = self.get(scope, source_id)
            updated = replace(
                record,
                crawl_settings=CrawlSettingsPolicy.from_raw(
                    crawl_settings,
                    default_max_pages=self._default_max_pages,
                    logger=self._logger,
                ),
                updated_at=self._now(),
            )
            self._repository.save(updated)
        return updated

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------
    def deactivate(self, scope: TenantScope, source_id: str) -> SourceRecord:
        """Flip ``is_active`` off; repeated calls are no-ops.

        Raises:
            SyncAlreadyInProgressError: If a cycle is running right now.
        """

        return self._set_active(scope, source_id, False)

    def activate(self, scope: TenantScope, source_id: str) -> SourceRecord:
        return self._set_active(scope, source_id, True)

    def _set_active(
        self,
        scope: TenantScope,
        source_id: str,
        is_active: bool,
    ) -> SourceRecord:
        action = "activate" if is_active else "deactivate"
        with self._locks.hold(scope, source_id, action=action):
            record = self.get(scope, source_id)
            if record.is_active is is_active:
                return record
            updated = record.with_active(is_active, at=self._now())
            self._repository.save(updated)
        self._logger.info(
            "source-activated" if is_active else "source-deactivated",
            source_id=source_id,
            **scope.as_filter(),
        )
        return updated

    # ------------------------------------------------------------------
    # Resync scheduling
    # ------------------------------------------------------------------
    def request_resync(
        self,
        scope: TenantScope,
        source_id: str,
    ) -> SourceRecord:
        """Queue the source for the next cycle by moving it to pending.

        Pending sources are returned unchanged. A source left crawling or
        vectorizing by an interrupted cycle is reset.

        Raises:
            SourceNotFoundError: If the scope has no such source.
            SourceInactiveError: If the source is deactivated.
            SyncAlreadyInProgressError: If a cycle is running right now.
        """

        with self._locks.hold(scope, source_id, action="request-resync"):
            record = self.get(scope, source_id)
            if not record.is_active:
                raise SourceInactiveError(
                    f"Source {source_id!r} in {scope} is inactive."
                )
            if record.status is SourceStatus.PENDING:
                return record
            updated = record.transition(SourceStatus.PENDING, at=self._now())
            self._repository.save(updated)
        self._logger.info(
            "source-resync-requested",
            source_id=source_id,
            previous_status=record.status.value,
            **scope.as_filter(),
        )
        return updated

    def mark_due(self, scope: TenantScope) -> list[str]:
        """Move completed sources whose crawl frequency elapsed to pending.

        Sources locked by a running cycle, in this process or another, are
        left alone. Each record is re-read under its lock before it is
        changed.
        """

        now = self._now()
        moved: list[str] = []
        for listed in self._repository.list(scope, active_only=True):
            if not is_due_for_resync(listed, now=now):
                continue
            try:
                with self._locks.hold(scope, listed.id, action="mark-due"):
                    record = self._repository.get(scope, listed.id)
                    if record is None or not is_due_for_resync(
                        record,
                        now=now,
                    ):
                        continue
                    self._repository.save(
                        record.transition(SourceStatus.PENDING, at=now)
                    )
            except SyncAlreadyInProgressError:
                continue
            moved.append(record.id)
        if moved:
            self._logger.info(
                "sources-marked-due",
                count=len(moved),
                **scope.as_filter(),
            )
        return moved

    # ------------------------------------------------------------------
    # Vector cleanup and removal
    # ------------------------------------------------------------------
    def purge_vectors(self, scope: TenantScope, source_id: str) -> int:
        """Delete every stored chunk under the source's URL.

        Returns the number of chunks deleted. The delete call is skipped
        when nothing matches.
        """

        with self._locks.hold(scope, source_id, action="purge"):
            record = self.get(scope, source_id)
            deleted = self._purge(record)
            if record.page_count:
                self._repository.save(
                    replace(record, page_count=0, updated_at=self._now())
                )
        return deleted

    def remove(
        self,
        scope: TenantScope,
        source_id: str,
        *,
        purge: bool = True,
    ) -> int:
        """Delete an inactive source, purging its vectors first.

        Returns the number of chunks deleted.

        Raises:
            SourceActiveError: If the source has not been deactivated.
        """

        with self._locks.hold(scope, source_id, action="remove"):
            record = self.get(scope, source_id)
            if record.is_active:
                raise SourceActiveError(
                    f"Deactivate source {source_id!r} before removing it."
                )
            deleted = self._purge(record) if purge else 0
            self._repository.delete(scope, source_id)
        self._logger.info(
            "source-removed",
            source_id=source_id,
            purged=deleted,
            **scope.as_filter(),
        )
        return deleted

    def _purge(self, record: SourceRecord) -> int:
        selection = VectorFilter(
            scope=record.scope,
            source_type=record.source_type,
            source_url_prefix=record.url,
        )
        context = {"source_id": record.id, "source_url": record.url}
        try:
            existing = self._store.count(selection)
        except VectorStoreError as exc:
            self._tracker.track_count_error(exc, scope=record.scope, **context)
            raise
        if existing == 0:
            self._logger.info(
                "source-purge-skipped",
                source_id=record.id,
                **record.scope.as_filter(),
            )
            return 0
        try:
            deleted = self._store.delete_by_filter(selection)
        except VectorStoreError as exc:
            self._tracker.track_delete_error(
                exc,
                scope=record.scope,
                **context,
            )
            raise
        self._logger.info(
            "source-purged",
            source_id=record.id,
            existing=existing,
            deleted=deleted,
            **record.scope.as_filter(),
        )
        return deleted
