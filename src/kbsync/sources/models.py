"""Lifecycle models for knowledge sources."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Mapping

from kbsync.tenancy import TenantScope

from .crawl_settings import (
    DEFAULT_MAX_PAGES,
    CrawlFrequency,
    CrawlSettingsPolicy,
)
from .errors import InvalidStatusTransitionError

__all__ = [
    "SourceRecord",
    "SourceStatus",
    "SourceType",
    "is_due_for_resync",
]


class SourceStatus(StrEnum):
    """Closed set of lifecycle states for a source."""

    PENDING = "pending"
    CRAWLING = "crawling"
    VECTORIZING = "vectorizing"
    COMPLETED = "completed"
    ERROR = "error"

    @classmethod
    def coerce(cls, value: Any) -> "SourceStatus":
        """Return the status for ``value``; unknown values become pending.

        Example:
            >>> SourceStatus.coerce("Crawling")
            <SourceStatus.CRAWLING: 'crawling'>
            >>> SourceStatus.coerce("archived")
            <SourceStatus.PENDING: 'pending'>
        """

        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.PENDING
        return cls.PENDING

    @property
    def in_progress(self) -> bool:
        return self in {SourceStatus.CRAWLING, SourceStatus.VECTORIZING}

    def can_transition_to(self, target: "SourceStatus") -> bool:
        return target in _TRANSITIONS[self]


# Crawling/Vectorizing -> Pending resumes a cycle that was interrupted by a
# retryable failure or cancellation; only the lock holder may do so.
_TRANSITIONS: Mapping[SourceStatus, frozenset[SourceStatus]] = {
    SourceStatus.PENDING: frozenset({SourceStatus.CRAWLING}),
    SourceStatus.CRAWLING: frozenset(
        {SourceStatus.VECTORIZING, SourceStatus.ERROR, SourceStatus.PENDING}
    ),
    SourceStatus.VECTORIZING: frozenset(
        {SourceStatus.COMPLETED, SourceStatus.ERROR, SourceStatus.PENDING}
    ),
    SourceStatus.COMPLETED: frozenset({SourceStatus.PENDING}),
    SourceStatus.ERROR: frozenset({SourceStatus.PENDING}),
}


class SourceType(StrEnum):
    """Kinds of content stored in the vector store."""

    FAQ = "faq"
    COMPANY_INFO = "company_info"
    PRODUCT_CATALOG = "product_catalog"
    SUPPORT_DOCS = "support_docs"
    WEBSITE_CRAWLED = "website_crawled"


_RESYNC_INTERVALS: Mapping[CrawlFrequency, timedelta | None] = {
    CrawlFrequency.MANUAL: None,
    CrawlFrequency.DAILY: timedelta(days=1),
    CrawlFrequency.WEEKLY: timedelta(days=7),
    CrawlFrequency.MONTHLY: timedelta(days=30),
}


def _parse_datetime(value: Any, *, field: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        stripped = value.strip()
        if stripped.endswith("Z"):
            stripped = f"{stripped[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(stripped)
        except ValueError as exc:
            message = f"{field} must be ISO-8601 (got {value!r})"
            raise ValueError(message) from exc
    else:
        raise TypeError(
            f"{field} must be ISO-8601 string or datetime; got {type(value)!r}"
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _normalize_string(value: Any, *, field: str) -> str:
    if value is None:
        raise ValueError(f"{field} is required")
    result = str(value).strip()
    if not result:
        raise ValueError(f"{field} cannot be empty")
    return result


def _optional_string(value: Any) -> str | None:
    if value is None:
        return None
    result = str(value).strip()
    return result or None


def _non_negative(value: Any) -> int:
    try:
        result = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(result, 0)


@dataclass(frozen=True, slots=True)
class SourceRecord:
    """Lifecycle entity for one ingestible source.

    Records are immutable; lifecycle methods return updated copies so the
    caller decides when to persist them. ``error_message`` is present
    exactly when ``status`` is :attr:`SourceStatus.ERROR` and
    ``last_synced_at`` only moves on a successful completion.
    """

    scope: TenantScope
    id: str
    url: str
    name: str
    source_type: SourceType = SourceType.WEBSITE_CRAWLED
    description: str | None = None
    is_active: bool = True
    status: SourceStatus = SourceStatus.PENDING
    crawl_settings: CrawlSettingsPolicy = field(
        default_factory=CrawlSettingsPolicy
    )
    last_synced_at: datetime | None = None
    page_count: int = 0
    error_message: str | None = None
    failure_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _normalize_string(self.id, field="id"))
        object.__setattr__(
            self,
            "url",
            _normalize_string(self.url, field="url"),
        )
        object.__setattr__(
            self,
            "name",
            _normalize_string(self.name, field="name"),
        )
        if self.page_count < 0:
            raise ValueError("page_count must be >= 0")
        if self.failure_count < 0:
            raise ValueError("failure_count must be >= 0")
        has_error = self.status is SourceStatus.ERROR
        if has_error != (self.error_message is not None):
            raise ValueError(
                "error_message must be set if and only if status is error"
            )

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_row(
        cls,
        row: Mapping[str, Any],
        *,
        default_max_pages: int = DEFAULT_MAX_PAGES,
    ) -> "SourceRecord":
        """Build a record from a stored row, tolerating legacy values.

        Unknown statuses load as pending, malformed crawl settings fall back
        to defaults, and an error status without a message gets a generic
        one so the record invariant holds.
        """

        status = SourceStatus.coerce(row.get("status"))
        error_message = _optional_string(row.get("error_message"))
        if status is SourceStatus.ERROR and error_message is None:
            error_message = "Synchronization failed."
        if status is not SourceStatus.ERROR:
            error_message = None

        try:
            source_type = SourceType(str(row.get("source_type")).strip())
        except ValueError:
            source_type = SourceType.WEBSITE_CRAWLED

        return cls(
            scope=TenantScope(
                str(row.get("organization_id") or ""),
                str(row.get("chatbot_config_id") or ""),
            ),
            id=row.get("id"),
            url=row.get("url"),
            name=row.get("name"),
            source_type=source_type,
            description=_optional_string(row.get("description")),
            is_active=bool(row.get("is_active", True)),
            status=status,
            crawl_settings=CrawlSettingsPolicy.from_raw(
                row.get("crawl_settings"),
                default_max_pages=default_max_pages,
            ),
            last_synced_at=_parse_datetime(
                row.get("last_synced_at"),
                field="last_synced_at",
            ),
            page_count=_non_negative(row.get("page_count")),
            error_message=error_message,
            failure_count=_non_negative(row.get("failure_count")),
            created_at=_parse_datetime(
                row.get("created_at"),
                field="created_at",
            ),
            updated_at=_parse_datetime(
                row.get("updated_at"),
                field="updated_at",
            ),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            **self.scope.as_filter(),
            "id": self.id,
            "url": self.url,
            "name": self.name,
            "description": self.description,
            "source_type": self.source_type.value,
            "is_active": int(self.is_active),
            "status": self.status.value,
            "crawl_settings": self.crawl_settings.to_json(),
            "last_synced_at": (
                self.last_synced_at.isoformat()
                if self.last_synced_at
                else None
            ),
            "page_count": self.page_count,
            "error_message": self.error_message,
            "failure_count": self.failure_count,
            "created_at": (
                self.created_at.isoformat() if self.created_at else None
            ),
            "updated_at": (
                self.updated_at.isoformat() if self.updated_at else None
            ),
        }

    def to_mapping(self) -> dict[str, Any]:
        """Return a JSON-friendly summary for operators."""

        return {
            "organization_id": self.scope.organization_id,
            "chatbot_config_id": self.scope.chatbot_config_id,
            "id": self.id,
            "url": self.url,
            "name": self.name,
            "description": self.description,
            "source_type": self.source_type.value,
            "is_active": self.is_active,
            "status": self.status.value,
            "crawl_settings": self.crawl_settings.to_mapping(),
            "last_synced_at": (
                self.last_synced_at.isoformat()
                if self.last_synced_at
                else None
            ),
            "page_count": self.page_count,
            "error_message": self.error_message,
            "failure_count": self.failure_count,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def transition(
        self,
        target: SourceStatus,
        *,
        at: datetime,
    ) -> "SourceRecord":
        """Return a copy moved to ``target`` (not to completed or error).

        Raises:
            InvalidStatusTransitionError: If the lifecycle forbids the move.
        """

        if target in {SourceStatus.COMPLETED, SourceStatus.ERROR}:
            raise InvalidStatusTransitionError(
                f"Use complete() or fail() to enter {target.value!r}."
            )
        self._check_transition(target)
        return replace(
            self,
            status=target,
            error_message=None,
            updated_at=at,
        )

    def complete(self, *, page_count: int, at: datetime) -> "SourceRecord":
        """Return a copy marking a successful synchronization."""

        self._check_transition(SourceStatus.COMPLETED)
        return replace(
            self,
            status=SourceStatus.COMPLETED,
            page_count=page_count,
            last_synced_at=at,
            error_message=None,
            failure_count=0,
            updated_at=at,
        )

    def fail(
        self,
        message: str,
        *,
        at: datetime,
        failure_count: int | None = None,
    ) -> "SourceRecord":
        """Return a copy in the error state carrying ``message``."""

        self._check_transition(SourceStatus.ERROR)
        return replace(
            self,
            status=SourceStatus.ERROR,
            error_message=_normalize_string(message, field="error_message"),
            failure_count=(
                self.failure_count if failure_count is None else failure_count
            ),
            updated_at=at,
        )

    def with_failure_count(
        self,
        failure_count: int,
        *,
        at: datetime,
    ) -> "SourceRecord":
        return replace(self, failure_count=failure_count, updated_at=at)

    def with_active(self, is_active: bool, *, at: datetime) -> "SourceRecord":
        return replace(self, is_active=is_active, updated_at=at)

    def _check_transition(self, target: SourceStatus) -> None:
        if not self.status.can_transition_to(target):
            raise InvalidStatusTransitionError(
                f"Source {self.id!r} cannot move from "
                f"{self.status.value!r} to {target.value!r}."
            )


def is_due_for_resync(record: SourceRecord, *, now: datetime) -> bool:
    """Return ``True`` when a completed source's crawl frequency elapsed."""

    if record.status is not SourceStatus.COMPLETED or not record.is_active:
        return False
    interval = _RESYNC_INTERVALS[record.crawl_settings.crawl_frequency]
    if interval is None:
        return False
    if record.last_synced_at is None:
        return True
    return now - record.last_synced_at >= interval
