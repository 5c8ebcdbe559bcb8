"""Structured tracking of store, embedding, and crawl failures."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping, Protocol, Sequence
from typing import runtime_checkable

from kbsync.core.logging import Logger, get_logger
from kbsync.tenancy import TenantScope

__all__ = [
    "ErrorSink",
    "ErrorTracker",
    "JsonLinesErrorSink",
    "LoggingErrorSink",
    "SyncOperation",
    "TrackedError",
]


class SyncOperation(StrEnum):
    """Operation that was running when a failure was tracked."""

    CRAWL = "crawl"
    COUNT = "count"
    DELETE = "delete"
    EMBED = "embed"
    UPSERT = "upsert"
    PERSIST = "persist"


@dataclass(frozen=True, slots=True)
class TrackedError:
    """One failure, ready to hand to sinks."""

    operation: SyncOperation
    scope: TenantScope
    error_type: str
    message: str
    occurred_at: datetime
    source_id: str | None = None
    source_url: str | None = None
    context: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "context",
            MappingProxyType(dict(self.context)),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "operation": self.operation.value,
            **self.scope.as_filter(),
            "source_id": self.source_id,
            "source_url": self.source_url,
            "error_type": self.error_type,
            "message": self.message,
            "occurred_at": self.occurred_at.isoformat(),
            "context": dict(self.context),
        }


@runtime_checkable
class ErrorSink(Protocol):
    """Destination for tracked errors."""

    def record(self, error: TrackedError) -> None:
        """Persist or forward ``error``."""


class LoggingErrorSink(ErrorSink):
    """Emit tracked errors as structured log events."""

    def __init__(self, *, logger: Logger | None = None) -> None:
        self._logger = logger or get_logger(__name__, component="tracking")

    def record(self, error: TrackedError) -> None:
        payload = error.to_mapping()
        payload.pop("occurred_at")
        self._logger.error("sync-error-tracked", **payload)


class JsonLinesErrorSink(ErrorSink):
    """Append tracked errors to a JSON lines file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def record(self, error: TrackedError) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(error.to_mapping(), sort_keys=True, default=str)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def read(self) -> list[dict[str, Any]]:
        """Return every recorded entry, oldest first."""

        if not self.path.exists():
            return []
        entries: list[dict[str, Any]] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                if line.strip():
                    entries.append(json.loads(line))
        return entries


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


class ErrorTracker:
    """Fan failures out to sinks without ever raising.

    A sink that fails is logged and skipped; tracking must not turn one
    failure into another.
    """

    def __init__(
        self,
        sinks: Sequence[ErrorSink] | None = None,
        *,
        now: Callable[[], datetime] | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._logger = logger or get_logger(__name__, component="tracking")
        if sinks is None:
            sinks = (LoggingErrorSink(logger=self._logger),)
        self._sinks = tuple(sinks)
        self._now = now or _default_now

    def track(
        self,
        operation: SyncOperation,
        error: BaseException,
        *,
        scope: TenantScope,
        source_id: str | None = None,
        source_url: str | None = None,
        **context: Any,
    ) -> TrackedError:
        event = TrackedError(
            operation=SyncOperation(operation),
            scope=scope,
            error_type=error.__class__.__name__,
            message=str(error) or error.__class__.__name__,
            occurred_at=self._now(),
            source_id=source_id,
            source_url=source_url,
            context=context,
        )
        for sink in self._sinks:
            try:
                sink.record(event)
            except Exception as exc:
                self._logger.warning(
                    "error-tracking-failed",
                    sink=sink.__class__.__name__,
                    operation=event.operation.value,
                    error=str(exc),
                )
        return event

    def track_count_error(
        self,
        error: BaseException,
        *,
        scope: TenantScope,
        **context: Any,
    ) -> TrackedError:
        return self.track(SyncOperation.COUNT, error, scope=scope, **context)

    def track_delete_error(
        self,
        error: BaseException,
        *,
        scope: TenantScope,
        **context: Any,
    ) -> TrackedError:
        return self.track(SyncOperation.DELETE, error, scope=scope, **context)

    def track_embedding_error(
        self,
        error: BaseException,
        *,
        scope: TenantScope,
        **context: Any,
    ) -> TrackedError:
        return self.track(SyncOperation.EMBED, error, scope=scope, **context)

    def track_upsert_error(
        self,
        error: BaseException,
        *,
        scope: TenantScope,
        **context: Any,
    ) -> TrackedError:
        return self.track(SyncOperation.UPSERT, error, scope=scope, **context)

    def track_crawl_error(
        self,
        error: BaseException,
        *,
        scope: TenantScope,
        **context: Any,
    ) -> TrackedError:
        return self.track(SyncOperation.CRAWL, error, scope=scope, **context)
