"""Persistence for :class:`~kbsync.sources.models.SourceRecord` rows."""

from __future__ import annotations

import sqlite3
from typing import Protocol, Sequence, runtime_checkable

from kbsync.core.database import SqliteDatabase
from kbsync.core.logging import Logger, get_logger
from kbsync.tenancy import TenantScope

from .crawl_settings import DEFAULT_MAX_PAGES
from .errors import SourceExistsError, SourceRepositoryError
from .models import SourceRecord

__all__ = [
    "SourceRepository",
    "SqliteSourceRepository",
]

_COLUMNS = (
    "organization_id",
    "chatbot_config_id",
    "id",
    "url",
    "name",
    "description",
    "source_type",
    "is_active",
    "status",
    "crawl_settings",
    "last_synced_at",
    "page_count",
    "error_message",
    "failure_count",
    "created_at",
    "updated_at",
)
_KEY_COLUMNS = ("organization_id", "chatbot_config_id", "id")


@runtime_checkable
class SourceRepository(Protocol):
    """Read/write boundary for source records.

    Writes must be visible to the next read; implementations never cache
    records between calls.
    """

    def get(self, scope: TenantScope, source_id: str) -> SourceRecord | None:
        """Return the record or ``None`` when the scope has no such id."""

    def list(
        self,
        scope: TenantScope,
        *,
        active_only: bool = False,
    ) -> Sequence[SourceRecord]:
        """Return the scope's records ordered by creation time."""

    def insert(self, record: SourceRecord) -> None:
        """Persist a new record; raises if the id already exists."""

    def save(self, record: SourceRecord) -> None:
        """Persist ``record`` replacing any stored version."""

    def delete(self, scope: TenantScope, source_id: str) -> bool:
        """Remove the record returning ``True`` when a row was deleted."""


class SqliteSourceRepository(SourceRepository):
    """Store source records in the ``knowledge_sources`` table."""

    def __init__(
        self,
        database: SqliteDatabase,
        *,
        default_max_pages: int = DEFAULT_MAX_PAGES,
        logger: Logger | None = None,
    ) -> None:
        self._database = database
        self._default_max_pages = default_max_pages
        self._logger = logger or get_logger(
            __name__,
            component="source-repository",
        )

    def get(self, scope: TenantScope, source_id: str) -> SourceRecord | None:
        try:
            with self._database.connect() as connection:
                row = connection.execute(
                    (
                        "SELECT * FROM knowledge_sources WHERE "
                        "organization_id = ? AND chatbot_config_id = ? "
                        "AND id = ?"
                    ),
                    (
                        scope.organization_id,
                        scope.chatbot_config_id,
                        source_id,
                    ),
                ).fetchone()
        except sqlite3.Error as exc:
            raise self._translate("get", scope, exc) from exc
        if row is None:
            return None
        return self._to_record(row)

    def list(
        self,
        scope: TenantScope,
        *,
        active_only: bool = False,
    ) -> Sequence[SourceRecord]:
        query = (
            "SELECT * FROM knowledge_sources WHERE "
            "organization_id = ? AND chatbot_config_id = ?"
        )
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at, id"
        try:
            with self._database.connect() as connection:
                rows = connection.execute(
                    query,
                    (scope.organization_id, scope.chatbot_config_id),
                ).fetchall()
        except sqlite3.Error as exc:
            raise self._translate("list", scope, exc) from exc
        return tuple(self._to_record(row) for row in rows)

    def insert(self, record: SourceRecord) -> None:
        row = record.to_row()
        placeholders = ", ".join("?" for _ in _COLUMNS)
        try:
            with self._database.connect() as connection:
                connection.execute(
                    (
                        f"INSERT INTO knowledge_sources ({', '.join(_COLUMNS)}) "  # noqa: S608 - fixed columns
                        f"VALUES ({placeholders})"
                    ),
                    tuple(row[column] for column in _COLUMNS),
                )
        except sqlite3.IntegrityError as exc:
            raise SourceExistsError(
                f"Source {record.id!r} already exists in {record.scope}."
            ) from exc
        except sqlite3.Error as exc:
            raise self._translate("insert", record.scope, exc) from exc

    def save(self, record: SourceRecord) -> None:
        row = record.to_row()
        placeholders = ", ".join("?" for _ in _COLUMNS)
        updates = ", ".join(
            f"{column} = excluded.{column}"
            for column in _COLUMNS
            if column not in _KEY_COLUMNS and column != "created_at"
        )
        try:
            with self._database.connect() as connection:
                connection.execute(
                    (
                        f"INSERT INTO knowledge_sources ({', '.join(_COLUMNS)}) "  # noqa: S608 - fixed columns
                        f"VALUES ({placeholders}) "
                        f"ON CONFLICT ({', '.join(_KEY_COLUMNS)}) "
                        f"DO UPDATE SET {updates}"
                    ),
                    tuple(row[column] for column in _COLUMNS),
                )
        except sqlite3.Error as exc:
            raise self._translate("save", record.scope, exc) from exc
        self._logger.debug(
            "source-saved",
            source_id=record.id,
            status=record.status.value,
            **record.scope.as_filter(),
        )

    def delete(self, scope: TenantScope, source_id: str) -> bool:
        try:
            with self._database.connect() as connection:
                cursor = connection.execute(
                    (
                        "DELETE FROM knowledge_sources WHERE "
                        "organization_id = ? AND chatbot_config_id = ? "
                        "AND id = ?"
                    ),
                    (
                        scope.organization_id,
                        scope.chatbot_config_id,
                        source_id,
                    ),
                )
        except sqlite3.Error as exc:
            raise self._translate("delete", scope, exc) from exc
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _to_record(self, row: sqlite3.Row) -> SourceRecord:
        payload = {key: row[key] for key in row.keys()}
        record = SourceRecord.from_row(
            payload,
            default_max_pages=self._default_max_pages,
        )
        if payload.get("status") != record.status.value:
            self._logger.warning(
                "source-status-coerced",
                source_id=record.id,
                stored=payload.get("status"),
                status=record.status.value,
            )
        return record

    def _translate(
        self,
        action: str,
        scope: TenantScope,
        exc: sqlite3.Error,
    ) -> SourceRepositoryError:
        self._logger.error(
            "source-repository-failed",
            action=action,
            error=str(exc),
            **scope.as_filter(),
        )
        return SourceRepositoryError(f"Source {action} failed for {scope}.")
