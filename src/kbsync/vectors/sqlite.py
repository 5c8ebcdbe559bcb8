"""SQLite implementation of :class:`VectorStoreGateway`."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import AbstractSet, Any, Callable, Sequence

from kbsync.core.database import SqliteDatabase
from kbsync.core.logging import Logger, get_logger
from kbsync.tenancy import TenantScope

from .errors import StoreAuthorizationError, StoreUnavailableError
from .gateway import VectorStoreGateway
from .models import VectorChunk, VectorFilter

__all__ = ["SqliteVectorStore"]

_AUTH_ERROR_CODES = frozenset(
    {"SQLITE_AUTH", "SQLITE_PERM", "SQLITE_READONLY"}
)


def _where(selection: VectorFilter) -> tuple[str, tuple[Any, ...]]:
    clauses = [
        "organization_id = ?",
        "chatbot_config_id = ?",
        "source_type = ?",
    ]
    params: list[Any] = [
        selection.scope.organization_id,
        selection.scope.chatbot_config_id,
        selection.source_type.value,
    ]
    if selection.source_url_prefix is not None:
        # substr keeps the match literal and case-sensitive, unlike LIKE.
        prefix = selection.source_url_prefix
        clauses.append("substr(source_url, 1, ?) = ?")
        params.extend((len(prefix), prefix))
    return " AND ".join(clauses), tuple(params)


class SqliteVectorStore(VectorStoreGateway):
    """Store chunks and their vectors in the ``knowledge_vectors`` table.

    Vectors are kept as JSON arrays; similarity search is left to the
    retrieval side of the system.
    """

    def __init__(
        self,
        database: SqliteDatabase,
        *,
        now: Callable[[], datetime] | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._database = database
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._logger = logger or get_logger(
            __name__,
            component="vector-store",
        )

    # ------------------------------------------------------------------
    # Gateway operations
    # ------------------------------------------------------------------
    def count(self, selection: VectorFilter) -> int:
        where, params = _where(selection)
        try:
            with self._database.connect() as connection:
                row = connection.execute(
                    f"SELECT COUNT(*) FROM knowledge_vectors WHERE {where}",  # noqa: S608 - parameterized
                    params,
                ).fetchone()
        except sqlite3.Error as exc:
            raise self._translate("count", exc) from exc
        return int(row[0])

    def delete_by_filter(self, selection: VectorFilter) -> int:
        where, params = _where(selection)
        try:
            with self._database.connect() as connection:
                cursor = connection.execute(
                    f"DELETE FROM knowledge_vectors WHERE {where}",  # noqa: S608 - parameterized
                    params,
                )
        except sqlite3.Error as exc:
            raise self._translate("delete_by_filter", exc) from exc
        deleted = max(cursor.rowcount, 0)
        self._logger.debug(
            "vector-delete-by-filter",
            deleted=deleted,
            **selection.describe(),
        )
        return deleted

    def delete_by_ids(
        self,
        scope: TenantScope,
        ids: AbstractSet[str],
    ) -> None:
        if not ids:
            return
        ordered = sorted(ids)
        placeholders = ", ".join("?" for _ in ordered)
        try:
            with self._database.connect() as connection:
                connection.execute(
                    (
                        "DELETE FROM knowledge_vectors WHERE "  # noqa: S608 - parameterized
                        "organization_id = ? AND chatbot_config_id = ? "
                        f"AND knowledge_item_id IN ({placeholders})"
                    ),
                    (
                        scope.organization_id,
                        scope.chatbot_config_id,
                        *ordered,
                    ),
                )
        except sqlite3.Error as exc:
            raise self._translate("delete_by_ids", exc) from exc

    def upsert(
        self,
        scope: TenantScope,
        chunks: Sequence[VectorChunk],
    ) -> None:
        if not chunks:
            return
        for chunk in chunks:
            if chunk.scope != scope:
                raise ValueError(
                    f"Chunk {chunk.knowledge_item_id!r} belongs to "
                    f"{chunk.scope}, not {scope}."
                )
        timestamp = self._now().isoformat()
        rows = [
            (
                scope.organization_id,
                scope.chatbot_config_id,
                chunk.knowledge_item_id,
                chunk.source_type.value,
                chunk.source_url,
                chunk.title,
                chunk.content,
                chunk.category,
                chunk.content_hash,
                json.dumps(list(chunk.embedding)),
                json.dumps(dict(chunk.metadata), sort_keys=True),
                timestamp,
            )
            for chunk in chunks
        ]
        try:
            with self._database.connect() as connection:
                connection.executemany(
                    (
                        "INSERT INTO knowledge_vectors ("
                        "organization_id, chatbot_config_id, "
                        "knowledge_item_id, source_type, source_url, title, "
                        "content, category, content_hash, vector, metadata, "
                        "updated_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                        "ON CONFLICT (organization_id, chatbot_config_id, "
                        "knowledge_item_id) DO UPDATE SET "
                        "source_type = excluded.source_type, "
                        "source_url = excluded.source_url, "
                        "title = excluded.title, "
                        "content = excluded.content, "
                        "category = excluded.category, "
                        "content_hash = excluded.content_hash, "
                        "vector = excluded.vector, "
                        "metadata = excluded.metadata, "
                        "updated_at = excluded.updated_at"
                    ),
                    rows,
                )
        except sqlite3.Error as exc:
            raise self._translate("upsert", exc) from exc
        self._logger.debug(
            "vector-upsert",
            count=len(rows),
            **scope.as_filter(),
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def list_item_ids(self, selection: VectorFilter) -> frozenset[str]:
        """Return the ``knowledge_item_id`` values matching ``selection``."""

        where, params = _where(selection)
        try:
            with self._database.connect() as connection:
                rows = connection.execute(
                    f"SELECT knowledge_item_id FROM knowledge_vectors WHERE {where}",  # noqa: S608 - parameterized
                    params,
                ).fetchall()
        except sqlite3.Error as exc:
            raise self._translate("list_item_ids", exc) from exc
        return frozenset(row[0] for row in rows)

    def _translate(
        self,
        operation: str,
        exc: sqlite3.Error,
    ) -> StoreUnavailableError | StoreAuthorizationError:
        code = getattr(exc, "sqlite_errorname", None)
        self._logger.error(
            "vector-store-failed",
            operation=operation,
            error_code=code,
            error=str(exc),
        )
        if code in _AUTH_ERROR_CODES:
            return StoreAuthorizationError(
                f"Vector store rejected {operation}.",
                operation=operation,
            )
        return StoreUnavailableError(
            f"Vector store {operation} failed.",
            operation=operation,
        )
