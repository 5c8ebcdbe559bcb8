"""SQLite connection handling shared by the source and vector stores."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from kbsync.resources import read_resource_text

__all__ = [
    "SCHEMA_RESOURCE_NAME",
    "SqliteDatabase",
]

SCHEMA_RESOURCE_NAME = "schema.sql"


@dataclass(frozen=True, slots=True)
class SqliteDatabase:
    """Open short-lived connections against one database file.

    Every :meth:`connect` block runs in a single transaction that commits on
    success and rolls back when the block raises.
    """

    path: Path
    busy_timeout: float = 5.0

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection with ``sqlite3.Row`` rows inside a transaction.

        Raises:
            sqlite3.Error: Propagated to callers for translation.
        """

        self.path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self.path, timeout=self.busy_timeout)
        try:
            connection.row_factory = sqlite3.Row
            connection.execute("PRAGMA foreign_keys = ON")
            with connection:
                yield connection
        finally:
            connection.close()

    def ensure_schema(self) -> None:
        """Create the packaged tables and indexes when missing."""

        script = read_resource_text(SCHEMA_RESOURCE_NAME)
        with self.connect() as connection:
            connection.executescript(script)
