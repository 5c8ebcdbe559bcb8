"""Vector store boundary: filters, chunks, gateway, and SQLite store."""

from __future__ import annotations

from .errors import (
    InvalidChunkError,
    StoreAuthorizationError,
    StoreUnavailableError,
    VectorStoreError,
)
from .gateway import VectorStoreGateway
from .models import EmbeddingVector, VectorChunk, VectorFilter
from .sqlite import SqliteVectorStore
from .validation import validate_chunks

__all__ = [
    "EmbeddingVector",
    "InvalidChunkError",
    "SqliteVectorStore",
    "StoreAuthorizationError",
    "StoreUnavailableError",
    "VectorChunk",
    "VectorFilter",
    "VectorStoreError",
    "VectorStoreGateway",
    "validate_chunks",
]
