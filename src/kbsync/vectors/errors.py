"""Error hierarchy for vector store access."""

from __future__ import annotations

__all__ = [
    "InvalidChunkError",
    "StoreAuthorizationError",
    "StoreUnavailableError",
    "VectorStoreError",
]


class VectorStoreError(RuntimeError):
    """Base error for vector store failures."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class StoreUnavailableError(VectorStoreError):
    """Raised when the store cannot be reached or times out."""


class StoreAuthorizationError(VectorStoreError):
    """Raised when the store rejects the caller's credentials."""


class InvalidChunkError(VectorStoreError):
    """Raised when chunks fail validation before an upsert."""

    def __init__(
        self,
        message: str,
        *,
        knowledge_item_id: str | None = None,
        field: str | None = None,
    ) -> None:
        super().__init__(message, operation="upsert")
        self.knowledge_item_id = knowledge_item_id
        self.field = field
