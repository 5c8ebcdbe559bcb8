"""Capability boundary over the remote vector store."""

from __future__ import annotations

from typing import AbstractSet, Protocol, Sequence, runtime_checkable

from kbsync.tenancy import TenantScope

from .models import VectorChunk, VectorFilter

__all__ = ["VectorStoreGateway"]


@runtime_checkable
class VectorStoreGateway(Protocol):
    """Operations the synchronization protocol needs from a vector store.

    Each call is atomic on its own; multi-call consistency is the caller's
    responsibility. Transport and credential failures surface as
    :class:`~kbsync.vectors.errors.StoreUnavailableError` or
    :class:`~kbsync.vectors.errors.StoreAuthorizationError`.
    """

    def count(self, selection: VectorFilter) -> int:
        """Return how many stored chunks match ``selection``."""

    def delete_by_filter(self, selection: VectorFilter) -> int:
        """Delete matching chunks returning the number removed (may be 0)."""

    def delete_by_ids(
        self,
        scope: TenantScope,
        ids: AbstractSet[str],
    ) -> None:
        """Delete the chunks with ``ids`` inside ``scope``."""

    def upsert(
        self,
        scope: TenantScope,
        chunks: Sequence[VectorChunk],
    ) -> None:
        """Insert ``chunks`` replacing existing ids within ``scope``."""
