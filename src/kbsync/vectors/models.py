"""Typed payloads exchanged with the vector store."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from kbsync.sources.models import SourceType
from kbsync.tenancy import TenantScope

__all__ = [
    "EmbeddingVector",
    "VectorChunk",
    "VectorFilter",
]

EmbeddingVector = tuple[float, ...]


@dataclass(frozen=True, slots=True)
class VectorFilter:
    """Scoped selection of stored chunks.

    ``source_url_prefix`` matches every chunk whose ``source_url`` starts
    with the prefix, so a domain root also selects pages found below it.
    """

    scope: TenantScope
    source_type: SourceType
    source_url_prefix: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.scope, TenantScope):
            raise TypeError("VectorFilter requires a TenantScope")
        if self.source_url_prefix is not None:
            prefix = self.source_url_prefix.strip()
            if not prefix:
                raise ValueError("source_url_prefix cannot be blank")
            object.__setattr__(self, "source_url_prefix", prefix)

    def describe(self) -> dict[str, Any]:
        return {
            **self.scope.as_filter(),
            "source_type": self.source_type.value,
            "source_url_prefix": self.source_url_prefix,
        }


@dataclass(frozen=True, slots=True)
class VectorChunk:
    """One embedded unit of text tagged with its scope and origin."""

    scope: TenantScope
    knowledge_item_id: str
    source_type: SourceType
    source_url: str | None
    embedding: EmbeddingVector
    title: str
    content: str
    content_hash: str
    category: str = "general"
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def payload(self) -> dict[str, Any]:
        """Return the searchable payload stored beside the vector."""

        return {
            "title": self.title,
            "content": self.content,
            "category": self.category,
            "content_hash": self.content_hash,
            "metadata": dict(self.metadata),
        }
