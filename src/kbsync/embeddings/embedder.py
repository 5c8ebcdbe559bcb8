"""Turn crawled knowledge items into vector chunks."""

from __future__ import annotations

import hashlib
import uuid
from typing import Protocol, Sequence, runtime_checkable

from kbsync.core.logging import Logger, get_logger
from kbsync.crawl.models import KnowledgeItem
from kbsync.sources.models import SourceType
from kbsync.tenancy import TenantScope
from kbsync.vectors.models import VectorChunk

from .errors import EmbeddingProviderDimMismatchError
from .providers import EmbeddingsProvider

__all__ = [
    "Embedder",
    "ProviderEmbedder",
    "knowledge_item_id",
]


@runtime_checkable
class Embedder(Protocol):
    """Embedding collaborator used by the synchronization coordinator."""

    def embed(
        self,
        items: Sequence[KnowledgeItem],
        *,
        scope: TenantScope,
        source_type: SourceType,
        timeout: float | None = None,
    ) -> list[VectorChunk]:
        """Return one chunk per item, in order, tagged with ``scope``.

        ``timeout`` bounds the whole call in seconds; ``None`` means no
        limit.
        """


def knowledge_item_id(
    scope: TenantScope,
    source_type: SourceType,
    url: str,
    ordinal: int,
) -> str:
    """Return the stable id for the ``ordinal``-th item crawled at ``url``.

    The same crawl output always maps to the same ids, which keeps repeated
    synchronizations from accumulating duplicates.
    """

    name = f"{scope}|{source_type.value}|{url}#{ordinal}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, name))


class ProviderEmbedder(Embedder):
    """Embed items through an :class:`EmbeddingsProvider`."""

    def __init__(
        self,
        provider: EmbeddingsProvider,
        *,
        model: str,
        batch_size: int = 64,
        expected_dim: int | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._provider = provider
        self._model = model
        self._batch_size = batch_size
        self._expected_dim = expected_dim
        self._logger = logger or get_logger(__name__, component="embedder")

    def embed(
        self,
        items: Sequence[KnowledgeItem],
        *,
        scope: TenantScope,
        source_type: SourceType,
        timeout: float | None = None,
    ) -> list[VectorChunk]:
        if not items:
            return []

        vectors = self._provider.embed_texts(
            [item.text for item in items],
            model=self._model,
            batch_size=self._batch_size,
            timeout=timeout,
        )
        if len(vectors) != len(items):
            raise EmbeddingProviderDimMismatchError(
                (
                    f"Provider returned {len(vectors)} vectors for "
                    f"{len(items)} items."
                ),
                provider=self._provider_name(),
                model=self._model,
            )

        ordinals: dict[str, int] = {}
        chunks: list[VectorChunk] = []
        for item, vector in zip(items, vectors):
            ordinal = ordinals.get(item.url, 0)
            ordinals[item.url] = ordinal + 1
            expected = self._expected_dim
            if expected is not None and len(vector) != expected:
                raise EmbeddingProviderDimMismatchError(
                    "Embedding dimension does not match the store.",
                    provider=self._provider_name(),
                    model=self._model,
                    expected=expected,
                    actual=len(vector),
                )
            chunks.append(
                VectorChunk(
                    scope=scope,
                    knowledge_item_id=knowledge_item_id(
                        scope,
                        source_type,
                        item.url,
                        ordinal,
                    ),
                    source_type=source_type,
                    source_url=item.url,
                    embedding=tuple(vector),
                    title=item.title,
                    content=item.text,
                    content_hash=hashlib.sha256(
                        item.text.encode("utf-8")
                    ).hexdigest(),
                    category=item.category,
                    metadata={"depth": item.depth, "model": self._model},
                )
            )

        self._logger.debug(
            "embed-items",
            count=len(chunks),
            model=self._model,
            **scope.as_filter(),
        )
        return chunks

    def _provider_name(self) -> str:
        return self._provider.describe_model(self._model).provider
