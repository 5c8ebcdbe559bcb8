"""Pre-upsert validation for vector chunks."""

from __future__ import annotations

from typing import Sequence

from kbsync.core.logging import Logger
from kbsync.sources.models import SourceType
from kbsync.tenancy import TenantScope

from .errors import InvalidChunkError
from .models import VectorChunk

__all__ = ["validate_chunks"]

_REQUIRED_TEXT_FIELDS = (
    "knowledge_item_id",
    "title",
    "content",
    "content_hash",
)


def validate_chunks(
    chunks: Sequence[VectorChunk],
    *,
    scope: TenantScope,
    expected_dim: int,
    logger: Logger | None = None,
) -> None:
    """Reject chunks that would corrupt the scope's stored vectors.

    Raises:
        InvalidChunkError: On the first chunk that is out of scope, misses a
            required field, has the wrong embedding dimension, carries an
            unknown source type, or repeats an id already in the batch.
    """

    seen: set[str] = set()
    for index, chunk in enumerate(chunks):
        item_id = chunk.knowledge_item_id
        if chunk.scope != scope:
            raise InvalidChunkError(
                f"Chunk {index} belongs to another tenant scope.",
                knowledge_item_id=item_id,
                field="scope",
            )
        for field_name in _REQUIRED_TEXT_FIELDS:
            value = getattr(chunk, field_name)
            if not isinstance(value, str) or not value.strip():
                raise InvalidChunkError(
                    f"Chunk {index} is missing {field_name}.",
                    knowledge_item_id=item_id or None,
                    field=field_name,
                )
        if item_id in seen:
            raise InvalidChunkError(
                f"Chunk id {item_id!r} appears more than once.",
                knowledge_item_id=item_id,
                field="knowledge_item_id",
            )
        seen.add(item_id)
        if not isinstance(chunk.source_type, SourceType):
            raise InvalidChunkError(
                f"Chunk {item_id!r} has unknown source type.",
                knowledge_item_id=item_id,
                field="source_type",
            )
        if len(chunk.embedding) != expected_dim:
            raise InvalidChunkError(
                (
                    f"Chunk {item_id!r} has embedding dimension "
                    f"{len(chunk.embedding)}, expected {expected_dim}."
                ),
                knowledge_item_id=item_id,
                field="embedding",
            )
        if (
            chunk.source_type is SourceType.WEBSITE_CRAWLED
            and not chunk.source_url
            and logger is not None
        ):
            logger.warning(
                "chunk-missing-source-url",
                knowledge_item_id=item_id,
                **scope.as_filter(),
            )
