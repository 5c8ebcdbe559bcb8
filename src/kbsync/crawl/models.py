"""Crawler boundary types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable

from kbsync.sources.crawl_settings import CrawlSettingsPolicy

__all__ = [
    "Crawler",
    "KnowledgeItem",
]


@dataclass(frozen=True, slots=True)
class KnowledgeItem:
    """A chunk of crawled text ready for embedding."""

    url: str
    title: str
    text: str
    category: str = "website"
    depth: int = 0

    def __post_init__(self) -> None:
        for field_name in ("url", "title", "text"):
            value = getattr(self, field_name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"KnowledgeItem.{field_name} cannot be empty")
            object.__setattr__(self, field_name, value.strip())
        if self.depth < 0:
            raise ValueError("KnowledgeItem.depth must be >= 0")


@runtime_checkable
class Crawler(Protocol):
    """Fetch and chunk a source into knowledge items."""

    def crawl(
        self,
        url: str,
        settings: CrawlSettingsPolicy,
        *,
        timeout: float | None = None,
    ) -> Sequence[KnowledgeItem]:
        """Return the items found at ``url`` within ``settings`` limits.

        ``timeout`` is the number of seconds left before the caller gives
        up; ``None`` means no limit.

        Raises:
            CrawlFailedError: When the source cannot be crawled.
        """
