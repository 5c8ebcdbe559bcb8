"""Crawler boundary: knowledge items, URL policy, and snapshot crawler."""

from __future__ import annotations

from .errors import CrawlFailedError, CrawlFailureReason
from .models import Crawler, KnowledgeItem
from .policy import CrawlPriority, CrawlUrlPolicy, UrlDecision
from .snapshot import SnapshotCrawler, snapshot_path

__all__ = [
    "CrawlFailedError",
    "CrawlFailureReason",
    "CrawlPriority",
    "CrawlUrlPolicy",
    "Crawler",
    "KnowledgeItem",
    "SnapshotCrawler",
    "UrlDecision",
    "snapshot_path",
]
