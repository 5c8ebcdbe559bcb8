"""Knowledge source lifecycle: records, crawl settings, persistence.

Operator actions live in :mod:`kbsync.sources.service`, which builds on the
synchronization locks and is imported from there.
"""

from __future__ import annotations

from .crawl_settings import (
    DEFAULT_MAX_DEPTH,
    DEFAULT_MAX_PAGES,
    CrawlFrequency,
    CrawlSettingsCoercion,
    CrawlSettingsPolicy,
    coerce_crawl_settings,
)
from .errors import (
    InvalidStatusTransitionError,
    SourceActiveError,
    SourceError,
    SourceExistsError,
    SourceInactiveError,
    SourceNotFoundError,
    SourceRepositoryError,
)
from .models import SourceRecord, SourceStatus, SourceType, is_due_for_resync
from .repository import SourceRepository, SqliteSourceRepository

__all__ = [
    "CrawlFrequency",
    "CrawlSettingsCoercion",
    "CrawlSettingsPolicy",
    "DEFAULT_MAX_DEPTH",
    "DEFAULT_MAX_PAGES",
    "InvalidStatusTransitionError",
    "SourceActiveError",
    "SourceError",
    "SourceExistsError",
    "SourceInactiveError",
    "SourceNotFoundError",
    "SourceRecord",
    "SourceRepository",
    "SourceRepositoryError",
    "SourceStatus",
    "SourceType",
    "SqliteSourceRepository",
    "coerce_crawl_settings",
    "is_due_for_resync",
]
