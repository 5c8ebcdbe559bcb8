"""Crawler failure reporting."""

from __future__ import annotations

from enum import StrEnum
from typing import Mapping

__all__ = [
    "CrawlFailedError",
    "CrawlFailureReason",
]


class CrawlFailureReason(StrEnum):
    """Collaborator-reported reasons a crawl could not produce content."""

    ROBOTS_DISALLOWED = "robots_disallowed"
    UNREACHABLE = "unreachable"
    INVALID_URL = "invalid_url"
    INVALID_CONTENT = "invalid_content"
    TIMED_OUT = "timed_out"
    UNKNOWN = "unknown"


_SUMMARIES: Mapping[CrawlFailureReason, str] = {
    CrawlFailureReason.ROBOTS_DISALLOWED: (
        "The website's robots.txt does not allow crawling."
    ),
    CrawlFailureReason.UNREACHABLE: "The website could not be reached.",
    CrawlFailureReason.INVALID_URL: (
        "The source URL is not a valid web address."
    ),
    CrawlFailureReason.INVALID_CONTENT: (
        "The crawled content could not be processed."
    ),
    CrawlFailureReason.TIMED_OUT: "The crawl took too long and was stopped.",
    CrawlFailureReason.UNKNOWN: "The website could not be crawled.",
}


class CrawlFailedError(RuntimeError):
    """Raised by crawlers when a source cannot be crawled.

    ``detail`` may hold raw collaborator text for logs; operators only ever
    see :attr:`summary`, which is derived from ``reason``.
    """

    def __init__(
        self,
        reason: CrawlFailureReason,
        *,
        url: str | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(detail or reason.value)
        self.reason = reason
        self.url = url
        self.detail = detail

    @property
    def summary(self) -> str:
        return _SUMMARIES[self.reason]
