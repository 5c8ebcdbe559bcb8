"""URL admission rules applied while crawling a source."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from fnmatch import fnmatchcase
from urllib.parse import parse_qsl, urlsplit

from kbsync.sources.crawl_settings import CrawlSettingsPolicy

__all__ = [
    "MAX_URL_LENGTH",
    "CrawlPriority",
    "CrawlUrlPolicy",
    "UrlDecision",
]

MAX_URL_LENGTH = 200

_IMAGE_EXTENSIONS = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".bmp"}
)
_PDF_EXTENSIONS = frozenset({".pdf"})
_ALWAYS_EXCLUDED_EXTENSIONS = frozenset(
    {
        # office documents
        ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        # archives
        ".zip", ".rar", ".tar", ".gz", ".7z",
        # media
        ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".wav",
        # assets and data feeds
        ".css", ".js", ".xml", ".json",
    }
)
_EXCLUDED_PATH_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"/admin(/|$)",
        r"/login(/|$)",
        r"/logout(/|$)",
        r"/register(/|$)",
        r"/api/",
        r"/feed(/|$)",
        r"/rss(/|$)",
        r"/wp-",
        r"/user(/|$)",
        r"/account(/|$)",
        r"/profile(/|$)",
        r"/settings(/|$)",
        r"/cart(/|$)",
        r"/checkout(/|$)",
        r"/payment(/|$)",
    )
)
_SEARCH_QUERY_KEYS = frozenset({"q", "s", "search", "query", "filter", "sort"})
_HIGH_PRIORITY_HINTS = ("/docs", "/help", "/faq", "/about", "/support")
_LOW_PRIORITY_HINTS = ("/blog", "/news", "/archive", "/tag/", "/category/")


class CrawlPriority(StrEnum):
    """Relative importance of an admitted URL."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True, slots=True)
class UrlDecision:
    """Outcome of evaluating one candidate URL."""

    allowed: bool
    reason: str | None = None
    priority: CrawlPriority | None = None


def _host(value: str) -> str:
    host = value.lower()
    return host[4:] if host.startswith("www.") else host


class CrawlUrlPolicy:
    """Decide which discovered URLs belong to a source's crawl.

    Example:
        >>> settings = CrawlSettingsPolicy()
        >>> policy = CrawlUrlPolicy("https://example.com", settings)
        >>> policy.evaluate("https://example.com/docs/start", depth=1).allowed
        True
        >>> policy.evaluate("https://example.com/cart", depth=1).reason
        'excluded-path'
    """

    def __init__(
        self,
        base_url: str,
        settings: CrawlSettingsPolicy,
        *,
        allow_subdomains: bool = False,
    ) -> None:
        parts = urlsplit(base_url.strip())
        if parts.scheme not in {"http", "https"} or not parts.hostname:
            raise ValueError(f"Invalid base URL: {base_url!r}")
        self._base_host = _host(parts.hostname)
        self._settings = settings
        self._allow_subdomains = allow_subdomains

    def evaluate(self, url: str, *, depth: int) -> UrlDecision:
        """Return whether ``url`` found at ``depth`` should be crawled."""

        if depth >= self._settings.max_depth and depth > 0:
            return UrlDecision(False, "max-depth")
        if len(url) > MAX_URL_LENGTH:
            return UrlDecision(False, "url-too-long")

        parts = urlsplit(url)
        if parts.scheme not in {"http", "https"} or not parts.hostname:
            return UrlDecision(False, "invalid-url")
        if not self._same_site(parts.hostname):
            return UrlDecision(False, "external-domain")
        if parts.fragment:
            return UrlDecision(False, "fragment")

        query = parse_qsl(parts.query, keep_blank_values=True)
        if any(key.lower().startswith("utm_") for key, _ in query):
            return UrlDecision(False, "tracking-parameters")
        if any(key.lower() in _SEARCH_QUERY_KEYS for key, _ in query):
            return UrlDecision(False, "search-query")

        path = parts.path or "/"
        extension_reason = self._extension_reason(path)
        if extension_reason is not None:
            return UrlDecision(False, extension_reason)
        if any(pattern.search(path) for pattern in _EXCLUDED_PATH_PATTERNS):
            return UrlDecision(False, "excluded-path")

        if any(
            fnmatchcase(url, pattern) or fnmatchcase(path, pattern)
            for pattern in self._settings.exclude_patterns
        ):
            return UrlDecision(False, "exclude-pattern")
        if self._settings.include_patterns and not any(
            fnmatchcase(url, pattern) or fnmatchcase(path, pattern)
            for pattern in self._settings.include_patterns
        ):
            return UrlDecision(False, "include-pattern")

        return UrlDecision(True, priority=self._priority(path, depth))

    def _same_site(self, hostname: str) -> bool:
        host = _host(hostname)
        if host == self._base_host:
            return True
        return self._allow_subdomains and host.endswith(f".{self._base_host}")

    def _extension_reason(self, path: str) -> str | None:
        name = path.rsplit("/", 1)[-1].lower()
        if "." not in name:
            return None
        extension = name[name.rfind(".") :]
        if extension in _ALWAYS_EXCLUDED_EXTENSIONS:
            return "excluded-extension"
        images = self._settings.include_images
        if extension in _IMAGE_EXTENSIONS and not images:
            return "images-disabled"
        if extension in _PDF_EXTENSIONS and not self._settings.include_pdfs:
            return "pdfs-disabled"
        return None

    @staticmethod
    def _priority(path: str, depth: int) -> CrawlPriority:
        lowered = path.lower()
        if depth == 0 or any(hint in lowered for hint in _HIGH_PRIORITY_HINTS):
            return CrawlPriority.HIGH
        if any(hint in lowered for hint in _LOW_PRIORITY_HINTS):
            return CrawlPriority.LOW
        return CrawlPriority.MEDIUM
