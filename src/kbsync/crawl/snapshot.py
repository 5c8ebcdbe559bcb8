"""Crawler reading pages exported by the external website crawler.

The crawler service writes one JSON object per line (``url``, ``title``,
``text`` and optional ``depth``/``category``) to a file named after the
source URL. :class:`SnapshotCrawler` turns that export into knowledge items
while enforcing the source's crawl settings.
"""

from __future__ import annotations

import hashlib
import json
import time
from pathlib import Path
from typing import Any, Callable, Sequence
from urllib.parse import urlsplit

from kbsync.core.logging import Logger, get_logger
from kbsync.sources.crawl_settings import CrawlSettingsPolicy

from .errors import CrawlFailedError, CrawlFailureReason
from .models import Crawler, KnowledgeItem
from .policy import CrawlUrlPolicy

__all__ = [
    "SnapshotCrawler",
    "snapshot_path",
]


def snapshot_path(snapshots_dir: Path, url: str) -> Path:
    """Return the export location for the source at ``url``.

    Raises:
        ValueError: If ``url`` is not an absolute http(s) URL.
    """

    parts = urlsplit(url.strip())
    if parts.scheme not in {"http", "https"} or not parts.hostname:
        raise ValueError(f"Invalid source URL: {url!r}")
    digest = hashlib.sha256(url.strip().encode("utf-8")).hexdigest()[:16]
    return snapshots_dir / parts.hostname.lower() / f"{digest}.jsonl"


class SnapshotCrawler(Crawler):
    """Load crawler exports from ``snapshots_dir``."""

    def __init__(
        self,
        snapshots_dir: Path,
        *,
        allow_subdomains: bool = False,
        clock: Callable[[], float] = time.monotonic,
        logger: Logger | None = None,
    ) -> None:
        self._snapshots_dir = snapshots_dir
        self._allow_subdomains = allow_subdomains
        self._clock = clock
        self._logger = logger or get_logger(
            __name__,
            component="snapshot-crawler",
        )

    def crawl(
        self,
        url: str,
        settings: CrawlSettingsPolicy,
        *,
        timeout: float | None = None,
    ) -> Sequence[KnowledgeItem]:
        stop_at = None if timeout is None else self._clock() + timeout
        try:
            path = snapshot_path(self._snapshots_dir, url)
            policy = CrawlUrlPolicy(
                url,
                settings,
                allow_subdomains=self._allow_subdomains,
            )
        except ValueError as exc:
            raise CrawlFailedError(
                CrawlFailureReason.INVALID_URL,
                url=url,
                detail=str(exc),
            ) from exc

        if not path.is_file():
            raise CrawlFailedError(
                CrawlFailureReason.UNREACHABLE,
                url=url,
                detail=f"No crawl export at {path}",
            )

        items: list[KnowledgeItem] = []
        pages: set[str] = set()
        skipped: dict[str, int] = {}
        with path.open(encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if stop_at is not None and self._clock() >= stop_at:
                    raise CrawlFailedError(
                        CrawlFailureReason.TIMED_OUT,
                        url=url,
                        detail=f"stopped before line {line_number}",
                    )
                if not line.strip():
                    continue
                item = self._parse_line(line, url=url, line_number=line_number)
                if item.url not in pages:
                    decision = policy.evaluate(item.url, depth=item.depth)
                    if not decision.allowed:
                        reason = decision.reason or "rejected"
                        skipped[reason] = skipped.get(reason, 0) + 1
                        continue
                    if len(pages) >= settings.max_pages:
                        skipped["max-pages"] = skipped.get("max-pages", 0) + 1
                        continue
                    pages.add(item.url)
                items.append(item)

        self._logger.info(
            "snapshot-crawl",
            url=url,
            pages=len(pages),
            items=len(items),
            skipped=skipped,
        )
        return tuple(items)

    def _parse_line(
        self,
        line: str,
        *,
        url: str,
        line_number: int,
    ) -> KnowledgeItem:
        try:
            payload: Any = json.loads(line)
            if not isinstance(payload, dict):
                raise ValueError("expected a JSON object")
            return KnowledgeItem(
                url=payload.get("url"),
                title=payload.get("title"),
                text=payload.get("text"),
                category=str(payload.get("category") or "website"),
                depth=int(payload.get("depth") or 0),
            )
        except (TypeError, ValueError) as exc:
            raise CrawlFailedError(
                CrawlFailureReason.INVALID_CONTENT,
                url=url,
                detail=f"line {line_number}: {exc}",
            ) from exc
