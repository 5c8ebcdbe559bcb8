"""Crawl settings policy with table-driven coercion.

Stored crawl settings come from operators and older records, so malformed
fields never block ingestion. Each field is coerced through the table in
:data:`_FIELDS`; a value that cannot be coerced falls back to its default
and is reported in :attr:`CrawlSettingsCoercion.defaulted`.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable

from kbsync.core.logging import Logger

__all__ = [
    "DEFAULT_MAX_DEPTH",
    "DEFAULT_MAX_PAGES",
    "CrawlFrequency",
    "CrawlSettingsCoercion",
    "CrawlSettingsPolicy",
    "coerce_crawl_settings",
]

DEFAULT_MAX_PAGES = 50
DEFAULT_MAX_DEPTH = 3


class CrawlFrequency(StrEnum):
    """How often a completed source becomes due for a resync."""

    MANUAL = "manual"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True, slots=True)
class CrawlSettingsPolicy:
    """Validated description of how a source is crawled."""

    max_pages: int = DEFAULT_MAX_PAGES
    max_depth: int = DEFAULT_MAX_DEPTH
    include_patterns: frozenset[str] = field(default_factory=frozenset)
    exclude_patterns: frozenset[str] = field(default_factory=frozenset)
    respect_robots_txt: bool = True
    crawl_frequency: CrawlFrequency = CrawlFrequency.MANUAL
    include_images: bool = False
    include_pdfs: bool = True

    def __post_init__(self) -> None:
        if self.max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        if self.max_depth < 0:
            raise ValueError("max_depth must be >= 0")

    @classmethod
    def from_raw(
        cls,
        raw: Any,
        *,
        default_max_pages: int = DEFAULT_MAX_PAGES,
        logger: Logger | None = None,
    ) -> "CrawlSettingsPolicy":
        """Return a policy for ``raw`` settings, defaulting bad fields."""

        result = coerce_crawl_settings(
            raw,
            default_max_pages=default_max_pages,
        )
        if logger is not None and result.defaulted:
            logger.warning(
                "crawl-settings-field-defaulted",
                fields=result.defaulted,
            )
        return result.policy

    def to_mapping(self) -> dict[str, Any]:
        """Return the camel-case payload persisted with a source."""

        return {
            "maxPages": self.max_pages,
            "maxDepth": self.max_depth,
            "includePatterns": sorted(self.include_patterns),
            "excludePatterns": sorted(self.exclude_patterns),
            "respectRobotsTxt": self.respect_robots_txt,
            "crawlFrequency": self.crawl_frequency.value,
            "includeImages": self.include_images,
            "includePDFs": self.include_pdfs,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_mapping(), sort_keys=True)


@dataclass(frozen=True, slots=True)
class CrawlSettingsCoercion:
    """Outcome of coercing raw settings into a policy."""

    policy: CrawlSettingsPolicy
    defaulted: tuple[str, ...] = ()


class _Invalid:
    """Marker returned by coercers for values they cannot interpret."""


_INVALID = _Invalid()


def _coerce_int(value: Any, *, minimum: int) -> int | _Invalid:
    if isinstance(value, bool):
        return _INVALID
    if isinstance(value, float):
        if not value.is_integer():
            return _INVALID
        value = int(value)
    elif isinstance(value, str):
        stripped = value.strip()
        try:
            value = int(stripped)
        except ValueError:
            return _INVALID
    elif not isinstance(value, int):
        return _INVALID
    if value < minimum:
        return _INVALID
    return value


def _coerce_positive_int(value: Any) -> int | _Invalid:
    return _coerce_int(value, minimum=1)


def _coerce_non_negative_int(value: Any) -> int | _Invalid:
    return _coerce_int(value, minimum=0)


def _coerce_bool(value: Any) -> bool | _Invalid:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return _INVALID


def _coerce_patterns(value: Any) -> frozenset[str] | _Invalid:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        return _INVALID
    patterns: set[str] = set()
    for item in value:
        if not isinstance(item, str):
            return _INVALID
        stripped = item.strip()
        if stripped:
            patterns.add(stripped)
    return frozenset(patterns)


def _coerce_frequency(value: Any) -> CrawlFrequency | _Invalid:
    if isinstance(value, CrawlFrequency):
        return value
    if isinstance(value, str):
        try:
            return CrawlFrequency(value.strip().lower())
        except ValueError:
            return _INVALID
    return _INVALID


@dataclass(frozen=True, slots=True)
class _FieldRule:
    name: str
    keys: tuple[str, ...]
    coerce: Callable[[Any], Any]
    default: Callable[[int], Any]


# Each rule lists the accepted payload keys (camel case first), the coercer,
# and a default factory receiving the configured maxPages default.
_FIELDS: tuple[_FieldRule, ...] = (
    _FieldRule(
        "max_pages",
        ("maxPages", "max_pages"),
        _coerce_positive_int,
        lambda max_pages: max_pages,
    ),
    _FieldRule(
        "max_depth",
        ("maxDepth", "max_depth"),
        _coerce_non_negative_int,
        lambda _: DEFAULT_MAX_DEPTH,
    ),
    _FieldRule(
        "include_patterns",
        ("includePatterns", "include_patterns"),
        _coerce_patterns,
        lambda _: frozenset(),
    ),
    _FieldRule(
        "exclude_patterns",
        ("excludePatterns", "exclude_patterns"),
        _coerce_patterns,
        lambda _: frozenset(),
    ),
    _FieldRule(
        "respect_robots_txt",
        ("respectRobotsTxt", "respect_robots_txt"),
        _coerce_bool,
        lambda _: True,
    ),
    _FieldRule(
        "crawl_frequency",
        ("crawlFrequency", "crawl_frequency"),
        _coerce_frequency,
        lambda _: CrawlFrequency.MANUAL,
    ),
    _FieldRule(
        "include_images",
        ("includeImages", "include_images"),
        _coerce_bool,
        lambda _: False,
    ),
    _FieldRule(
        "include_pdfs",
        ("includePDFs", "includePdfs", "include_pdfs"),
        _coerce_bool,
        lambda _: True,
    ),
)


def _payload_from_raw(raw: Any) -> Mapping[str, Any] | None:
    if isinstance(raw, CrawlSettingsPolicy):
        return raw.to_mapping()
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if isinstance(raw, Mapping):
        return raw
    return None


def coerce_crawl_settings(
    raw: Any,
    *,
    default_max_pages: int = DEFAULT_MAX_PAGES,
) -> CrawlSettingsCoercion:
    """Coerce ``raw`` settings into a :class:`CrawlSettingsPolicy`.

    ``raw`` may be a mapping, a JSON document, an existing policy, or
    anything else. Absent fields take their default silently; present but
    malformed fields take their default and are listed in ``defaulted``.
    A payload that is not a mapping at all yields the default policy with
    every field reported.

    Example:
        >>> result = coerce_crawl_settings({"maxPages": "fifty"})
        >>> result.policy.max_pages, result.defaulted
        (50, ('max_pages',))
    """

    payload = _payload_from_raw(raw)
    values: dict[str, Any] = {}
    defaulted: list[str] = []

    for rule in _FIELDS:
        default = rule.default(default_max_pages)
        if payload is None:
            values[rule.name] = default
            if raw is not None:
                defaulted.append(rule.name)
            continue

        present = [key for key in rule.keys if key in payload]
        if not present or payload[present[0]] is None:
            values[rule.name] = default
            continue

        coerced = rule.coerce(payload[present[0]])
        if isinstance(coerced, _Invalid):
            values[rule.name] = default
            defaulted.append(rule.name)
        else:
            values[rule.name] = coerced

    return CrawlSettingsCoercion(
        policy=CrawlSettingsPolicy(**values),
        defaulted=tuple(defaulted),
    )
