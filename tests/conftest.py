"""Shared pytest fixtures for kbsync tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AbstractSet

import pytest

from kbsync.core.database import SqliteDatabase
from kbsync.crawl.models import KnowledgeItem
from kbsync.embeddings.embedder import ProviderEmbedder
from kbsync.embeddings.providers import EmbeddingMatrix, EmbeddingProviderModel
from kbsync.sources.crawl_settings import CrawlSettingsPolicy
from kbsync.sources.models import SourceRecord
from kbsync.sources.repository import SqliteSourceRepository
from kbsync.sync.coordinator import SynchronizationCoordinator
from kbsync.sync.locks import SourceLockManager
from kbsync.sync.policy import IngestionErrorPolicy
from kbsync.sync.tracking import ErrorTracker, TrackedError
from kbsync.tenancy import TenantScope
from kbsync.vectors.models import VectorChunk, VectorFilter
from kbsync.vectors.sqlite import SqliteVectorStore

EMBEDDING_DIM = 4
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current += timedelta(**delta)
        return self.current


class StubProvider:
    """Embedding provider returning small deterministic vectors."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.timeouts: list[float | None] = []

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        return EmbeddingProviderModel(
            provider="stub",
            name=model,
            dim=EMBEDDING_DIM,
        )

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        batch_size: int,
        timeout: float | None = None,
    ) -> EmbeddingMatrix:
        self.calls.append(tuple(texts))
        self.timeouts.append(timeout)
        return tuple(
            (float(len(text)), float(index), 0.5, 1.0)
            for index, text in enumerate(texts)
        )


class StubCrawler:
    """Crawler returning scripted items per URL.

    ``on_crawl`` runs inside :meth:`crawl` before items are returned so
    tests can observe the in-flight status or block the cycle.
    """

    def __init__(self) -> None:
        self.pages: dict[str, list[KnowledgeItem]] = {}
        self.error: Exception | None = None
        self.on_crawl: Callable[[str], None] | None = None
        self.calls: list[tuple[str, CrawlSettingsPolicy]] = []
        self.timeouts: list[float | None] = []

    def crawl(
        self,
        url: str,
        settings: CrawlSettingsPolicy,
        *,
        timeout: float | None = None,
    ) -> Sequence[KnowledgeItem]:
        self.calls.append((url, settings))
        self.timeouts.append(timeout)
        if self.on_crawl is not None:
            self.on_crawl(url)
        if self.error is not None:
            raise self.error
        return list(self.pages.get(url, []))

    def script(self, url: str, *paths: str) -> list[KnowledgeItem]:
        items = [
            KnowledgeItem(
                url=f"{url.rstrip('/')}{path}",
                title=f"Page {path}",
                text=f"Content for {path}",
                depth=0 if path == "/" else 1,
            )
            for path in paths
        ]
        self.pages[url] = items
        return items


class RecordingStore:
    """Vector store wrapper recording calls and injecting failures."""

    def __init__(self, inner: SqliteVectorStore) -> None:
        self.inner = inner
        self.calls: list[tuple[str, Any]] = []
        self.failures: dict[str, Exception] = {}

    def _enter(self, operation: str, argument: Any) -> None:
        self.calls.append((operation, argument))
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    def operations(self) -> list[str]:
        return [operation for operation, _ in self.calls]

    def count(self, selection: VectorFilter) -> int:
        self._enter("count", selection)
        return self.inner.count(selection)

    def delete_by_filter(self, selection: VectorFilter) -> int:
        self._enter("delete_by_filter", selection)
        return self.inner.delete_by_filter(selection)

    def delete_by_ids(
        self,
        scope: TenantScope,
        ids: AbstractSet[str],
    ) -> None:
        self._enter("delete_by_ids", (scope, frozenset(ids)))
        self.inner.delete_by_ids(scope, ids)

    def upsert(
        self,
        scope: TenantScope,
        chunks: Sequence[VectorChunk],
    ) -> None:
        self._enter("upsert", (scope, tuple(chunks)))
        self.inner.upsert(scope, chunks)

    def list_item_ids(self, selection: VectorFilter) -> frozenset[str]:
        return self.inner.list_item_ids(selection)


class MemorySink:
    def __init__(self) -> None:
        self.events: list[TrackedError] = []

    def record(self, error: TrackedError) -> None:
        self.events.append(error)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def scope() -> TenantScope:
    return TenantScope("org-1", "bot-1")


@pytest.fixture
def other_scope() -> TenantScope:
    return TenantScope("org-2", "bot-9")


@pytest.fixture
def database(tmp_path: Path) -> SqliteDatabase:
    db = SqliteDatabase(tmp_path / "kbsync.sqlite3", busy_timeout=1.0)
    db.ensure_schema()
    return db


@pytest.fixture
def repository(database: SqliteDatabase) -> SqliteSourceRepository:
    return SqliteSourceRepository(database)


@pytest.fixture
def vector_store(
    database: SqliteDatabase,
    clock: FixedClock,
) -> SqliteVectorStore:
    return SqliteVectorStore(database, now=clock)


@pytest.fixture
def store(vector_store: SqliteVectorStore) -> RecordingStore:
    return RecordingStore(vector_store)


@pytest.fixture
def crawler() -> StubCrawler:
    return StubCrawler()


@pytest.fixture
def provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
def embedder(provider: StubProvider) -> ProviderEmbedder:
    return ProviderEmbedder(
        provider,
        model="stub-model",
        batch_size=8,
        expected_dim=EMBEDDING_DIM,
    )


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def tracker(sink: MemorySink, clock: FixedClock) -> ErrorTracker:
    return ErrorTracker([sink], now=clock)


@pytest.fixture
def locks() -> SourceLockManager:
    return SourceLockManager()


@pytest.fixture
def coordinator(
    repository: SqliteSourceRepository,
    store: RecordingStore,
    crawler: StubCrawler,
    embedder: ProviderEmbedder,
    locks: SourceLockManager,
    tracker: ErrorTracker,
    clock: FixedClock,
) -> SynchronizationCoordinator:
    return SynchronizationCoordinator(
        sources=repository,
        store=store,
        crawler=crawler,
        embedder=embedder,
        expected_dim=EMBEDDING_DIM,
        locks=locks,
        error_policy=IngestionErrorPolicy(max_retryable_failures=3),
        tracker=tracker,
        now=clock,
    )


@pytest.fixture
def make_source(
    repository: SqliteSourceRepository,
    scope: TenantScope,
    clock: FixedClock,
) -> Iterator[Callable[..., SourceRecord]]:
    """Insert a pending source; keyword arguments override fields."""

    def _make(
        source_id: str = "docs",
        url: str = "https://example.com",
        **overrides: Any,
    ) -> SourceRecord:
        fields: dict[str, Any] = {
            "scope": scope,
            "id": source_id,
            "url": url,
            "name": source_id.title(),
            "created_at": clock(),
            "updated_at": clock(),
        }
        fields.update(overrides)
        record = SourceRecord(**fields)
        repository.insert(record)
        return record

    yield _make
