"""Tests for :mod:`kbsync.sources.service`."""

from __future__ import annotations

import pytest
from structlog.testing import capture_logs

from kbsync.core.logging import get_logger
from kbsync.sources.crawl_settings import CrawlFrequency, CrawlSettingsPolicy
from kbsync.sources.errors import (
    SourceActiveError,
    SourceExistsError,
    SourceInactiveError,
    SourceNotFoundError,
)
from kbsync.sources.models import SourceStatus, SourceType
from kbsync.sources.service import SourceService
from kbsync.sync.errors import SyncAlreadyInProgressError
from kbsync.sync.locks import SourceLockManager
from kbsync.sync.tracking import SyncOperation
from kbsync.vectors.errors import StoreUnavailableError
from kbsync.vectors.models import VectorChunk, VectorFilter


@pytest.fixture
def service(repository, store, locks, tracker, clock) -> SourceService:
    return SourceService(
        repository=repository,
        store=store,
        locks=locks,
        tracker=tracker,
        now=clock,
    )


def _chunk(scope, url: str, item_id: str) -> VectorChunk:
    return VectorChunk(
        scope=scope,
        knowledge_item_id=item_id,
        source_type=SourceType.WEBSITE_CRAWLED,
        source_url=url,
        embedding=(0.1, 0.2, 0.3, 0.4),
        title=item_id,
        content=f"content {item_id}",
        content_hash=item_id,
    )


def test_register_creates_pending_source(service, repository, scope, clock):
    record = service.register(
        scope,
        url=" https://example.com/docs ",
        name="Docs",
        crawl_settings={"maxPages": "fifty", "crawlFrequency": "daily"},
        source_id="docs",
    )

    assert record.status is SourceStatus.PENDING
    assert record.url == "https://example.com/docs"
    assert record.crawl_settings.max_pages == 50
    assert record.crawl_settings.crawl_frequency is CrawlFrequency.DAILY
    assert record.created_at == clock()
    assert repository.get(scope, "docs") == record


def test_register_generates_ids(service, scope) -> None:
    first = service.register(scope, url="https://a.example", name="A")
    second = service.register(scope, url="https://b.example", name="B")

    assert first.id != second.id
    assert len(first.id) == 32


@pytest.mark.parametrize("url", ["ftp://example.com", "example.com", " "])
def test_register_rejects_unusable_website_urls(service, scope, url) -> None:
    with pytest.raises(ValueError):
        service.register(scope, url=url, name="Bad")


def test_register_accepts_non_http_urls_for_other_types(service, scope):
    record = service.register(
        scope,
        url="faq://catalog",
        name="FAQ",
        source_type=SourceType.FAQ,
    )

    assert record.source_type is SourceType.FAQ


def test_register_rejects_duplicate_ids(service, scope) -> None:
    service.register(scope, url="https://a.example", name="A", source_id="a")

    with pytest.raises(SourceExistsError):
        service.register(
            scope,
            url="https://a.example",
            name="A",
            source_id="a",
        )


def test_get_raises_for_other_scopes(service, make_source, other_scope):
    make_source()

    assert service.find(other_scope, "docs") is None
    with pytest.raises(SourceNotFoundError):
        service.get(other_scope, "docs")


def test_deactivate_and_activate_are_idempotent(
    service,
    make_source,
    scope,
) -> None:
    make_source()

    first = service.deactivate(scope, "docs")
    second = service.deactivate(scope, "docs")

    assert first.is_active is False
    assert second == first
    assert [r.id for r in service.list(scope, active_only=True)] == []
    assert service.activate(scope, "docs").is_active is True


def test_deactivate_during_a_cycle_is_rejected_not_lost(
    service,
    coordinator,
    crawler,
    make_source,
    repository,
    scope,
) -> None:
    make_source()
    crawler.script("https://example.com", "/")
    rejected: list[str] = []

    def _deactivate(url: str) -> None:
        with pytest.raises(SyncAlreadyInProgressError):
            service.deactivate(scope, "docs")
        rejected.append(url)

    crawler.on_crawl = _deactivate
    coordinator.synchronize(scope, "docs")

    assert rejected == ["https://example.com"]
    assert repository.get(scope, "docs").is_active is True

    crawler.on_crawl = None
    service.deactivate(scope, "docs")

    assert repository.get(scope, "docs").is_active is False


def test_activate_is_rejected_while_the_source_is_locked(
    service,
    make_source,
    locks,
    repository,
    scope,
) -> None:
    make_source(is_active=False)

    with locks.hold(scope, "docs"):
        with pytest.raises(SyncAlreadyInProgressError):
            service.activate(scope, "docs")

    assert repository.get(scope, "docs").is_active is False


def test_request_resync_moves_completed_to_pending(
    service,
    make_source,
    scope,
) -> None:
    make_source(status=SourceStatus.COMPLETED)

    record = service.request_resync(scope, "docs")

    assert record.status is SourceStatus.PENDING


def test_request_resync_clears_error(service, make_source, scope) -> None:
    make_source(
        status=SourceStatus.ERROR,
        error_message="The website could not be reached.",
    )

    record = service.request_resync(scope, "docs")

    assert record.status is SourceStatus.PENDING
    assert record.error_message is None


def test_request_resync_leaves_pending_untouched(
    service,
    make_source,
    scope,
) -> None:
    original = make_source()

    assert service.request_resync(scope, "docs") == original


def test_request_resync_rejects_inactive_sources(
    service,
    make_source,
    scope,
) -> None:
    make_source(is_active=False)

    with pytest.raises(SourceInactiveError):
        service.request_resync(scope, "docs")


def test_request_resync_rejects_running_cycles(
    service,
    make_source,
    locks,
    repository,
    scope,
) -> None:
    make_source(status=SourceStatus.CRAWLING)

    with locks.hold(scope, "docs"):
        with pytest.raises(SyncAlreadyInProgressError):
            service.request_resync(scope, "docs")

    assert repository.get(scope, "docs").status is SourceStatus.CRAWLING


def test_mark_due_skips_fresh_and_locked_sources(
    service,
    make_source,
    locks,
    scope,
    clock,
) -> None:
    daily = CrawlSettingsPolicy(crawl_frequency=CrawlFrequency.DAILY)
    synced = clock()
    for source_id in ("stale", "locked"):
        make_source(
            source_id,
            url=f"https://{source_id}.example.com",
            status=SourceStatus.COMPLETED,
            crawl_settings=daily,
            last_synced_at=synced,
        )
    make_source(
        "manual",
        url="https://manual.example.com",
        status=SourceStatus.COMPLETED,
        last_synced_at=synced,
    )
    clock.advance(days=2)

    with locks.hold(scope, "locked"):
        moved = service.mark_due(scope)

    assert moved == ["stale"]
    assert service.get(scope, "stale").status is SourceStatus.PENDING
    assert service.get(scope, "locked").status is SourceStatus.COMPLETED
    assert service.get(scope, "manual").status is SourceStatus.COMPLETED


def test_mark_due_skips_sources_locked_by_another_process(
    tmp_path,
    repository,
    store,
    make_source,
    scope,
    clock,
) -> None:
    daily = CrawlSettingsPolicy(crawl_frequency=CrawlFrequency.DAILY)
    make_source(
        status=SourceStatus.COMPLETED,
        crawl_settings=daily,
        last_synced_at=clock(),
    )
    clock.advance(days=2)
    service = SourceService(
        repository=repository,
        store=store,
        locks=SourceLockManager(locks_dir=tmp_path),
        now=clock,
    )
    other_process = SourceLockManager(locks_dir=tmp_path)

    with other_process.hold(scope, "docs"):
        assert service.mark_due(scope) == []

    assert service.get(scope, "docs").status is SourceStatus.COMPLETED
    assert service.mark_due(scope) == ["docs"]


def test_mark_due_rereads_the_record_under_its_lock(
    monkeypatch,
    service,
    repository,
    make_source,
    scope,
    clock,
) -> None:
    daily = CrawlSettingsPolicy(crawl_frequency=CrawlFrequency.DAILY)
    make_source(
        status=SourceStatus.COMPLETED,
        crawl_settings=daily,
        last_synced_at=clock(),
    )
    clock.advance(days=2)
    stale_list = repository.list

    def _list_then_start_cycle(scope, *, active_only=False):
        records = stale_list(scope, active_only=active_only)
        current = repository.get(scope, "docs")
        repository.save(
            current.transition(SourceStatus.PENDING, at=clock()).transition(
                SourceStatus.CRAWLING,
                at=clock(),
            )
        )
        return records

    monkeypatch.setattr(repository, "list", _list_then_start_cycle)

    assert service.mark_due(scope) == []
    assert repository.get(scope, "docs").status is SourceStatus.CRAWLING


def test_purge_vectors_deletes_only_the_source_prefix(
    service,
    make_source,
    vector_store,
    store,
    repository,
    scope,
    other_scope,
) -> None:
    make_source(url="https://example.com/docs", page_count=2)
    vector_store.upsert(
        scope,
        [
            _chunk(scope, "https://example.com/docs/a", "a"),
            _chunk(scope, "https://example.com/docs/b", "b"),
            _chunk(scope, "https://example.com/blog", "blog"),
        ],
    )
    vector_store.upsert(
        other_scope,
        [_chunk(other_scope, "https://example.com/docs/a", "x")],
    )

    deleted = service.purge_vectors(scope, "docs")

    assert deleted == 2
    assert store.operations() == ["count", "delete_by_filter"]
    assert repository.get(scope, "docs").page_count == 0
    assert vector_store.list_item_ids(
        VectorFilter(scope, SourceType.WEBSITE_CRAWLED)
    ) == {"blog"}
    assert vector_store.list_item_ids(
        VectorFilter(other_scope, SourceType.WEBSITE_CRAWLED)
    ) == {"x"}


def test_purge_skips_delete_when_nothing_is_stored(
    service,
    make_source,
    store,
    scope,
) -> None:
    make_source()

    assert service.purge_vectors(scope, "docs") == 0
    assert store.operations() == ["count"]


def test_purge_failures_are_tracked(
    service,
    make_source,
    store,
    sink,
    scope,
) -> None:
    make_source()
    store.failures["count"] = StoreUnavailableError("database is locked")

    with pytest.raises(StoreUnavailableError):
        service.purge_vectors(scope, "docs")

    [event] = sink.events
    assert event.operation is SyncOperation.COUNT
    assert event.source_id == "docs"


def test_purge_delete_failures_are_tracked_as_deletes(
    service,
    make_source,
    vector_store,
    store,
    sink,
    scope,
) -> None:
    make_source()
    vector_store.upsert(
        scope,
        [_chunk(scope, "https://example.com/", "home")],
    )
    store.failures["delete_by_filter"] = StoreUnavailableError(
        "database is locked"
    )

    with pytest.raises(StoreUnavailableError):
        service.purge_vectors(scope, "docs")

    [event] = sink.events
    assert event.operation is SyncOperation.DELETE
    assert event.source_url == "https://example.com"


def test_remove_requires_deactivation(service, make_source, scope) -> None:
    make_source()

    with pytest.raises(SourceActiveError):
        service.remove(scope, "docs")


def test_remove_purges_and_deletes(
    service,
    make_source,
    vector_store,
    repository,
    scope,
) -> None:
    make_source(is_active=False)
    vector_store.upsert(
        scope,
        [_chunk(scope, "https://example.com/", "home")],
    )

    with capture_logs() as logs:
        service = SourceService(
            repository=repository,
            store=vector_store,
            logger=get_logger(__name__),
        )
        deleted = service.remove(scope, "docs")

    assert deleted == 1
    assert repository.get(scope, "docs") is None
    removed = [e for e in logs if e.get("event") == "source-removed"]
    assert removed[0]["purged"] == 1


def test_remove_can_keep_vectors(
    service,
    make_source,
    store,
    repository,
    scope,
) -> None:
    make_source(is_active=False)

    assert service.remove(scope, "docs", purge=False) == 0
    assert store.calls == []
    assert repository.get(scope, "docs") is None


def test_update_crawl_settings(service, make_source, scope) -> None:
    make_source()

    updated = service.update_crawl_settings(
        scope,
        "docs",
        {"maxPages": 5, "maxDepth": "x"},
    )

    assert updated.crawl_settings.max_pages == 5
    assert service.get(scope, "docs").crawl_settings.max_pages == 5
