"""Tests for :mod:`kbsync.sync.coordinator`."""

from __future__ import annotations

import hashlib
import threading

import pytest
from structlog.testing import capture_logs

from kbsync.core.logging import get_logger
from kbsync.crawl.errors import CrawlFailedError, CrawlFailureReason
from kbsync.crawl.models import KnowledgeItem
from kbsync.sources.crawl_settings import CrawlSettingsPolicy, CrawlFrequency
from kbsync.sources.errors import SourceInactiveError, SourceNotFoundError
from kbsync.sources.models import SourceRecord, SourceStatus, SourceType
from kbsync.sync.coordinator import SynchronizationCoordinator
from kbsync.sync.deadline import SyncDeadline
from kbsync.sync.errors import (
    SyncAlreadyInProgressError,
    SyncCancelledError,
    SyncFailedError,
)
from kbsync.sync.policy import FailureDisposition
from kbsync.sync.tracking import ErrorTracker, SyncOperation
from kbsync.tenancy import TenantScope
from kbsync.vectors.errors import (
    StoreAuthorizationError,
    StoreUnavailableError,
)
from kbsync.vectors.models import VectorChunk, VectorFilter

URL = "https://example.com"


def _seed_vectors(vector_store, scope: TenantScope, url: str, count: int):
    chunks = [
        VectorChunk(
            scope=scope,
            knowledge_item_id=f"old-{index}",
            source_type=SourceType.WEBSITE_CRAWLED,
            source_url=f"{url}/old/{index}",
            embedding=(0.0, 0.0, 0.0, 1.0),
            title=f"Old {index}",
            content=f"Old content {index}",
            content_hash=hashlib.sha256(str(index).encode()).hexdigest(),
        )
        for index in range(count)
    ]
    vector_store.upsert(scope, chunks)
    return {chunk.knowledge_item_id for chunk in chunks}


def _selection(scope: TenantScope, url: str = URL) -> VectorFilter:
    return VectorFilter(scope, SourceType.WEBSITE_CRAWLED, url)


def test_clean_resync_replaces_existing_vectors(
    coordinator,
    make_source,
    crawler,
    store,
    vector_store,
    repository,
    scope,
    clock,
) -> None:
    make_source(status=SourceStatus.COMPLETED)
    old_ids = _seed_vectors(vector_store, scope, URL, 3)
    crawler.script(URL, "/", "/about")
    clock.advance(hours=1)

    result = coordinator.synchronize(scope, "docs")

    assert result.previous_count == 3
    assert result.deleted_count == 3
    assert result.upserted_count == 2
    assert result.page_count == 2
    assert result.status is SourceStatus.COMPLETED
    assert result.delete_skipped is False
    assert store.operations() == ["count", "delete_by_filter", "upsert"]

    stored = vector_store.list_item_ids(_selection(scope))
    assert len(stored) == 2
    assert stored.isdisjoint(old_ids)

    record = repository.get(scope, "docs")
    assert record.status is SourceStatus.COMPLETED
    assert record.page_count == 2
    assert record.last_synced_at == clock()
    assert record.error_message is None


def test_zero_existing_vectors_skips_delete(
    coordinator,
    make_source,
    crawler,
    store,
    scope,
) -> None:
    make_source()
    crawler.script(URL, "/", "/faq", "/pricing")

    result = coordinator.synchronize(scope, "docs")

    assert result.delete_skipped is True
    assert result.deleted_count == 0
    assert result.upserted_count == 3
    assert "delete_by_filter" not in store.operations()
    assert store.operations() == ["count", "upsert"]


def test_resync_is_idempotent(
    coordinator,
    make_source,
    crawler,
    vector_store,
    scope,
) -> None:
    make_source()
    crawler.script(URL, "/", "/docs", "/docs")

    coordinator.synchronize(scope, "docs")
    first = vector_store.list_item_ids(_selection(scope))
    second_result = coordinator.synchronize(scope, "docs")
    second = vector_store.list_item_ids(_selection(scope))

    assert len(first) == 3
    assert first == second
    assert second_result.previous_count == 3
    assert second_result.upserted_count == 3


def test_resync_never_touches_other_tenants(
    coordinator,
    make_source,
    crawler,
    store,
    vector_store,
    repository,
    scope,
    other_scope,
    clock,
) -> None:
    make_source()
    repository.insert(
        SourceRecord(
            scope=other_scope,
            id="docs",
            url=URL,
            name="Docs",
            created_at=clock(),
            updated_at=clock(),
        )
    )
    other_ids = _seed_vectors(vector_store, other_scope, URL, 2)
    crawler.script(URL, "/")

    result = coordinator.synchronize(scope, "docs")

    assert result.previous_count == 0
    assert vector_store.list_item_ids(_selection(other_scope)) == other_ids
    for operation, argument in store.calls:
        if operation == "upsert":
            call_scope, chunks = argument
            assert call_scope == scope
            assert all(chunk.scope == scope for chunk in chunks)
        else:
            assert argument.scope == scope
    other = repository.get(other_scope, "docs")
    assert other.status is SourceStatus.PENDING


def test_status_is_crawling_while_the_crawl_runs(
    coordinator,
    make_source,
    crawler,
    repository,
    scope,
) -> None:
    make_source(status=SourceStatus.COMPLETED)
    observed: list[SourceStatus] = []
    crawler.on_crawl = lambda url: observed.append(
        repository.get(scope, "docs").status
    )
    crawler.script(URL, "/")

    coordinator.synchronize(scope, "docs")

    assert observed == [SourceStatus.CRAWLING]


def test_terminal_upsert_failure_marks_error_then_recovers(
    coordinator,
    make_source,
    crawler,
    store,
    vector_store,
    repository,
    scope,
    sink,
) -> None:
    make_source()
    _seed_vectors(vector_store, scope, URL, 3)
    crawler.script(URL, "/", "/about")
    store.failures["upsert"] = StoreAuthorizationError(
        "SQLITE_AUTH: token sk-secret rejected",
        operation="upsert",
    )

    with pytest.raises(SyncFailedError) as excinfo:
        coordinator.synchronize(scope, "docs")

    assert isinstance(excinfo.value.cause, StoreAuthorizationError)
    assert excinfo.value.retryable is False
    record = repository.get(scope, "docs")
    assert record.status is SourceStatus.ERROR
    assert record.error_message
    assert "sk-secret" not in record.error_message
    assert "SQLITE" not in record.error_message
    assert record.last_synced_at is None
    assert vector_store.count(_selection(scope)) == 0
    assert [event.operation for event in sink.events] == [
        SyncOperation.UPSERT
    ]

    result = coordinator.synchronize(scope, "docs")

    assert result.status is SourceStatus.COMPLETED
    assert result.delete_skipped is True
    stored = vector_store.list_item_ids(_selection(scope))
    assert len(stored) == 2
    recovered = repository.get(scope, "docs")
    assert recovered.status is SourceStatus.COMPLETED
    assert recovered.error_message is None
    assert recovered.failure_count == 0


def test_retryable_failure_keeps_in_flight_status(
    coordinator,
    make_source,
    crawler,
    store,
    repository,
    scope,
) -> None:
    make_source()
    crawler.script(URL, "/")
    store.failures["count"] = StoreUnavailableError(
        "database is locked",
        operation="count",
    )

    with pytest.raises(SyncFailedError) as excinfo:
        coordinator.synchronize(scope, "docs")

    decision = excinfo.value.decision
    assert decision.disposition is FailureDisposition.RETRYABLE
    record = repository.get(scope, "docs")
    assert record.status is SourceStatus.VECTORIZING
    assert record.error_message is None
    assert record.failure_count == 1

    result = coordinator.synchronize(scope, "docs")
    assert result.status is SourceStatus.COMPLETED
    assert repository.get(scope, "docs").failure_count == 0


def test_repeated_retryable_failures_escalate_to_error(
    coordinator,
    make_source,
    crawler,
    repository,
    scope,
) -> None:
    make_source()
    crawler.error = StoreUnavailableError("timeout")

    statuses = []
    for _ in range(3):
        with pytest.raises(SyncFailedError):
            coordinator.synchronize(scope, "docs")
        statuses.append(repository.get(scope, "docs").status)

    assert statuses == [
        SourceStatus.CRAWLING,
        SourceStatus.CRAWLING,
        SourceStatus.ERROR,
    ]
    record = repository.get(scope, "docs")
    assert record.failure_count == 3
    assert "3 attempts" in record.error_message


def test_crawl_failure_records_sanitized_reason(
    coordinator,
    make_source,
    crawler,
    repository,
    store,
    scope,
    sink,
) -> None:
    make_source()
    crawler.error = CrawlFailedError(
        CrawlFailureReason.ROBOTS_DISALLOWED,
        url=URL,
        detail="HTTP 403 from 10.0.0.7 with cookie=abc",
    )

    with pytest.raises(SyncFailedError):
        coordinator.synchronize(scope, "docs")

    record = repository.get(scope, "docs")
    assert record.status is SourceStatus.ERROR
    assert record.error_message == crawler.error.summary
    assert store.calls == []
    [event] = sink.events
    assert event.operation is SyncOperation.CRAWL
    assert event.source_id == "docs"
    assert event.error_type == "CrawlFailedError"


@pytest.mark.parametrize(
    ("failing", "helper"),
    [("crawl", "track_crawl_error"), ("upsert", "track_upsert_error")],
)
def test_failures_are_routed_through_operation_helpers(
    monkeypatch,
    coordinator,
    make_source,
    crawler,
    store,
    tracker,
    scope,
    failing,
    helper,
) -> None:
    make_source()
    crawler.script(URL, "/")
    if failing == "crawl":
        crawler.error = CrawlFailedError(CrawlFailureReason.UNREACHABLE)
    else:
        store.failures["upsert"] = StoreAuthorizationError(
            "denied",
            operation="upsert",
        )
    calls: list[dict] = []
    original = getattr(tracker, helper)

    def _spy(error, *, scope, **context):
        calls.append(context)
        return original(error, scope=scope, **context)

    monkeypatch.setattr(tracker, helper, _spy)

    with pytest.raises(SyncFailedError):
        coordinator.synchronize(scope, "docs")

    [context] = calls
    assert context["source_id"] == "docs"
    assert context["source_url"] == URL


def test_malformed_max_pages_defaults_during_sync(
    coordinator,
    make_source,
    crawler,
    database,
    scope,
) -> None:
    make_source()
    with database.connect() as connection:
        connection.execute(
            "UPDATE knowledge_sources SET crawl_settings = ? WHERE id = ?",
            ('{"maxPages": "fifty", "maxDepth": 2}', "docs"),
        )
    crawler.script(URL, "/")

    coordinator.synchronize(scope, "docs")

    [(url, settings)] = crawler.calls
    assert url == URL
    assert settings.max_pages == 50
    assert settings.max_depth == 2


def test_unknown_and_inactive_sources_are_not_found(
    coordinator,
    make_source,
    store,
    scope,
    other_scope,
) -> None:
    make_source()
    make_source("old", url="https://old.example.com", is_active=False)

    with pytest.raises(SourceNotFoundError):
        coordinator.synchronize(scope, "missing")
    with pytest.raises(SourceNotFoundError):
        coordinator.synchronize(other_scope, "docs")
    with pytest.raises(SourceInactiveError):
        coordinator.synchronize(scope, "old")
    assert store.calls == []


def test_concurrent_resync_is_rejected(
    coordinator,
    make_source,
    crawler,
    repository,
    scope,
) -> None:
    make_source()
    crawler.script(URL, "/")
    entered = threading.Event()
    release = threading.Event()

    def _block(url: str) -> None:
        entered.set()
        assert release.wait(timeout=5)

    crawler.on_crawl = _block
    outcome: dict[str, object] = {}

    def _run() -> None:
        outcome["result"] = coordinator.synchronize(scope, "docs")

    worker = threading.Thread(target=_run)
    worker.start()
    try:
        assert entered.wait(timeout=5)
        assert repository.get(scope, "docs").status is SourceStatus.CRAWLING

        with pytest.raises(SyncAlreadyInProgressError) as excinfo:
            coordinator.synchronize(scope, "docs")

        assert excinfo.value.source_id == "docs"
        assert repository.get(scope, "docs").status is SourceStatus.CRAWLING
    finally:
        release.set()
        worker.join(timeout=5)

    assert outcome["result"].status is SourceStatus.COMPLETED
    assert len(crawler.calls) == 1


def test_cancellation_leaves_in_flight_status(
    coordinator,
    make_source,
    crawler,
    repository,
    store,
    scope,
    sink,
) -> None:
    make_source()
    crawler.script(URL, "/")
    deadline = SyncDeadline.never()
    crawler.on_crawl = lambda url: deadline.cancel()

    with pytest.raises(SyncCancelledError) as excinfo:
        coordinator.synchronize(scope, "docs", deadline=deadline)

    assert excinfo.value.stage == "vectorize"
    record = repository.get(scope, "docs")
    assert record.status is SourceStatus.CRAWLING
    assert record.error_message is None
    assert record.failure_count == 0
    assert store.calls == []
    assert sink.events == []


def test_expired_deadline_stops_before_store_calls(
    coordinator,
    make_source,
    crawler,
    repository,
    store,
    scope,
) -> None:
    make_source(status=SourceStatus.COMPLETED)
    crawler.script(URL, "/")
    ticks = iter([0.0, 10.0])
    deadline = SyncDeadline.after(5.0, clock=lambda: next(ticks, 10.0))

    with pytest.raises(SyncCancelledError):
        coordinator.synchronize(scope, "docs", deadline=deadline)

    assert store.calls == []
    assert repository.get(scope, "docs").status is SourceStatus.COMPLETED


class _Ticker:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_collaborators_receive_the_remaining_time(
    coordinator,
    make_source,
    crawler,
    provider,
    scope,
) -> None:
    make_source()
    crawler.script(URL, "/")
    ticker = _Ticker()
    deadline = SyncDeadline.after(30.0, clock=ticker)

    def _slow_crawl(url: str) -> None:
        ticker.now = 12.0

    crawler.on_crawl = _slow_crawl
    coordinator.synchronize(scope, "docs", deadline=deadline)

    assert crawler.timeouts == [30.0]
    assert provider.timeouts == [18.0]


def test_collaborator_giving_up_at_the_deadline_is_a_cancellation(
    coordinator,
    make_source,
    crawler,
    repository,
    store,
    scope,
    sink,
) -> None:
    make_source()
    ticker = _Ticker()
    deadline = SyncDeadline.after(5.0, clock=ticker)

    def _hung_crawl(url: str) -> None:
        ticker.now = 5.0
        raise CrawlFailedError(CrawlFailureReason.TIMED_OUT, url=url)

    crawler.on_crawl = _hung_crawl

    with pytest.raises(SyncCancelledError) as excinfo:
        coordinator.synchronize(scope, "docs", deadline=deadline)

    assert excinfo.value.reason == "timed out"
    assert isinstance(excinfo.value.__cause__, CrawlFailedError)
    record = repository.get(scope, "docs")
    assert record.status is SourceStatus.CRAWLING
    assert record.failure_count == 0
    assert record.error_message is None
    assert store.calls == []
    assert sink.events == []


def test_tracking_failures_do_not_mask_sync_errors(
    repository,
    store,
    crawler,
    embedder,
    make_source,
    scope,
    clock,
) -> None:
    class _BrokenSink:
        def record(self, error) -> None:
            raise OSError("disk full")

    coordinator = SynchronizationCoordinator(
        sources=repository,
        store=store,
        crawler=crawler,
        embedder=embedder,
        expected_dim=4,
        tracker=ErrorTracker([_BrokenSink()], now=clock),
        now=clock,
    )
    make_source()
    crawler.error = CrawlFailedError(CrawlFailureReason.UNREACHABLE)

    with pytest.raises(SyncFailedError):
        coordinator.synchronize(scope, "docs")

    assert repository.get(scope, "docs").status is SourceStatus.ERROR


def test_synchronize_rejects_non_scope_values(coordinator) -> None:
    with pytest.raises(TypeError):
        coordinator.synchronize(("org-1", "bot-1"), "docs")  # type: ignore


def test_cycle_logs_progress_events(
    repository,
    store,
    crawler,
    embedder,
    make_source,
    scope,
    clock,
) -> None:
    make_source()
    crawler.script(URL, "/")

    with capture_logs() as captured:
        coordinator = SynchronizationCoordinator(
            sources=repository,
            store=store,
            crawler=crawler,
            embedder=embedder,
            expected_dim=4,
            now=clock,
            logger=get_logger(__name__),
        )
        coordinator.synchronize(scope, "docs")

    events = [entry["event"] for entry in captured]
    assert events.index("sync-start") < events.index("sync-count")
    assert "sync-delete-skipped" in events
    complete = [
        entry for entry in captured if entry["event"] == "sync-complete"
    ]
    assert complete[0]["organization_id"] == "org-1"
    assert complete[0]["source_id"] == "docs"
    assert complete[0]["upserted"] == 1


def test_synchronize_all_isolates_failures(
    coordinator,
    make_source,
    crawler,
    scope,
) -> None:
    make_source("docs", url="https://example.com")
    make_source("blog", url="https://blog.example.com")
    make_source("gone", url="https://gone.example.com")
    make_source("off", url="https://off.example.com", is_active=False)
    crawler.script("https://example.com", "/")
    crawler.script("https://blog.example.com", "/", "/post")

    def _fail_gone(url: str) -> None:
        if url == "https://gone.example.com":
            raise CrawlFailedError(CrawlFailureReason.UNREACHABLE, url=url)

    crawler.on_crawl = _fail_gone

    summary = coordinator.synchronize_all(scope)

    assert sorted(result.source_id for result in summary.results) == [
        "blog",
        "docs",
    ]
    assert dict(summary.failures) == {
        "gone": "The website could not be reached."
    }
    assert summary.skipped == ()
    assert summary.ok is False
    assert "off" not in {url for url, _ in crawler.calls}


def test_synchronize_all_due_only_filters_fresh_sources(
    coordinator,
    make_source,
    crawler,
    scope,
    clock,
) -> None:
    daily = CrawlSettingsPolicy(crawl_frequency=CrawlFrequency.DAILY)
    make_source("new", url="https://new.example.com")
    make_source(
        "stale",
        url="https://stale.example.com",
        status=SourceStatus.COMPLETED,
        crawl_settings=daily,
        last_synced_at=clock(),
    )
    make_source(
        "fresh",
        url="https://fresh.example.com",
        status=SourceStatus.COMPLETED,
        crawl_settings=daily,
        last_synced_at=clock.advance(hours=20),
    )
    make_source(
        "broken",
        url="https://broken.example.com",
        status=SourceStatus.ERROR,
        error_message="The website could not be reached.",
    )
    clock.advance(hours=6)
    for url in ("https://new.example.com", "https://stale.example.com"):
        crawler.pages[url] = [KnowledgeItem(url=url, title="Home", text="Hi")]

    summary = coordinator.synchronize_all(scope, due_only=True)

    assert sorted(result.source_id for result in summary.results) == [
        "new",
        "stale",
    ]
    assert summary.ok is True
