"""Typer command group for managing knowledge sources."""

from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn

import typer

from kbsync.core.config import (
    AppConfig,
    load_config,
    load_packaged_defaults,
    read_user_config,
)
from kbsync.core.database import SqliteDatabase
from kbsync.core.logging import Logger, configure_logging, get_logger
from kbsync.core.paths import WorkspacePaths, resolve_workspace
from kbsync.crawl.snapshot import SnapshotCrawler
from kbsync.embeddings.embedder import ProviderEmbedder
from kbsync.embeddings.errors import EmbeddingProviderError
from kbsync.embeddings.providers import (
    ProviderRegistry,
    ProviderRegistryError,
    create_default_provider_registry,
)
from kbsync.sources.errors import SourceError
from kbsync.sources.models import SourceRecord, SourceStatus, SourceType
from kbsync.sources.repository import SqliteSourceRepository
from kbsync.sources.service import SourceService
from kbsync.sync.coordinator import SynchronizationCoordinator
from kbsync.sync.deadline import SyncDeadline
from kbsync.sync.errors import SyncAlreadyInProgressError, SyncError
from kbsync.sync.locks import SourceLockManager
from kbsync.sync.policy import IngestionErrorPolicy
from kbsync.sync.tracking import (
    ErrorSink,
    ErrorTracker,
    JsonLinesErrorSink,
    LoggingErrorSink,
)
from kbsync.tenancy import TenantScope
from kbsync.vectors.errors import VectorStoreError
from kbsync.vectors.sqlite import SqliteVectorStore

_BUSY_EXIT_CODE = 2


@dataclass(slots=True)
class SourcesCLIContext:
    """Shared context object carried across ``kbsync sources`` commands."""

    paths: WorkspacePaths
    config: AppConfig
    scope: TenantScope
    repository: SqliteSourceRepository
    store: SqliteVectorStore
    locks: SourceLockManager
    tracker: ErrorTracker
    service: SourceService
    registry: ProviderRegistry
    logger: Logger

    def build_coordinator(self) -> SynchronizationCoordinator:
        """Wire the coordinator; the embedding provider is created here.

        Raises:
            ProviderRegistryError: If the configured provider is unknown.
            EmbeddingProviderError: If the provider cannot be configured.
        """

        settings = self.config.embeddings
        provider_config: dict[str, object] = {}
        if settings.timeout is not None:
            provider_config["timeout"] = settings.timeout
        provider = self.registry.create(
            settings.provider,
            logger=self.logger,
            config=provider_config,
        )
        embedder = ProviderEmbedder(
            provider,
            model=settings.model,
            batch_size=settings.batch_size,
            expected_dim=self.config.store.embedding_dim,
            logger=self.logger,
        )
        return SynchronizationCoordinator(
            sources=self.repository,
            store=self.store,
            crawler=SnapshotCrawler(
                self.paths.snapshots_dir,
                logger=self.logger,
            ),
            embedder=embedder,
            expected_dim=self.config.store.embedding_dim,
            locks=self.locks,
            error_policy=IngestionErrorPolicy(
                max_retryable_failures=self.config.sync.max_retryable_failures,
            ),
            tracker=self.tracker,
            logger=self.logger,
        )

    def deadline(self, seconds: float | None) -> SyncDeadline:
        if seconds is None:
            seconds = self.config.sync.deadline_seconds
        return SyncDeadline.after(seconds)


_sources_app = typer.Typer(
    name="sources",
    help=(
        "Manage knowledge sources for one tenant scope "
        "(add, list, show, resync, deactivate, remove)."
    ),
    no_args_is_help=True,
    invoke_without_command=False,
)


def _resolve_workspace_override(workspace: Path | None) -> WorkspacePaths:
    env_workspace = os.environ.get("KBSYNC_WORKSPACE")
    env_override = Path(env_workspace).expanduser() if env_workspace else None
    return resolve_workspace(
        workspace_override=workspace,
        env_override=env_override,
    )


def _require_context(ctx: typer.Context) -> SourcesCLIContext:
    context = getattr(ctx, "obj", None)
    if not isinstance(context, SourcesCLIContext):
        typer.secho(
            "Internal error: sources context not initialized.",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    return context


def _format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "never"
    return value.isoformat()


def _status_color(status: SourceStatus) -> str | None:
    if status is SourceStatus.COMPLETED:
        return typer.colors.GREEN
    if status is SourceStatus.PENDING:
        return typer.colors.YELLOW
    if status.in_progress:
        return typer.colors.BRIGHT_YELLOW
    if status is SourceStatus.ERROR:
        return typer.colors.RED
    return None


def _emit_record(record: SourceRecord) -> None:
    typer.secho(f"source: {record.id}", fg=typer.colors.CYAN, bold=True)
    typer.echo(f"  name: {record.name}")
    typer.echo(f"  url: {record.url}")
    typer.echo(f"  type: {record.source_type.value}")
    typer.echo(f"  active: {'yes' if record.is_active else 'no'}")
    typer.secho(
        f"  status: {record.status.value}",
        fg=_status_color(record.status),
    )
    typer.echo(f"  pages: {record.page_count}")
    typer.echo(f"  last synced: {_format_timestamp(record.last_synced_at)}")
    settings = record.crawl_settings
    typer.echo(
        f"  crawl: max {settings.max_pages} pages, depth "
        f"{settings.max_depth}, {settings.crawl_frequency.value}"
    )
    if record.failure_count:
        typer.echo(f"  failures: {record.failure_count}")
    if record.error_message:
        typer.secho(f"  error: {record.error_message}", fg=typer.colors.RED)


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def _handle_failure(
    context: SourcesCLIContext,
    *,
    action: str,
    error: Exception,
    source: str | None = None,
) -> NoReturn:
    typer.secho(f"{action} failed: {error}", fg=typer.colors.RED)
    payload: dict[str, object] = {
        "error": str(error),
        "error_type": error.__class__.__name__,
        **context.scope.as_filter(),
    }
    if source is not None:
        payload["source_id"] = source
    context.logger.bind(action=action).error(
        "source-command-failed",
        **payload,
    )
    code = 1
    if isinstance(error, SyncAlreadyInProgressError):
        code = _BUSY_EXIT_CODE
    raise typer.Exit(code=code) from error


def _confirm(prompt: str) -> None:
    if not typer.confirm(prompt, default=False):
        typer.echo("Operation cancelled.")
        raise typer.Exit(code=1)


def _load_workspace_config(paths: WorkspacePaths) -> AppConfig:
    user_config = read_user_config(paths.config_file)
    if user_config is None:
        typer.secho(
            (
                f"Workspace config not found at {paths.config_file}. "
                "Run `kbsync init` first."
            ),
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    env_log_level = os.environ.get("KBSYNC_LOG_LEVEL")
    return load_config(
        defaults=load_packaged_defaults(),
        user_config=user_config,
        env_config={"log_level": env_log_level} if env_log_level else None,
        cli_overrides={"workspace": str(paths.workspace)},
    )


@_sources_app.callback()
def configure_sources_commands(
    ctx: typer.Context,
    organization: str = typer.Option(
        ...,
        "--org",
        "-o",
        envvar="KBSYNC_ORG",
        help="Organization id of the tenant scope.",
    ),
    chatbot: str = typer.Option(
        ...,
        "--chatbot",
        "-c",
        envvar="KBSYNC_CHATBOT",
        help="Chatbot configuration id of the tenant scope.",
    ),
    workspace: Path | None = typer.Option(
        None,
        "--workspace",
        "-w",
        help=(
            "Override workspace directory (defaults to KBSYNC_WORKSPACE or "
            "~/.kbsync)."
        ),
    ),
) -> None:
    registry = ctx.obj if isinstance(ctx.obj, ProviderRegistry) else None

    try:
        paths = _resolve_workspace_override(workspace)
        scope = TenantScope(organization, chatbot)
        config = _load_workspace_config(paths)
    except ValueError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    configure_logging(level=config.log_level, workspace_path=config.workspace)
    logger = get_logger(__name__, command="sources")
    paths.ensure_directories()

    database = SqliteDatabase(
        paths.database_path(config.store.database),
        busy_timeout=config.store.busy_timeout,
    )
    try:
        database.ensure_schema()
    except sqlite3.Error as exc:
        typer.secho(f"Database error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    sinks: list[ErrorSink] = [LoggingErrorSink(logger=logger)]
    if config.tracking.errors_file:
        sinks.append(JsonLinesErrorSink(paths.errors_file()))
    tracker = ErrorTracker(sinks, logger=logger)
    locks = SourceLockManager(
        locks_dir=paths.locks_dir,
        timeout=config.sync.lock_timeout,
        poll_interval=config.sync.lock_poll_interval,
        logger=logger,
    )
    repository = SqliteSourceRepository(
        database,
        default_max_pages=config.sync.default_max_pages,
        logger=logger,
    )
    store = SqliteVectorStore(database, logger=logger)

    ctx.obj = SourcesCLIContext(
        paths=paths,
        config=config,
        scope=scope,
        repository=repository,
        store=store,
        locks=locks,
        tracker=tracker,
        service=SourceService(
            repository=repository,
            store=store,
            locks=locks,
            tracker=tracker,
            default_max_pages=config.sync.default_max_pages,
            logger=logger,
        ),
        registry=registry or create_default_provider_registry(),
        logger=logger,
    )


@_sources_app.command("add", help="Register a new source in pending state.")
def add_source(
    ctx: typer.Context,
    url: str = typer.Argument(..., metavar="URL", help="Source URL."),
    name: str = typer.Option(..., "--name", "-n", help="Display name."),
    source_id: str | None = typer.Option(
        None,
        "--id",
        help="Explicit source id (generated when omitted).",
    ),
    source_type: SourceType = typer.Option(
        SourceType.WEBSITE_CRAWLED,
        "--type",
        "-t",
        case_sensitive=False,
        help="Kind of content the source provides.",
    ),
    description: str | None = typer.Option(
        None,
        "--description",
        "-d",
        help="Optional description.",
    ),
    settings: str | None = typer.Option(
        None,
        "--settings",
        "-s",
        metavar="JSON",
        help=(
            "Crawl settings object, e.g. '{\"maxPages\": 20, "
            "\"crawlFrequency\": \"weekly\"}'. Malformed fields use defaults."
        ),
    ),
) -> None:
    context = _require_context(ctx)

    raw_settings: Any = None
    if settings is not None:
        try:
            raw_settings = json.loads(settings)
        except json.JSONDecodeError as exc:
            _handle_failure(
                context,
                action="add",
                error=ValueError(f"--settings is not valid JSON: {exc}"),
                source=source_id,
            )

    try:
        record = context.service.register(
            context.scope,
            url=url,
            name=name,
            source_type=source_type,
            description=description,
            crawl_settings=raw_settings,
            source_id=source_id,
        )
    except (SourceError, ValueError) as exc:
        _handle_failure(context, action="add", error=exc, source=source_id)
    _emit_record(record)


@_sources_app.command("list", help="List the scope's sources.")
def list_sources(
    ctx: typer.Context,
    active_only: bool = typer.Option(
        False,
        "--active-only",
        help="Hide deactivated sources.",
    ),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    context = _require_context(ctx)

    try:
        records = context.service.list(context.scope, active_only=active_only)
    except SourceError as exc:
        _handle_failure(context, action="list", error=exc)

    if as_json:
        _emit_json([record.to_mapping() for record in records])
        return
    if not records:
        typer.secho(
            f"No sources registered for {context.scope}.",
            fg=typer.colors.YELLOW,
        )
        return
    for index, record in enumerate(records):
        if index:
            typer.echo()
        _emit_record(record)


@_sources_app.command("show", help="Show one source.")
def show_source(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., metavar="SOURCE_ID"),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    context = _require_context(ctx)

    try:
        record = context.service.get(context.scope, source_id)
    except SourceError as exc:
        _handle_failure(context, action="show", error=exc, source=source_id)
    if as_json:
        _emit_json(record.to_mapping())
    else:
        _emit_record(record)


@_sources_app.command(
    "resync",
    help="Resynchronize a source now, or queue it with --queue.",
)
def resync_source(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., metavar="SOURCE_ID"),
    queue: bool = typer.Option(
        False,
        "--queue",
        help="Only mark the source pending for the next scheduled run.",
    ),
    deadline: float | None = typer.Option(
        None,
        "--deadline",
        min=0.001,
        help="Abort the cycle after this many seconds.",
    ),
) -> None:
    context = _require_context(ctx)

    if queue:
        try:
            record = context.service.request_resync(context.scope, source_id)
        except (SourceError, SyncError) as exc:
            _handle_failure(
                context,
                action="resync",
                error=exc,
                source=source_id,
            )
        _emit_record(record)
        return

    try:
        coordinator = context.build_coordinator()
        result = coordinator.synchronize(
            context.scope,
            source_id,
            deadline=context.deadline(deadline),
        )
    except (
        SourceError,
        SyncError,
        ProviderRegistryError,
        EmbeddingProviderError,
    ) as exc:
        _handle_failure(context, action="resync", error=exc, source=source_id)

    typer.secho(
        f"Synchronized {source_id}: {result.status.value}",
        fg=typer.colors.GREEN,
    )
    typer.echo(f"  previous vectors: {result.previous_count}")
    if result.delete_skipped:
        typer.echo("  deleted: skipped (nothing stored)")
    else:
        typer.echo(f"  deleted: {result.deleted_count}")
    typer.echo(f"  upserted: {result.upserted_count}")
    typer.echo(f"  pages: {result.page_count}")


@_sources_app.command(
    "resync-all",
    help="Resynchronize every active source in the scope.",
)
def resync_all_sources(
    ctx: typer.Context,
    due_only: bool = typer.Option(
        False,
        "--due-only",
        help="Only pending, interrupted, or due sources.",
    ),
    deadline: float | None = typer.Option(
        None,
        "--deadline",
        min=0.001,
        help="Stop the batch after this many seconds.",
    ),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    context = _require_context(ctx)

    try:
        coordinator = context.build_coordinator()
        summary = coordinator.synchronize_all(
            context.scope,
            due_only=due_only,
            deadline=context.deadline(deadline),
        )
    except (SourceError, ProviderRegistryError, EmbeddingProviderError) as exc:
        _handle_failure(context, action="resync-all", error=exc)

    if as_json:
        _emit_json(summary.to_mapping())
    else:
        typer.secho(
            f"Synchronized {len(summary.results)} source(s)",
            fg=typer.colors.GREEN if summary.ok else typer.colors.YELLOW,
        )
        for source_id in summary.skipped:
            typer.echo(f"  skipped: {source_id}")
        for source_id, message in sorted(summary.failures.items()):
            typer.secho(
                f"  failed: {source_id}: {message}",
                fg=typer.colors.RED,
            )
    if not summary.ok:
        raise typer.Exit(code=1)


@_sources_app.command("deactivate", help="Stop synchronizing a source.")
def deactivate_source(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., metavar="SOURCE_ID"),
) -> None:
    context = _require_context(ctx)

    try:
        record = context.service.deactivate(context.scope, source_id)
    except (SourceError, SyncError) as exc:
        _handle_failure(
            context,
            action="deactivate",
            error=exc,
            source=source_id,
        )
    _emit_record(record)


@_sources_app.command("activate", help="Resume synchronizing a source.")
def activate_source(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., metavar="SOURCE_ID"),
) -> None:
    context = _require_context(ctx)

    try:
        record = context.service.activate(context.scope, source_id)
    except (SourceError, SyncError) as exc:
        _handle_failure(
            context,
            action="activate",
            error=exc,
            source=source_id,
        )
    _emit_record(record)


@_sources_app.command("purge", help="Delete a source's stored vectors.")
def purge_source(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., metavar="SOURCE_ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    context = _require_context(ctx)
    if not yes:
        _confirm(f"Delete every stored vector for source {source_id!r}?")

    try:
        deleted = context.service.purge_vectors(context.scope, source_id)
    except (SourceError, SyncError, VectorStoreError) as exc:
        _handle_failure(context, action="purge", error=exc, source=source_id)
    typer.secho(
        f"Purged {deleted} vector(s) for {source_id}",
        fg=typer.colors.GREEN,
    )


@_sources_app.command(
    "remove",
    help="Delete a deactivated source and, by default, its vectors.",
)
def remove_source(
    ctx: typer.Context,
    source_id: str = typer.Argument(..., metavar="SOURCE_ID"),
    keep_vectors: bool = typer.Option(
        False,
        "--keep-vectors",
        help="Leave stored vectors in place.",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    context = _require_context(ctx)
    if not yes:
        _confirm(f"Remove source {source_id!r}?")

    try:
        deleted = context.service.remove(
            context.scope,
            source_id,
            purge=not keep_vectors,
        )
    except (SourceError, SyncError, VectorStoreError) as exc:
        _handle_failure(context, action="remove", error=exc, source=source_id)
    typer.secho(
        f"Removed source {source_id} ({deleted} vector(s) deleted)",
        fg=typer.colors.GREEN,
    )


@_sources_app.command("errors", help="Show recently tracked errors.")
def show_errors(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", min=1, help="Entries to show."),
) -> None:
    context = _require_context(ctx)

    scope = context.scope.as_filter()
    entries = [
        entry
        for entry in JsonLinesErrorSink(context.paths.errors_file()).read()
        if all(entry.get(key) == value for key, value in scope.items())
    ]
    if not entries:
        typer.secho("No tracked errors.", fg=typer.colors.YELLOW)
        return
    for entry in entries[-limit:]:
        typer.echo(
            f"{entry['occurred_at']} {entry['operation']} "
            f"{entry.get('source_id') or '-'} "
            f"{entry['error_type']}: {entry['message']}"
        )


def create_sources_app() -> typer.Typer:
    """Return the Typer app handling ``kbsync sources`` subcommands."""

    return _sources_app


__all__ = ["SourcesCLIContext", "create_sources_app"]
