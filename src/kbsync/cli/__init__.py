"""Command-line interface primitives for :mod:`kbsync`.

This module exposes the Typer application behind the ``kbsync`` console
script and wires the ``init`` command into the workspace bootstrap helpers.

Example:
    >>> import typer
    >>> from kbsync.cli import create_app
    >>> app = create_app()
    >>> isinstance(app, typer.Typer)
    True
"""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path

import typer

from kbsync.cli.init import init_workspace
from kbsync.cli.sources import create_sources_app
from kbsync.core.config import DEFAULTS_RESOURCE_NAME, AppConfig
from kbsync.core.logging import configure_logging, get_logger
from kbsync.core.paths import WorkspacePaths

_app_help = (
    "Keep per-tenant knowledge base vectors in sync with their sources."
    "\n\n"
    "Use `kbsync init` to bootstrap a workspace and populate `kbsync.toml`."
)


def _emit_workspace_summary(
    *,
    config: AppConfig,
    database: Path,
    existing: bool,
    force: bool,
) -> None:
    typer.secho("Workspace initialized", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  workspace: {config.workspace}")
    typer.echo(f"  config: {config.workspace / 'kbsync.toml'}")
    typer.echo(f"  defaults: packaged resource ({DEFAULTS_RESOURCE_NAME})")
    typer.echo(f"  database: {database}")
    typer.echo(f"  log level: {config.log_level}")
    embeddings = f"{config.embeddings.provider}:{config.embeddings.model}"
    typer.echo(f"  embeddings: {embeddings}")
    if existing and not force:
        typer.echo("  note: existing config detected and left untouched")
    elif force:
        typer.echo("  note: config regenerated from packaged defaults")


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``kbsync`` CLI."""

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
        invoke_without_command=False,
        cls=typer.core.TyperGroup,
    )

    app.add_typer(create_sources_app(), name="sources")

    @app.callback()
    def main_callback() -> None:
        """Top-level CLI callback ensuring subcommands are dispatched."""

        return None

    @app.command(
        "init",
        help="Bootstrap a workspace, its config file, and the database.",
    )
    def init_command(
        workspace: Path | None = typer.Option(
            None,
            "--workspace",
            "-w",
            help=(
                "Override the workspace directory (defaults to $HOME/.kbsync "
                "or KBSYNC_WORKSPACE)."
            ),
        ),
        force: bool = typer.Option(
            False,
            "--force",
            help="Regenerate kbsync.toml even when it already exists.",
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
    ) -> None:
        """Initialize (or re-initialize) the local workspace."""

        env_workspace = os.environ.get("KBSYNC_WORKSPACE")
        env_log_level = os.environ.get("KBSYNC_LOG_LEVEL")
        target = workspace or (
            Path(env_workspace).expanduser() if env_workspace else None
        )
        target = target or Path.home() / ".kbsync"
        existing = (target.expanduser() / "kbsync.toml").exists()

        env_overrides = {"log_level": env_log_level} if env_log_level else None
        try:
            config = init_workspace(
                workspace=target,
                force=force,
                log_level=log_level,
                env_overrides=env_overrides,
            )
        except (ValueError, OSError, sqlite3.Error) as exc:
            typer.secho(
                f"Failed to initialize workspace: {exc}",
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1) from exc

        configure_logging(
            level=config.log_level,
            workspace_path=config.workspace,
        )
        logger = get_logger(__name__, command="init")
        database = WorkspacePaths.for_root(config.workspace).database_path(
            config.store.database
        )
        logger.info(
            "init-complete",
            workspace=str(config.workspace),
            database=str(database),
            force=force,
        )
        _emit_workspace_summary(
            config=config,
            database=database,
            existing=existing,
            force=force,
        )

    return app


__all__ = ["create_app"]
