"""Helpers for the ``kbsync init`` command."""

from __future__ import annotations

from pathlib import Path
from typing import Mapping

from kbsync.core.config import (
    AppConfig,
    load_config,
    load_packaged_defaults,
    read_user_config,
    render_user_config,
)
from kbsync.core.database import SqliteDatabase
from kbsync.core.paths import resolve_workspace


def init_workspace(
    *,
    workspace: Path,
    force: bool = False,
    log_level: str | None = None,
    env_overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Create the workspace layout, config file, and database schema.

    An existing ``kbsync.toml`` is kept (and honored) unless ``force`` is
    set, in which case it is regenerated from the packaged defaults.

    Example:
        >>> from pathlib import Path
        >>> config = init_workspace(
        ...     workspace=Path("/tmp/kbsync-example"),
        ... )  # doctest: +SKIP
        >>> config.store.database  # doctest: +SKIP
        'kbsync.sqlite3'
    """

    paths = resolve_workspace(workspace_override=workspace)
    paths.ensure_directories()

    user_config = None if force else read_user_config(paths.config_file)
    cli_overrides: dict[str, object] = {"workspace": str(paths.workspace)}
    if log_level:
        cli_overrides["log_level"] = log_level

    config = load_config(
        defaults=load_packaged_defaults(),
        user_config=user_config,
        env_config=env_overrides,
        cli_overrides=cli_overrides,
    )

    if force or not paths.config_file.exists():
        paths.config_file.write_text(
            render_user_config(config),
            encoding="utf-8",
        )

    SqliteDatabase(
        paths.database_path(config.store.database),
        busy_timeout=config.store.busy_timeout,
    ).ensure_schema()
    return config


__all__ = ["init_workspace"]
