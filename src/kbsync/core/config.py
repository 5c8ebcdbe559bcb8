"""Configuration models and loaders for :mod:`kbsync`."""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from pathlib import Path
from typing import Any, Mapping

import tomllib
import tomlkit
from pydantic import BaseModel, Field, field_validator, model_validator

from kbsync.resources import read_resource_text

DEFAULTS_RESOURCE_NAME = "kbsync.defaults.toml"


class StoreSettings(BaseModel):
    """SQLite store configuration values."""

    database: str = Field(
        default="kbsync.sqlite3",
        description=(
            "Database file holding sources and vectors; relative paths "
            "resolve against the workspace root."
        ),
    )
    embedding_dim: int = Field(
        default=1536,
        ge=1,
        description="Vector dimension every stored chunk must match.",
    )
    busy_timeout: float = Field(
        default=5.0,
        ge=0.0,
        description="Seconds SQLite waits on a locked database.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }


class SyncSettings(BaseModel):
    """Synchronization cycle configuration values."""

    max_retryable_failures: int = Field(
        default=3,
        ge=1,
        description=(
            "Consecutive retryable failures before a source is marked as "
            "errored."
        ),
    )
    deadline_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Optional per-cycle deadline in seconds.",
    )
    lock_timeout: float = Field(
        default=0.0,
        ge=0.0,
        description=(
            "Seconds to wait for a source lock before reporting the source "
            "as already in progress."
        ),
    )
    lock_poll_interval: float = Field(
        default=0.05,
        gt=0.0,
        description="Polling interval in seconds while waiting on a lock.",
    )
    default_max_pages: int = Field(
        default=50,
        ge=1,
        description=(
            "Page limit applied when stored crawl settings omit or garble "
            "maxPages."
        ),
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }


class EmbeddingSettings(BaseModel):
    """Embedding provider configuration values."""

    provider: str = Field(
        default="openai",
        description="Registered embedding provider key.",
    )
    model: str = Field(
        default="text-embedding-3-small",
        description="Embedding model requested from the provider.",
    )
    batch_size: int = Field(
        default=64,
        ge=1,
        description="Maximum texts sent per embedding request.",
    )
    timeout: float | None = Field(
        default=None,
        gt=0.0,
        description="Optional request timeout in seconds.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("Embedding provider cannot be blank.")
        return normalized


class TrackingSettings(BaseModel):
    """Error tracking configuration values."""

    errors_file: bool = Field(
        default=True,
        description="Append tracked errors to the workspace errors file.",
    )

    model_config = {"validate_assignment": True}


class AppConfig(BaseModel):
    """Root configuration for the :mod:`kbsync` application."""

    workspace: Path = Field(
        default_factory=lambda: Path("~/.kbsync").expanduser(),
        description="Absolute path to the workspace root.",
    )
    log_level: str = Field(
        default="INFO",
        description="Default logging level for the application runtime.",
    )
    store: StoreSettings = Field(
        default_factory=StoreSettings,
        description="SQLite store configuration values.",
    )
    sync: SyncSettings = Field(
        default_factory=SyncSettings,
        description="Synchronization cycle configuration values.",
    )
    embeddings: EmbeddingSettings = Field(
        default_factory=EmbeddingSettings,
        description="Embedding provider configuration values.",
    )
    tracking: TrackingSettings = Field(
        default_factory=TrackingSettings,
        description="Error tracking configuration values.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @model_validator(mode="before")
    @classmethod
    def _flatten_workspace(cls, value: Any) -> Any:
        """Accept the ``[workspace] root = ...`` table used in TOML files."""

        if not isinstance(value, MappingABC):
            return value
        data = dict(value)
        workspace = data.get("workspace")
        if isinstance(workspace, MappingABC):
            root = workspace.get("root")
            if root is None:
                data.pop("workspace")
            else:
                data["workspace"] = root
        return data

    @model_validator(mode="after")
    def _post_process(self) -> "AppConfig":
        object.__setattr__(self, "log_level", self.log_level.upper())
        object.__setattr__(self, "workspace", self.workspace.expanduser())
        return self


def read_packaged_defaults_text() -> str:
    """Return the raw packaged defaults TOML content."""

    return read_resource_text(DEFAULTS_RESOURCE_NAME)


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> defaults = load_packaged_defaults()
        >>> defaults["sync"]["default_max_pages"]
        50
    """

    return tomllib.loads(read_packaged_defaults_text())


def read_user_config(path: Path) -> dict[str, Any] | None:
    """Parse the workspace ``kbsync.toml`` when it exists.

    Raises:
        ValueError: If the file is not valid TOML.
    """

    if not path.exists():
        return None
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Invalid TOML in {path}: {exc}") from exc


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    *,
    defaults: Mapping[str, Any],
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Args:
        defaults: Packaged defaults shipped with the application.
        user_config: Parsed workspace ``kbsync.toml`` content.
        env_config: Settings derived from environment variables.
        cli_overrides: Settings supplied via CLI flags.

    Returns:
        A validated :class:`AppConfig` instance.
    """

    stack: dict[str, Any] = dict(defaults)
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)
    return AppConfig.model_validate(stack)


def render_user_config(
    config: AppConfig,
    *,
    include_defaults: bool = True,
) -> str:
    """Render a ``kbsync.toml`` document for users to customize."""

    document = tomlkit.document()

    if include_defaults:
        document.add(tomlkit.comment("Generated by kbsync init"))
        document.add(
            tomlkit.comment(
                "Precedence: CLI flags > env vars > kbsync.toml > defaults"
            )
        )
        document.add(tomlkit.comment("Environment overrides:"))
        document.add(tomlkit.comment("  KBSYNC_WORKSPACE=/path/to/workspace"))
        document.add(tomlkit.comment("  KBSYNC_LOG_LEVEL=info"))
        document.add(tomlkit.nl())

    document["log_level"] = config.log_level

    workspace_table = tomlkit.table()
    workspace_table["root"] = str(config.workspace)
    document["workspace"] = workspace_table

    store_table = tomlkit.table()
    store_table["database"] = config.store.database
    store_table["embedding_dim"] = config.store.embedding_dim
    store_table["busy_timeout"] = config.store.busy_timeout
    document["store"] = store_table

    sync_table = tomlkit.table()
    sync_table["max_retryable_failures"] = config.sync.max_retryable_failures
    if config.sync.deadline_seconds is not None:
        sync_table["deadline_seconds"] = config.sync.deadline_seconds
    sync_table["lock_timeout"] = config.sync.lock_timeout
    sync_table["lock_poll_interval"] = config.sync.lock_poll_interval
    sync_table["default_max_pages"] = config.sync.default_max_pages
    document["sync"] = sync_table

    embeddings_table = tomlkit.table()
    embeddings_table["provider"] = config.embeddings.provider
    embeddings_table["model"] = config.embeddings.model
    embeddings_table["batch_size"] = config.embeddings.batch_size
    if config.embeddings.timeout is not None:
        embeddings_table["timeout"] = config.embeddings.timeout
    document["embeddings"] = embeddings_table

    tracking_table = tomlkit.table()
    tracking_table["errors_file"] = config.tracking.errors_file
    document["tracking"] = tracking_table

    return tomlkit.dumps(document)


__all__ = [
    "AppConfig",
    "DEFAULTS_RESOURCE_NAME",
    "EmbeddingSettings",
    "StoreSettings",
    "SyncSettings",
    "TrackingSettings",
    "load_config",
    "load_packaged_defaults",
    "read_packaged_defaults_text",
    "read_user_config",
    "render_user_config",
]
