"""Workspace path helpers for :mod:`kbsync`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

__all__ = [
    "CONFIG_FILENAME",
    "WorkspacePaths",
    "resolve_workspace",
]

CONFIG_FILENAME = "kbsync.toml"


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Resolved locations for a workspace instance.

    Example:
        >>> from pathlib import Path
        >>> paths = WorkspacePaths.for_root(Path("/tmp/kbsync"))
        >>> paths.snapshots_dir.name
        'snapshots'
    """

    workspace: Path
    config_file: Path
    logs_dir: Path
    locks_dir: Path
    snapshots_dir: Path

    @classmethod
    def for_root(cls, root: Path) -> "WorkspacePaths":
        """Return the canonical layout rooted at ``root``."""

        return cls(
            workspace=root,
            config_file=root / CONFIG_FILENAME,
            logs_dir=root / "logs",
            locks_dir=root / "locks",
            snapshots_dir=root / "snapshots",
        )

    def iter_directories(self) -> Iterable[Path]:
        """Yield every directory managed within the workspace."""

        yield from (
            self.workspace,
            self.logs_dir,
            self.locks_dir,
            self.snapshots_dir,
        )

    def ensure_directories(self) -> None:
        """Create the managed directories when missing."""

        for directory in self.iter_directories():
            directory.mkdir(parents=True, exist_ok=True)

    def database_path(self, database: str | Path) -> Path:
        """Return ``database`` resolved against the workspace root."""

        candidate = Path(database).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.workspace / candidate

    def errors_file(self) -> Path:
        """Return the JSON lines file receiving tracked errors."""

        return self.logs_dir / "errors.jsonl"


def resolve_workspace(
    *,
    workspace_override: Path | None = None,
    env_override: Path | None = None,
) -> WorkspacePaths:
    """Resolve canonical workspace locations.

    Args:
        workspace_override: Optional override provided by CLI flags.
        env_override: Optional override from environment variables.

    Returns:
        Resolved workspace paths after precedence rules are applied.

    Raises:
        ValueError: If the resolved workspace points to a regular file.
    """

    base = workspace_override or env_override or Path.home() / ".kbsync"
    raw = Path(base).expanduser()
    if not raw.is_absolute():
        raw = Path.cwd() / raw
    workspace = raw.resolve(strict=False)

    if workspace.exists() and workspace.is_file():
        raise ValueError(f"Workspace file path not allowed: {workspace}")

    return WorkspacePaths.for_root(workspace)
