"""Tests for :mod:`kbsync.cli.init` and the ``kbsync init`` command."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest
import tomlkit
from typer.testing import CliRunner

from kbsync.cli import create_app
from kbsync.cli.init import init_workspace
from kbsync.core.config import DEFAULTS_RESOURCE_NAME
from kbsync.core.database import SqliteDatabase


@pytest.fixture()
def configured(monkeypatch: pytest.MonkeyPatch) -> dict[str, object]:
    """Replace logging setup with a recorder."""

    calls: dict[str, object] = {}

    def fake_configure_logging(*, level: str, workspace_path: Path) -> None:
        calls["level"] = level
        calls["workspace"] = workspace_path

    monkeypatch.setattr("kbsync.cli.configure_logging", fake_configure_logging)
    return calls


def test_init_workspace_seeds_config_and_schema(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    config = init_workspace(workspace=workspace)

    config_path = workspace / "kbsync.toml"
    assert config_path.exists()
    assert not (workspace / DEFAULTS_RESOURCE_NAME).exists()
    for name in ("logs", "locks", "snapshots"):
        assert (workspace / name).is_dir()

    rendered = tomllib.loads(config_path.read_text(encoding="utf-8"))
    assert rendered["workspace"]["root"].endswith("workspace")
    assert rendered["log_level"] == "INFO"
    assert rendered["store"]["embedding_dim"] == 1536

    assert config.workspace == workspace.resolve()
    with SqliteDatabase(workspace / "kbsync.sqlite3").connect() as conn:
        tables = {
            row["name"]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )
        }
    assert {"knowledge_sources", "knowledge_vectors"} <= tables


def test_init_workspace_keeps_existing_config(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"
    init_workspace(workspace=workspace)

    config_path = workspace / "kbsync.toml"
    document = tomlkit.loads(config_path.read_text(encoding="utf-8"))
    document["store"]["embedding_dim"] = 8
    config_path.write_text(tomlkit.dumps(document), encoding="utf-8")

    config = init_workspace(workspace=workspace, log_level="debug")

    assert config.store.embedding_dim == 8
    assert config.log_level == "DEBUG"
    reloaded = tomllib.loads(config_path.read_text(encoding="utf-8"))
    assert reloaded["store"]["embedding_dim"] == 8


def test_init_workspace_force_regenerates_config(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"
    init_workspace(workspace=workspace)
    config_path = workspace / "kbsync.toml"
    config_path.write_text("[store]\nembedding_dim = 8\n", encoding="utf-8")

    config = init_workspace(workspace=workspace, force=True)

    assert config.store.embedding_dim == 1536
    rendered = tomllib.loads(config_path.read_text(encoding="utf-8"))
    assert rendered["store"]["embedding_dim"] == 1536


def test_init_command_reports_summary(
    tmp_path: Path,
    configured: dict[str, object],
) -> None:
    workspace = tmp_path / "workspace"

    result = CliRunner().invoke(
        create_app(),
        ["init", "--workspace", str(workspace), "--log-level", "warning"],
    )

    assert result.exit_code == 0, result.output
    assert "Workspace initialized" in result.output
    assert f"database: {workspace.resolve() / 'kbsync.sqlite3'}" in (
        result.output
    )
    assert "embeddings: openai:text-embedding-3-small" in result.output
    assert configured == {
        "level": "WARNING",
        "workspace": workspace.resolve(),
    }


def test_init_command_notes_existing_and_forced_configs(
    tmp_path: Path,
    configured: dict[str, object],
) -> None:
    workspace = tmp_path / "workspace"
    runner = CliRunner()
    app = create_app()
    runner.invoke(app, ["init", "-w", str(workspace)])

    again = runner.invoke(app, ["init", "-w", str(workspace)])
    forced = runner.invoke(app, ["init", "-w", str(workspace), "--force"])

    assert "existing config detected" in again.output
    assert "regenerated from packaged defaults" in forced.output


def test_init_command_uses_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    configured: dict[str, object],
) -> None:
    workspace = tmp_path / "from-env"
    monkeypatch.setenv("KBSYNC_WORKSPACE", str(workspace))
    monkeypatch.setenv("KBSYNC_LOG_LEVEL", "error")

    result = CliRunner().invoke(create_app(), ["init"])

    assert result.exit_code == 0, result.output
    assert (workspace / "kbsync.toml").exists()
    assert configured["level"] == "ERROR"


def test_init_command_rejects_file_workspace(
    tmp_path: Path,
    configured: dict[str, object],
) -> None:
    target = tmp_path / "not-a-dir"
    target.write_text("", encoding="utf-8")

    result = CliRunner().invoke(create_app(), ["init", "-w", str(target)])

    assert result.exit_code == 1
    assert "Failed to initialize workspace" in result.output
    assert configured == {}
