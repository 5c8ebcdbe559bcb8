"""Tests for :mod:`kbsync.resources`."""

from __future__ import annotations

import tomllib

import pytest

from kbsync.resources import get_resource, read_resource_text


def test_get_resource_missing_file_raises() -> None:
    with pytest.raises(FileNotFoundError):
        get_resource("does-not-exist.toml")


def test_packaged_defaults_parse() -> None:
    defaults = tomllib.loads(read_resource_text("kbsync.defaults.toml"))

    assert defaults["store"]["embedding_dim"] == 1536
    assert defaults["embeddings"]["provider"] == "openai"


def test_schema_is_shipped() -> None:
    schema = read_resource_text("schema.sql")

    assert "CREATE TABLE IF NOT EXISTS knowledge_sources" in schema
    assert "CREATE TABLE IF NOT EXISTS knowledge_vectors" in schema
