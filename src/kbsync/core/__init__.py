"""Core utilities shared across :mod:`kbsync` packages.

The core namespace provides configuration loading, logging setup, and
workspace path resolution so feature packages remain lightweight.
"""

from __future__ import annotations

from .config import AppConfig, load_config
from .logging import Logger, configure_logging, get_logger
from .paths import WorkspacePaths, resolve_workspace

__all__ = [
    "AppConfig",
    "Logger",
    "WorkspacePaths",
    "configure_logging",
    "get_logger",
    "load_config",
    "resolve_workspace",
]
