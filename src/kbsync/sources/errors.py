"""Domain-specific exceptions for knowledge source management."""

from __future__ import annotations


class SourceError(RuntimeError):
    """Base error for source management failures."""


class SourceExistsError(SourceError):
    """Raised when registering a source id that already exists."""


class SourceNotFoundError(SourceError):
    """Raised when a requested source cannot be located in its scope."""


class SourceInactiveError(SourceNotFoundError):
    """Raised when an operation requires an active source."""


class SourceActiveError(SourceError):
    """Raised when removing a source that is still active."""


class InvalidStatusTransitionError(SourceError):
    """Raised when a status change is not allowed by the lifecycle."""


class SourceRepositoryError(SourceError):
    """Raised when the source store cannot be read or written."""


__all__ = [
    "InvalidStatusTransitionError",
    "SourceActiveError",
    "SourceError",
    "SourceExistsError",
    "SourceInactiveError",
    "SourceNotFoundError",
    "SourceRepositoryError",
]
