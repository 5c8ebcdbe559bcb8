"""Deadline and cancellation token for synchronization cycles."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from .errors import SyncCancelledError

__all__ = ["SyncDeadline"]


@dataclass(slots=True)
class SyncDeadline:
    """Stop signal checked before every blocking step.

    Blocking collaborators also receive :meth:`remaining` as their timeout,
    so a slow crawl or embedding request is cut short rather than waited
    out.

    ``expires_at`` is a reading of ``clock`` (monotonic seconds by
    default); ``None`` means no deadline. :meth:`cancel` may be called from
    any thread.

    Example:
        >>> deadline = SyncDeadline.never()
        >>> deadline.cancel()
        >>> deadline.cancelled
        True
    """

    expires_at: float | None = None
    clock: Callable[[], float] = time.monotonic
    _cancelled: threading.Event = field(
        default_factory=threading.Event,
        repr=False,
    )

    @classmethod
    def never(cls) -> "SyncDeadline":
        return cls()

    @classmethod
    def after(
        cls,
        seconds: float | None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> "SyncDeadline":
        """Return a deadline ``seconds`` from now (none when ``None``)."""

        if seconds is None:
            return cls(clock=clock)
        if seconds <= 0:
            raise ValueError("deadline seconds must be positive")
        return cls(expires_at=clock() + seconds, clock=clock)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and self.clock() >= self.expires_at

    def remaining(self) -> float | None:
        """Return seconds left, ``0.0`` once expired, ``None`` if unbounded."""

        if self.expires_at is None:
            return None
        return max(self.expires_at - self.clock(), 0.0)

    def interruption(self, stage: str) -> SyncCancelledError | None:
        """Return the error to stop with at ``stage``, if any."""

        if self.cancelled:
            return SyncCancelledError(stage=stage, reason="cancelled")
        if self.expired:
            return SyncCancelledError(stage=stage, reason="timed out")
        return None

    def check(self, stage: str) -> None:
        """Raise :class:`SyncCancelledError` if the cycle must stop.

        Raises:
            SyncCancelledError: When cancelled or past the deadline.
        """

        error = self.interruption(stage)
        if error is not None:
            raise error
