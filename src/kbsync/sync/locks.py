"""Per-source mutual exclusion for synchronization cycles."""

from __future__ import annotations

import hashlib
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from kbsync.core.logging import Logger, get_logger
from kbsync.tenancy import TenantScope

from .errors import SyncAlreadyInProgressError, SyncLockError

__all__ = [
    "FileLock",
    "FileLockTimeoutError",
    "SourceLockManager",
    "lock_file_name",
]


class FileLockTimeoutError(SyncLockError):
    """Raised when a lock file stays held past the timeout."""


@dataclass(slots=True)
class FileLock:
    """Lock file with timeout semantics.

    The owning pid is written into the file. A file whose pid no longer
    exists is treated as left behind by a crashed process and removed.
    """

    path: Path
    timeout: float = 0.0
    poll_interval: float = 0.05
    _handle: int | None = field(init=False, default=None, repr=False)

    def acquire(self) -> None:
        """Acquire the lock, waiting up to ``timeout`` seconds."""

        if self._handle is not None:
            return

        deadline = time.monotonic() + max(self.timeout, 0.0)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            try:
                handle = os.open(
                    self.path,
                    os.O_CREAT | os.O_EXCL | os.O_WRONLY,
                )
            except FileExistsError:
                if self._break_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise FileLockTimeoutError(
                        f"Timed out acquiring lock at {self.path}"
                    ) from None
                time.sleep(self.poll_interval)
                continue
            except OSError as exc:  # pragma: no cover - surfaced at runtime
                raise SyncLockError(
                    f"Failed acquiring lock at {self.path}: {exc}"
                ) from exc
            os.write(handle, str(os.getpid()).encode("ascii"))
            self._handle = handle
            return

    def release(self) -> None:
        """Release the lock if held."""

        handle = self._handle
        if handle is None:
            return

        try:
            os.close(handle)
        finally:
            self._handle = None
            try:
                self.path.unlink()
            except FileNotFoundError:  # pragma: no cover - best effort cleanup
                pass
            except OSError as exc:  # pragma: no cover - surfaced at runtime
                raise SyncLockError(
                    f"Failed removing lock at {self.path}: {exc}"
                ) from exc

    def _break_stale(self) -> bool:
        try:
            owner = int(self.path.read_text(encoding="ascii").strip())
        except (OSError, ValueError):
            # Missing, unreadable, or still being written by its owner.
            return False
        if owner == os.getpid() or _pid_alive(owner):
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return True

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def lock_file_name(scope: TenantScope, source_id: str) -> str:
    """Return the lock file name for a source.

    Identifiers are hashed so arbitrary ids map to safe file names.
    """

    digest = hashlib.sha256(f"{scope}|{source_id}".encode("utf-8"))
    return f"{digest.hexdigest()[:24]}.lock"


@dataclass(slots=True)
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class SourceLockManager:
    """Hand out one lock per ``(scope, source_id)``.

    An in-process lock serializes threads. When ``locks_dir`` is given a
    lock file additionally serializes separate processes sharing the
    workspace. A caller that cannot acquire both within ``timeout`` gets
    :class:`SyncAlreadyInProgressError` and nothing is changed.

    Entries are dropped once no caller holds or waits on them, so the
    manager only tracks sources that are busy right now.
    """

    def __init__(
        self,
        *,
        locks_dir: Path | None = None,
        timeout: float = 0.0,
        poll_interval: float = 0.05,
        logger: Logger | None = None,
    ) -> None:
        if timeout < 0:
            raise ValueError("lock timeout must be >= 0")
        self._locks_dir = locks_dir
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._logger = logger or get_logger(__name__, component="sync-locks")
        self._guard = threading.Lock()
        self._entries: dict[tuple[TenantScope, str], _LockEntry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: tuple[TenantScope, str]) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _LockEntry()
            entry.users += 1
            return entry

    def _checkin(self, key: tuple[TenantScope, str]) -> None:
        with self._guard:
            entry = self._entries[key]
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    def is_held(self, scope: TenantScope, source_id: str) -> bool:
        """Return whether a caller in this process holds the source lock."""

        with self._guard:
            entry = self._entries.get((scope, source_id))
        return entry is not None and entry.lock.locked()

    @contextmanager
    def hold(
        self,
        scope: TenantScope,
        source_id: str,
        *,
        action: str = "synchronize",
    ) -> Iterator[None]:
        """Hold the source lock for the duration of the block.

        Raises:
            SyncAlreadyInProgressError: If another caller holds the lock.
        """

        key = (scope, source_id)
        entry = self._checkout(key)
        try:
            if self._timeout > 0:
                acquired = entry.lock.acquire(timeout=self._timeout)
            else:
                acquired = entry.lock.acquire(blocking=False)
            if not acquired:
                self._reject(scope, source_id, action=action, holder="thread")
            try:
                with self._hold_file(scope, source_id, action=action):
                    yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key)

    @contextmanager
    def _hold_file(
        self,
        scope: TenantScope,
        source_id: str,
        *,
        action: str,
    ) -> Iterator[None]:
        if self._locks_dir is None:
            yield
            return
        file_lock = FileLock(
            self._locks_dir / lock_file_name(scope, source_id),
            timeout=self._timeout,
            poll_interval=self._poll_interval,
        )
        try:
            file_lock.acquire()
        except FileLockTimeoutError:
            self._reject(scope, source_id, action=action, holder="process")
        try:
            yield
        finally:
            file_lock.release()

    def _reject(
        self,
        scope: TenantScope,
        source_id: str,
        *,
        action: str,
        holder: str,
    ) -> None:
        self._logger.info(
            "source-lock-busy",
            source_id=source_id,
            action=action,
            holder=holder,
            **scope.as_filter(),
        )
        raise SyncAlreadyInProgressError(scope, source_id)
