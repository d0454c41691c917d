"""File-based process lock for check runs.

Only one ``check`` may run at a time. The lock is a file holding
``pid|unix_timestamp``. It is written to a temporary file first and
hard-linked into place, so a competitor never sees it half written.
A lock left behind by a dead process, a malformed lock file, or one older
than the staleness timeout is removed and acquisition is retried. An empty
lock file only counts as malformed once it is a few seconds old.

Example:
    >>> with ProcessLock.acquire(path, stale_after=600):
    ...     run_check()
"""

from __future__ import annotations

import contextlib
import os
import time
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from pathlib import Path
    from types import TracebackType

logger = structlog.get_logger(__name__)

DEFAULT_STALE_AFTER_SECONDS = 600.0
EMPTY_LOCK_GRACE_SECONDS = 5.0


class LockHeldError(Exception):
    """Raised when another live process holds the lock."""

    def __init__(self, path: Path, pid: int | None = None) -> None:
        """Initialize the error.

        Args:
            path: Path of the lock file.
            pid: Process id recorded in the lock, if readable.
        """
        self.path = path
        self.pid = pid
        super().__init__(f"lock already held: {path}" + (f" (pid {pid})" if pid else ""))


def pid_alive(pid: int) -> bool:
    """Check whether a process with this id exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def read_lock(path: Path) -> tuple[int, int] | None:
    """Read ``(pid, timestamp)`` from a lock file, None if malformed.

    Raises:
        OSError: If the file cannot be read.
    """
    parts = path.read_text().split("|")
    if len(parts) != 2:
        return None
    try:
        return int(parts[0].strip()), int(parts[1].strip())
    except ValueError:
        return None


def is_stale(path: Path, stale_after: float, now: float | None = None) -> bool:
    """Decide whether an existing lock file can be taken over."""
    now = time.time() if now is None else now
    content = read_lock(path)
    if content is None:
        # Empty and fresh: the owner may still be writing it
        info = path.stat()
        return info.st_size > 0 or now - info.st_mtime > EMPTY_LOCK_GRACE_SECONDS
    pid, created = content
    if not pid_alive(pid):
        return True
    return now - created > stale_after


class ProcessLock:
    """An acquired lock file. Release it explicitly or use it as a context manager."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._released = False

    @classmethod
    def acquire(
        cls, path: Path, stale_after: float = DEFAULT_STALE_AFTER_SECONDS
    ) -> ProcessLock:
        """Acquire the lock at ``path``.

        Args:
            path: Lock file path. Parent directories are created.
            stale_after: Seconds after which a live owner's lock counts as stale.

        Returns:
            The acquired lock.

        Raises:
            LockHeldError: If a fresh lock is held by a live process.
            OSError: On unexpected filesystem errors.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        log = logger.bind(component="process_lock", path=str(path))

        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        tmp.write_text(f"{os.getpid()}|{int(time.time())}")
        try:
            return cls._link_into_place(tmp, path, stale_after, log)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()

    @classmethod
    def _link_into_place(
        cls, tmp: Path, path: Path, stale_after: float, log: structlog.BoundLogger
    ) -> ProcessLock:
        while True:
            try:
                os.link(tmp, path)
            except FileExistsError:
                try:
                    stale = is_stale(path, stale_after)
                except FileNotFoundError:
                    # Removed by its owner in the meantime
                    continue
                if stale:
                    log.info("lock_stale_removed")
                    with contextlib.suppress(FileNotFoundError):
                        path.unlink()
                    continue
                try:
                    content = read_lock(path)
                except FileNotFoundError:
                    continue
                raise LockHeldError(path, content[0] if content else None) from None

            log.debug("lock_acquired")
            return cls(path)

    def release(self) -> None:
        """Delete the lock file. Releasing twice is a no-op."""
        if self._released:
            return
        self._released = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning("lock_already_removed", path=str(self.path))
        else:
            logger.debug("lock_released", path=str(self.path))

    def __enter__(self) -> ProcessLock:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
