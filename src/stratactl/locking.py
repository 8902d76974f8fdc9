"""Advisory file locks guarding the state store.

``apply`` and ``destroy`` hold the state lock for the whole cycle so two
stratactl processes never write the same state file. Locks are exclusive
``fcntl.flock`` locks on ``<runtime_dir>/state.lock``; the lock file records
the holder's pid for diagnostics and is left in place after release.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .errors import StratactlError

STATE_LOCK_NAME = "state.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(StratactlError):
    """Raised when a lock cannot be acquired within the timeout."""

    def __init__(self, path: Path, timeout: float) -> None:
        """Record which lock timed out."""
        self.path = path
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock {path}")


@dataclass(frozen=True)
class LockHandle:
    """Information about a held lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Hand out exclusive locks rooted at *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Remember where lock files live and how long to wait for them."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    @property
    def state_lock_path(self) -> Path:
        """Return the path of the state lock file."""
        return self.runtime_dir / STATE_LOCK_NAME

    @contextmanager
    def state_lock(self, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the state lock for the duration of the ``with`` block."""
        with self._acquire(self.state_lock_path, timeout) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        effective_timeout = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= effective_timeout:
                        raise LockTimeoutError(path, effective_timeout) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(timezone.utc).isoformat(),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError", "STATE_LOCK_NAME"]
