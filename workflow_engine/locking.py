"""
Per-session locking

Sessions are independent, but every mutation of one session id must run
under at-most-one writer. Threads inside a process are serialized with a
reentrant lock per session; processes sharing a workspace are serialized
with an fcntl lock file per session.
"""

import fcntl
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .error_handling import LockTimeoutError

logger = logging.getLogger(__name__)


class FileLock:
    """
    Exclusive advisory lock on a file (fcntl.flock).

    Usage:
        lock = FileLock(path)
        lock.acquire(timeout=5.0)
        try:
            ...
        finally:
            lock.release()
    """

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self._fd: Optional[int] = None

    @property
    def is_locked(self) -> bool:
        return self._fd is not None

    def acquire(self, timeout: float = 10.0) -> None:
        """
        Acquire the lock, polling until timeout.

        Raises:
            LockTimeoutError: If lock cannot be acquired within timeout
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        flags = os.O_RDWR | os.O_CREAT
        if hasattr(os, 'O_CLOEXEC'):
            flags |= os.O_CLOEXEC
        fd = os.open(str(self.lock_path), flags, 0o644)

        start = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                self._fd = fd
                return
            except (BlockingIOError, OSError):
                if time.monotonic() - start >= timeout:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Could not acquire lock on {self.lock_path} within {timeout}s",
                        lock_path=str(self.lock_path),
                        timeout=timeout,
                    )
                time.sleep(0.05)

    def release(self) -> None:
        """Release the lock."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None


class SessionLockManager:
    """
    Reentrant per-session locks.

    The same thread may re-acquire a session it already holds (a batch
    execute holds the lock while the token store and session store work).
    """

    def __init__(self, lock_dir: Optional[Path] = None, timeout: float = 10.0):
        """
        Args:
            lock_dir: Directory for lock files. None means in-process locking only.
            timeout: Seconds to wait for a session lock
        """
        self.lock_dir = Path(lock_dir) if lock_dir else None
        self.timeout = timeout
        self._guard = threading.Lock()
        self._thread_locks: dict[str, threading.RLock] = {}
        # Only touched by the thread holding the session's RLock
        self._file_locks: dict[str, FileLock] = {}
        self._depth: dict[str, int] = {}

    def _thread_lock(self, session_id: str) -> threading.RLock:
        with self._guard:
            lock = self._thread_locks.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._thread_locks[session_id] = lock
            return lock

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        """Hold the lock for one session for the duration of the block."""
        thread_lock = self._thread_lock(session_id)
        if not thread_lock.acquire(timeout=self.timeout):
            raise LockTimeoutError(
                f"Could not acquire lock for session {session_id} within {self.timeout}s",
                session_id=session_id,
                timeout=self.timeout,
            )
        try:
            depth = self._depth.get(session_id, 0)
            if depth == 0 and self.lock_dir is not None:
                file_lock = FileLock(self.lock_dir / f"{session_id}.lock")
                file_lock.acquire(self.timeout)
                self._file_locks[session_id] = file_lock
            self._depth[session_id] = depth + 1
            try:
                yield
            finally:
                self._depth[session_id] -= 1
                if self._depth[session_id] == 0:
                    del self._depth[session_id]
                    file_lock = self._file_locks.pop(session_id, None)
                    if file_lock is not None:
                        file_lock.release()
        finally:
            thread_lock.release()

    def is_held(self, session_id: str) -> bool:
        return self._depth.get(session_id, 0) > 0
