"""
Session Store

The only component that persists WorkflowSession records. Every save is
an optimistic check-and-increment of the session's ``version`` field made
under the session's lock, so two writers holding stale copies cannot
clobber each other: the second save raises ConcurrentModification.

Two implementations:
- InMemorySessionStore: process-local, used by tests and embedded callers
- FileSessionStore: one JSON document per session under .bc-workflows/sessions/
"""

import hashlib
import json
import logging
import os
import random
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from .error_handling import ConcurrentModification, SessionNotFound, StateIntegrityError
from .locking import SessionLockManager
from .path_resolver import WorkflowPaths
from .schema import SessionEvent, SessionStatus, WorkflowSession

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (SessionStatus.PENDING, SessionStatus.IN_PROGRESS)


class SessionStore(ABC):
    """Load/save contract for session persistence."""

    def __init__(self, lock_manager: SessionLockManager):
        self.lock_manager = lock_manager

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        """Hold the session's writer lock."""
        with self.lock_manager.hold(session_id):
            yield

    @abstractmethod
    def _read(self, session_id: str) -> Optional[WorkflowSession]:
        """Return the persisted session or None."""

    @abstractmethod
    def _write(self, session: WorkflowSession) -> None:
        """Persist a session unconditionally."""

    @abstractmethod
    def _remove(self, session_id: str) -> bool:
        """Remove a session and its events."""

    @abstractmethod
    def list_ids(self) -> list[str]:
        """Ids of all persisted sessions."""

    @abstractmethod
    def append_event(self, event: SessionEvent) -> None:
        """Append to the session's event history."""

    @abstractmethod
    def read_events(self, session_id: str) -> list[SessionEvent]:
        """Events of one session in append order."""

    def exists(self, session_id: str) -> bool:
        return self._read(session_id) is not None

    def load(self, session_id: str) -> WorkflowSession:
        """
        Raises:
            SessionNotFound: If no session has this id
        """
        session = self._read(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def save(self, session: WorkflowSession) -> WorkflowSession:
        """
        Persist a session if nobody else saved it since it was loaded.

        Increments ``session.version`` on success.

        Raises:
            ConcurrentModification: If the persisted version differs
        """
        with self.lock(session.id):
            current = self._read(session.id)
            current_version = current.version if current is not None else 0
            if current_version != session.version:
                raise ConcurrentModification(session.id, session.version, current_version)
            session.version += 1
            session.update_timestamp()
            try:
                self._write(session)
            except OSError:
                session.version -= 1
                raise
        return session

    def delete(self, session_id: str) -> bool:
        with self.lock(session_id):
            return self._remove(session_id)

    def list_sessions(self) -> list[WorkflowSession]:
        sessions = []
        for session_id in self.list_ids():
            try:
                session = self._read(session_id)
            except StateIntegrityError as e:
                logger.warning(f"Skipping unreadable session {session_id}: {e}")
                continue
            if session is not None:
                sessions.append(session)
        return sessions

    def list_active(self) -> list[WorkflowSession]:
        """Sessions still pending or in progress, most recently updated first."""
        active = [s for s in self.list_sessions() if s.status in ACTIVE_STATUSES]
        return sorted(active, key=lambda s: s.updated_at, reverse=True)

    def cleanup_expired(self, max_age_days: int = 7) -> list[str]:
        """Delete sessions not updated within max_age_days. Returns deleted ids."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        removed = []
        for session in self.list_sessions():
            if session.updated_at < cutoff and self.delete(session.id):
                removed.append(session.id)
        if removed:
            logger.info(f"Removed {len(removed)} expired sessions")
        return removed


class InMemorySessionStore(SessionStore):
    """Process-local store. Sessions are kept serialized so callers never share objects."""

    def __init__(self, lock_manager: Optional[SessionLockManager] = None):
        super().__init__(lock_manager or SessionLockManager())
        self._sessions: dict[str, str] = {}
        self._events: dict[str, list[SessionEvent]] = {}
        self._guard = threading.Lock()

    def _read(self, session_id: str) -> Optional[WorkflowSession]:
        with self._guard:
            raw = self._sessions.get(session_id)
        return WorkflowSession.model_validate_json(raw) if raw is not None else None

    def _write(self, session: WorkflowSession) -> None:
        raw = session.model_dump_json()
        with self._guard:
            self._sessions[session.id] = raw

    def _remove(self, session_id: str) -> bool:
        with self._guard:
            self._events.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None

    def list_ids(self) -> list[str]:
        with self._guard:
            return sorted(self._sessions)

    def append_event(self, event: SessionEvent) -> None:
        with self._guard:
            self._events.setdefault(event.session_id, []).append(event)

    def read_events(self, session_id: str) -> list[SessionEvent]:
        with self._guard:
            return list(self._events.get(session_id, []))


def compute_session_checksum(data: dict) -> str:
    """SHA-256 over the session document, excluding the checksum itself."""
    content = json.dumps({k: v for k, v in data.items() if k != '_checksum'}, sort_keys=True)
    return hashlib.sha256(content.encode()).hexdigest()[:32]


class FileSessionStore(SessionStore):
    """
    One JSON file per session.

    Writes go to a uniquely named temp file that is fsynced and renamed
    over the target, so a crash leaves either the old or the new document.
    """

    def __init__(self, paths: WorkflowPaths, lock_timeout: float = 10.0):
        paths.ensure_dirs()
        super().__init__(SessionLockManager(paths.locks_dir(), timeout=lock_timeout))
        self.paths = paths
        self._events_guard = threading.Lock()

    def _read(self, session_id: str) -> Optional[WorkflowSession]:
        path = self.paths.session_file(session_id)
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise StateIntegrityError(f"Session file {path} is not valid JSON: {e}", session_id=session_id)

        stored = data.pop('_checksum', None)
        if stored is not None and stored != compute_session_checksum(data):
            raise StateIntegrityError(
                f"Session file {path} failed its integrity check",
                session_id=session_id,
            )
        try:
            return WorkflowSession.model_validate(data)
        except ValidationError as e:
            raise StateIntegrityError(f"Session file {path} is malformed: {e}", session_id=session_id)

    def _write(self, session: WorkflowSession) -> None:
        path = self.paths.session_file(session.id)
        data = session.model_dump(mode='json')
        data['_checksum'] = compute_session_checksum(data)

        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(f'.tmp.{random.randint(0, 999999)}')
        try:
            with open(temp_path, 'w') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise
        self._sync_dir(path.parent)

    @staticmethod
    def _sync_dir(directory: Path) -> None:
        flags = os.O_RDONLY
        if hasattr(os, 'O_DIRECTORY'):
            flags |= os.O_DIRECTORY
        try:
            dir_fd = os.open(str(directory), flags)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            logger.debug(f"Directory fsync not supported for {directory}")
        finally:
            os.close(dir_fd)

    def _remove(self, session_id: str) -> bool:
        path = self.paths.session_file(session_id)
        self.paths.events_file(session_id).unlink(missing_ok=True)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_ids(self) -> list[str]:
        sessions_dir = self.paths.sessions_dir()
        if not sessions_dir.exists():
            return []
        return sorted(p.stem for p in sessions_dir.glob('*.json'))

    def append_event(self, event: SessionEvent) -> None:
        path = self.paths.events_file(event.session_id)
        with self._events_guard:
            with open(path, 'a') as f:
                f.write(event.model_dump_json() + '\n')

    def read_events(self, session_id: str) -> list[SessionEvent]:
        path = self.paths.events_file(session_id)
        if not path.exists():
            return []
        events = []
        with open(path) as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(SessionEvent.model_validate_json(line))
                except ValidationError as e:
                    logger.warning(f"Skipping malformed event at {path}:{line_no}: {e}")
        return events


def create_store(backend: str, paths: Optional[WorkflowPaths] = None,
                 lock_timeout: float = 10.0) -> SessionStore:
    """Build the configured store backend."""
    if backend == "memory":
        return InMemorySessionStore(SessionLockManager(timeout=lock_timeout))
    if backend == "file":
        return FileSessionStore(paths or WorkflowPaths(), lock_timeout=lock_timeout)
    raise ValueError(f"Unknown storage backend: {backend}")
