"""Tests for file and session locks"""

import threading

import pytest

from workflow_engine.error_handling import LockTimeoutError
from workflow_engine.locking import FileLock, SessionLockManager


class TestFileLock:

    def test_acquire_and_release(self, tmp_path):
        lock = FileLock(tmp_path / "a.lock")
        lock.acquire(timeout=1.0)
        assert lock.is_locked
        lock.release()
        assert not lock.is_locked

    def test_second_holder_times_out(self, tmp_path):
        """A second lock on the same file cannot be taken while the first is held"""
        first = FileLock(tmp_path / "a.lock")
        second = FileLock(tmp_path / "a.lock")
        first.acquire(timeout=1.0)
        try:
            with pytest.raises(LockTimeoutError):
                second.acquire(timeout=0.1)
        finally:
            first.release()

        second.acquire(timeout=1.0)
        second.release()

    def test_release_without_acquire(self, tmp_path):
        FileLock(tmp_path / "a.lock").release()


class TestSessionLockManager:

    def test_hold_is_reentrant(self, tmp_path):
        """The holding thread can enter the same session again"""
        manager = SessionLockManager(tmp_path, timeout=1.0)
        with manager.hold("wf-a"):
            with manager.hold("wf-a"):
                assert manager.is_held("wf-a")
            assert manager.is_held("wf-a")
        assert not manager.is_held("wf-a")

    def test_lock_file_released(self, tmp_path):
        manager = SessionLockManager(tmp_path, timeout=1.0)
        with manager.hold("wf-a"):
            pass

        other = FileLock(tmp_path / "wf-a.lock")
        other.acquire(timeout=0.1)
        other.release()

    def test_sessions_are_independent(self):
        manager = SessionLockManager(timeout=1.0)
        with manager.hold("wf-a"):
            with manager.hold("wf-b"):
                assert manager.is_held("wf-a") and manager.is_held("wf-b")

    def test_other_thread_times_out(self):
        manager = SessionLockManager(timeout=0.1)
        errors = []

        def contend():
            try:
                with manager.hold("wf-a"):
                    pass
            except LockTimeoutError as e:
                errors.append(e)

        with manager.hold("wf-a"):
            thread = threading.Thread(target=contend)
            thread.start()
            thread.join()

        assert len(errors) == 1
        assert errors[0].details["session_id"] == "wf-a"
