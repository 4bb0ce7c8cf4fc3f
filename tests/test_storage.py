"""Tests for session persistence"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from workflow_engine.error_handling import ConcurrentModification, SessionNotFound, StateIntegrityError
from workflow_engine.path_resolver import WorkflowPaths
from workflow_engine.schema import EventType, FileEntry, SessionEvent, SessionStatus, WorkflowSession
from workflow_engine.storage import (
    FileSessionStore,
    InMemorySessionStore,
    compute_session_checksum,
    create_store,
)


def make_session(session_id="wf-test-2026-01-01-abc123", **overrides):
    data = dict(
        id=session_id,
        workflow_type="code-review",
        scope_root="/tmp/app",
        status=SessionStatus.IN_PROGRESS,
        files=[FileEntry(path="src/A.Table.al")],
    )
    data.update(overrides)
    return WorkflowSession(**data)


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemorySessionStore()
    return FileSessionStore(WorkflowPaths(tmp_path))


class TestSessionStore:
    """Behaviour shared by both backends"""

    def test_save_and_load(self, store):
        store.save(make_session())
        loaded = store.load("wf-test-2026-01-01-abc123")

        assert loaded.workflow_type == "code-review"
        assert loaded.files[0].path == "src/A.Table.al"
        assert loaded.version == 1

    def test_save_bumps_version(self, store):
        session = store.save(make_session())
        assert session.version == 1
        store.save(session)
        assert session.version == 2
        assert store.load(session.id).version == 2

    def test_load_returns_independent_copies(self, store):
        store.save(make_session())
        first = store.load("wf-test-2026-01-01-abc123")
        first.files[0].path = "changed"

        assert store.load("wf-test-2026-01-01-abc123").files[0].path == "src/A.Table.al"

    def test_stale_save_rejected(self, store):
        """The second of two writers with the same version loses"""
        store.save(make_session())
        a = store.load("wf-test-2026-01-01-abc123")
        b = store.load("wf-test-2026-01-01-abc123")
        store.save(a)

        with pytest.raises(ConcurrentModification) as exc_info:
            store.save(b)
        assert exc_info.value.details["expected_version"] == 1
        assert exc_info.value.details["actual_version"] == 2

    def test_load_missing(self, store):
        with pytest.raises(SessionNotFound):
            store.load("wf-missing")
        assert not store.exists("wf-missing")

    def test_delete(self, store):
        store.save(make_session())
        assert store.delete("wf-test-2026-01-01-abc123") is True
        assert store.delete("wf-test-2026-01-01-abc123") is False
        assert store.list_ids() == []

    def test_list_active(self, store):
        store.save(make_session("wf-a"))
        store.save(make_session("wf-b", status=SessionStatus.COMPLETED))
        store.save(make_session("wf-c", status=SessionStatus.FAILED))

        assert [s.id for s in store.list_active()] == ["wf-a"]
        assert store.list_ids() == ["wf-a", "wf-b", "wf-c"]

    def test_cleanup_expired(self, store):
        session = store.save(make_session("wf-old"))
        store.save(make_session("wf-new"))

        # Rewrite the old session with a stale timestamp
        session.updated_at = datetime.now(timezone.utc) - timedelta(days=30)
        store._write(session)

        assert store.cleanup_expired(max_age_days=7) == ["wf-old"]
        assert store.list_ids() == ["wf-new"]

    def test_events_in_order(self, store):
        store.save(make_session())
        for message in ("first", "second"):
            store.append_event(SessionEvent(
                event_type=EventType.PROGRESS_REPORTED,
                session_id="wf-test-2026-01-01-abc123",
                message=message,
            ))

        events = store.read_events("wf-test-2026-01-01-abc123")
        assert [e.message for e in events] == ["first", "second"]
        assert store.read_events("wf-other") == []


class TestFileSessionStore:
    """Tests specific to the JSON file backend"""

    def test_layout(self, tmp_path):
        paths = WorkflowPaths(tmp_path)
        FileSessionStore(paths).save(make_session())

        assert paths.session_file("wf-test-2026-01-01-abc123").exists()
        assert paths.lock_file("wf-test-2026-01-01-abc123").exists()
        assert (paths.sessions_dir() / ".gitignore").read_text() == "*\n"
        assert not list(paths.sessions_dir().glob("*.tmp.*"))

    def test_checksum_written(self, tmp_path):
        paths = WorkflowPaths(tmp_path)
        FileSessionStore(paths).save(make_session())
        data = json.loads(paths.session_file("wf-test-2026-01-01-abc123").read_text())

        checksum = data.pop("_checksum")
        assert checksum == compute_session_checksum(data)

    def test_tampered_file_rejected(self, tmp_path):
        """Edits that bypass the store fail the integrity check"""
        paths = WorkflowPaths(tmp_path)
        store = FileSessionStore(paths)
        store.save(make_session())
        path = paths.session_file("wf-test-2026-01-01-abc123")
        data = json.loads(path.read_text())
        data["files_completed"] = 99
        path.write_text(json.dumps(data))

        with pytest.raises(StateIntegrityError):
            store.load("wf-test-2026-01-01-abc123")

    def test_corrupt_json_rejected(self, tmp_path):
        paths = WorkflowPaths(tmp_path)
        store = FileSessionStore(paths)
        paths.session_file("wf-broken").write_text("{not json")

        with pytest.raises(StateIntegrityError):
            store.load("wf-broken")

    def test_unreadable_sessions_skipped_in_listing(self, tmp_path):
        paths = WorkflowPaths(tmp_path)
        store = FileSessionStore(paths)
        store.save(make_session("wf-good"))
        paths.session_file("wf-broken").write_text("{not json")

        assert [s.id for s in store.list_sessions()] == ["wf-good"]

    def test_persists_across_instances(self, tmp_path):
        paths = WorkflowPaths(tmp_path)
        FileSessionStore(paths).save(make_session())
        assert FileSessionStore(paths).load("wf-test-2026-01-01-abc123").version == 1

    def test_events_file(self, tmp_path):
        paths = WorkflowPaths(tmp_path)
        store = FileSessionStore(paths)
        store.append_event(SessionEvent(event_type=EventType.SESSION_STARTED, session_id="wf-x"))
        with open(paths.events_file("wf-x"), "a") as f:
            f.write("garbage\n")

        events = store.read_events("wf-x")
        assert len(events) == 1
        assert events[0].event_type == EventType.SESSION_STARTED


class TestCreateStore:

    def test_backends(self, tmp_path):
        assert isinstance(create_store("memory"), InMemorySessionStore)
        assert isinstance(create_store("file", WorkflowPaths(tmp_path)), FileSessionStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_store("redis")
