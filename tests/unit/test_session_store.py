"""Unit tests for the last session store."""

import sys

import pytest

from caiconnect.session_store import SESSION_FILE, LastSession, SessionStore


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path)


@pytest.fixture
def session():
    return LastSession(project="alice/proj", runtime_id=7, cpus=2, memory_gb=4)


class TestSessionStore:
    """Test SessionStore persistence."""

    def test_save_and_load(self, store, session):
        store.save(session)

        loaded = store.load()

        assert loaded.project == "alice/proj"
        assert loaded.runtime_id == 7
        assert loaded.addon_id is None
        assert loaded.timestamp

    def test_addon_round_trip(self, store):
        store.save(LastSession("alice/proj", 7, 4, 16, gpus=1, addon_id=12))

        loaded = store.load()

        assert loaded.gpus == 1
        assert loaded.addon_id == 12

    def test_timestamp_kept_when_set(self, store, session):
        session.timestamp = "2026-01-01T00:00:00+00:00"

        store.save(session)

        assert store.load().timestamp == "2026-01-01T00:00:00+00:00"

    def test_load_missing(self, store):
        assert store.load() is None

    def test_load_corrupt(self, store, tmp_path):
        (tmp_path / SESSION_FILE).write_text("project = ")

        assert store.load() is None

    def test_load_incomplete(self, store, tmp_path):
        (tmp_path / SESSION_FILE).write_text('project = "alice/proj"\n')

        assert store.load() is None

    def test_clear(self, store, session):
        store.save(session)

        store.clear()
        store.clear()

        assert store.load() is None

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_permissions(self, store, session, tmp_path):
        store.save(session)

        assert (tmp_path / SESSION_FILE).stat().st_mode & 0o777 == 0o600
