"""Common test fixtures for the NoteShare service."""

import pytest
from sqlalchemy import func, select

from noteshare.config import config
from noteshare.models.db_models import DBNote
from noteshare.models.schema import NoteDraft, Privacy
from noteshare.observability import metrics
from noteshare.services.index_builder import rebuild_index
from noteshare.services.note_service import NoteService
from noteshare.storage.fts_index import FtsIndex
from noteshare.storage.note_store import NoteStore

# Lowest cost bcrypt accepts; keeps registration fast in tests
TEST_BCRYPT_ROUNDS = 4


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Point the global config at temporary paths (auto-restored)."""
    monkeypatch.setattr(config, "base_dir", tmp_path)
    monkeypatch.setattr(config, "database_path", tmp_path / "data" / "notes.sqlite3")
    monkeypatch.setattr(config, "index_path", tmp_path / "data" / "notes.index")
    monkeypatch.setattr(config, "log_dir", tmp_path / "logs")
    monkeypatch.setattr(config, "bcrypt_rounds", TEST_BCRYPT_ROUNDS)
    yield config


@pytest.fixture
def note_store(test_config):
    """Create a store on a fresh SQLite file."""
    store = NoteStore(
        database_path=test_config.get_db_path(),
        bcrypt_rounds=TEST_BCRYPT_ROUNDS,
        busy_timeout=5.0,
    )
    yield store
    store.close()


@pytest.fixture
def authors(note_store):
    """Register alice, bob and carol; returns name -> id."""
    return {
        name: note_store.create_author(name, f"{name}-password")
        for name in ("alice", "bob", "carol")
    }


@pytest.fixture
def add_note(note_store):
    """Factory that inserts a note directly through the store."""

    def _add(author_id, content, privacy=Privacy.PROTECTED, created_at=None):
        fields = {"author_id": author_id, "content": content, "privacy": privacy}
        if created_at is not None:
            fields["created_at"] = created_at
        return note_store.create_note(NoteDraft(**fields))

    return _add


@pytest.fixture
def count_notes(note_store):
    """Number of rows in the notes table, read outside any access check."""

    def _count():
        with note_store.session_factory() as session:
            return session.scalar(select(func.count()).select_from(DBNote))

    return _count


@pytest.fixture
def search_index(note_store, test_config):
    """Build the index from the (possibly empty) store and open it."""
    index_path = test_config.get_index_path()
    rebuild_index(note_store, index_path, busy_timeout=5.0)
    index = FtsIndex.open(index_path, busy_timeout=5.0)
    yield index
    index.close()


@pytest.fixture
def note_service(note_store, search_index):
    """Service over a live store and index."""
    return NoteService(note_store, search_index, recent_limit=20, search_limit=50)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Isolate the process-wide metrics collector between tests."""
    metrics.reset()
    yield
    metrics.reset()
