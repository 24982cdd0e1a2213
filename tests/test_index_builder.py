"""Tests for the offline index rebuild."""
from unittest.mock import patch

import pytest
from sqlalchemy import delete

from noteshare.exceptions import ErrorCode, IndexBuildError, SearchIndexError
from noteshare.models.db_models import DBSharing
from noteshare.models.schema import NoteDraft, Privacy
from noteshare.services.index_builder import IndexBuilder, rebuild_index
from noteshare.storage.fts_index import FtsIndex
from noteshare.storage.index_lock import IndexLock


@pytest.fixture
def index_path(test_config):
    return test_config.get_index_path()


def _open(path):
    return FtsIndex.open(path, busy_timeout=5.0)


class TestRebuild:
    """Full rebuilds from the store."""

    def test_greetings_corpus(self, note_store, authors, add_note, index_path):
        ids = {
            word: add_note(authors["alice"], word, Privacy.PUBLIC)
            for word in ("hello", "ciao", "buonasera")
        }

        report = rebuild_index(note_store, index_path)

        assert report.doc_count == 3
        index = _open(index_path)
        try:
            assert index.doc_count() == 3
            assert [h.note_id for h in index.search("ciao")] == [ids["ciao"]]
        finally:
            index.close()

    def test_empty_store(self, note_store, index_path):
        report = rebuild_index(note_store, index_path)
        assert report.doc_count == 0
        index = _open(index_path)
        index.close()

    def test_indexes_every_privacy_level(self, note_store, authors, add_note, index_path):
        for privacy in Privacy:
            add_note(authors["bob"], f"zebra {privacy.name}", privacy)
        rebuild_index(note_store, index_path)
        index = _open(index_path)
        try:
            assert len(index.search("zebra")) == 3
        finally:
            index.close()

    def test_author_names_searchable(self, note_store, authors, add_note, index_path):
        alice_note = add_note(authors["alice"], "first", Privacy.PUBLIC)
        add_note(authors["bob"], "second", Privacy.PUBLIC)
        rebuild_index(note_store, index_path)
        index = _open(index_path)
        try:
            assert [h.note_id for h in index.search("author:alice")] == [alice_note]
        finally:
            index.close()

    def test_small_batches(self, note_store, authors, add_note, index_path):
        for i in range(7):
            add_note(authors["alice"], f"note number {i}", Privacy.PUBLIC)
        report = IndexBuilder(note_store, index_path, batch_size=2).rebuild()
        assert report.doc_count == 7

    def test_no_building_file_left(self, note_store, authors, add_note, index_path):
        add_note(authors["alice"], "hello", Privacy.PUBLIC)
        builder = IndexBuilder(note_store, index_path)
        builder.rebuild()
        assert index_path.exists()
        assert not builder.building_path.exists()

    def test_rebuild_replaces_previous_index(self, note_store, authors, add_note, index_path):
        add_note(authors["alice"], "hello", Privacy.PUBLIC)
        rebuild_index(note_store, index_path)
        add_note(authors["alice"], "ciao", Privacy.PUBLIC)

        report = rebuild_index(note_store, index_path)

        assert report.doc_count == 2
        index = _open(index_path)
        try:
            assert len(index.search("ciao")) == 1
        finally:
            index.close()

    def test_rebuild_clears_outbox(self, note_store, authors, add_note, index_path):
        add_note(authors["alice"], "one")
        add_note(authors["alice"], "two")
        assert len(note_store.pending_index_ids()) == 2
        rebuild_index(note_store, index_path)
        assert note_store.pending_index_ids() == []

    def test_rebuild_repairs_self_shares(self, note_store, authors, index_path):
        with note_store.session_factory() as session:
            session.execute(delete(DBSharing).where(DBSharing.sharer_id == DBSharing.sharee_id))
            session.commit()
        report = rebuild_index(note_store, index_path)
        assert report.repaired_self_shares == 3

    def test_report_rate(self, note_store, index_path):
        report = rebuild_index(note_store, index_path)
        assert report.elapsed_seconds >= 0
        assert report.docs_per_second >= 0


class TestRebuildFailures:
    """Integrity faults abort the build without touching the live index."""

    def test_dangling_author(self, note_store, authors, add_note, index_path):
        add_note(authors["alice"], "fine", Privacy.PUBLIC)
        orphan = note_store.create_note(NoteDraft(author_id=999, content="orphan"))
        builder = IndexBuilder(note_store, index_path)

        with pytest.raises(IndexBuildError) as exc_info:
            builder.rebuild()

        assert exc_info.value.code == ErrorCode.DANGLING_AUTHOR
        assert exc_info.value.note_id == orphan
        assert not builder.building_path.exists()
        assert not index_path.exists()

    def test_failed_rebuild_keeps_live_index(self, note_store, authors, add_note, index_path):
        add_note(authors["alice"], "hello", Privacy.PUBLIC)
        rebuild_index(note_store, index_path)
        note_store.create_note(NoteDraft(author_id=999, content="orphan"))

        with pytest.raises(IndexBuildError):
            rebuild_index(note_store, index_path)

        index = _open(index_path)
        try:
            assert index.doc_count() == 1
        finally:
            index.close()

    def test_failed_rebuild_keeps_outbox(self, note_store, authors, add_note, index_path):
        add_note(authors["alice"], "hello")
        note_store.create_note(NoteDraft(author_id=999, content="orphan"))
        with pytest.raises(IndexBuildError):
            rebuild_index(note_store, index_path)
        assert len(note_store.pending_index_ids()) == 2


class TestRebuildWhileServing:
    """The live index is never swapped out from under a writer."""

    def test_refused_while_index_lock_held(self, note_store, authors, add_note, index_path):
        add_note(authors["alice"], "hello", Privacy.PUBLIC)
        rebuild_index(note_store, index_path)
        pending = add_note(authors["alice"], "pending")
        server_lock = IndexLock(index_path)
        assert server_lock.acquire()
        builder = IndexBuilder(note_store, index_path)
        try:
            with pytest.raises(SearchIndexError) as exc_info:
                builder.rebuild()
        finally:
            server_lock.release()

        assert exc_info.value.code == ErrorCode.INDEX_LOCKED
        assert not builder.building_path.exists()
        assert note_store.pending_index_ids() == [pending]
        index = _open(index_path)
        try:
            assert index.doc_count() == 1
        finally:
            index.close()

    def test_note_stored_during_build_is_indexed(
        self, note_store, note_service, authors, index_path
    ):
        note_service.create_note(authors["alice"], "hello", privacy=Privacy.PUBLIC)
        swap = IndexBuilder._swap_into_place
        late = []

        def store_then_swap(builder):
            late.append(
                note_service.create_note(authors["alice"], "zanzibar", privacy=Privacy.PUBLIC).value
            )
            swap(builder)

        with patch.object(IndexBuilder, "_swap_into_place", store_then_swap):
            report = rebuild_index(note_store, index_path)

        assert report.doc_count == 2
        assert note_store.pending_index_ids() == []
        index = _open(index_path)
        try:
            assert [h.note_id for h in index.search("zanzibar")] == late
        finally:
            index.close()
