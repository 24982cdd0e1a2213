"""Tests for the FTS5 search index."""
import pytest
from sqlalchemy import create_engine, text

from noteshare.exceptions import ErrorCode, SearchIndexError
from noteshare.storage.fts_index import (
    STATE_BUILDING,
    STATE_READY,
    FtsIndex,
    IndexDocument,
    remove_index_files,
)


@pytest.fixture
def index(tmp_path):
    """A fresh, empty index in the building state."""
    idx = FtsIndex.create(tmp_path / "notes.index", busy_timeout=5.0)
    yield idx
    idx.close()


def _doc(note_id, content, author="alice", created=1000):
    return IndexDocument(note_id=note_id, author=author, content=content, created=created)


class TestLifecycle:
    """Creating, finalizing and opening index files."""

    def test_new_index_is_building(self, index):
        assert index.state() == STATE_BUILDING
        assert index.doc_count() == 0

    def test_building_index_cannot_be_opened(self, index):
        with pytest.raises(SearchIndexError) as exc_info:
            FtsIndex.open(index.path)
        assert exc_info.value.code == ErrorCode.INDEX_INVALID

    def test_ready_index_opens(self, index):
        index.add_documents([_doc(1, "hello"), _doc(2, "ciao")])
        assert index.mark_ready() == 2
        assert index.state() == STATE_READY
        index.close()

        reopened = FtsIndex.open(index.path)
        try:
            assert reopened.doc_count() == 2
        finally:
            reopened.close()

    def test_open_missing_file(self, tmp_path):
        with pytest.raises(SearchIndexError) as exc_info:
            FtsIndex.open(tmp_path / "absent.index")
        assert exc_info.value.code == ErrorCode.INDEX_INVALID

    def test_open_foreign_database(self, tmp_path):
        path = tmp_path / "other.sqlite3"
        engine = create_engine(f"sqlite:///{path}")
        with engine.begin() as conn:
            conn.execute(text("CREATE TABLE unrelated (x INTEGER)"))
        engine.dispose()

        with pytest.raises(SearchIndexError) as exc_info:
            FtsIndex.open(path)
        assert exc_info.value.code == ErrorCode.INDEX_INVALID

    def test_create_replaces_existing_file(self, index):
        index.add_document(_doc(1, "old"))
        index.close()
        fresh = FtsIndex.create(index.path)
        try:
            assert fresh.doc_count() == 0
        finally:
            fresh.close()

    def test_remove_index_files(self, tmp_path):
        path = tmp_path / "x.index"
        for name in ("x.index", "x.index-wal", "x.index-shm"):
            (tmp_path / name).write_bytes(b"")
        remove_index_files(path)
        assert list(tmp_path.iterdir()) == []
        # Missing files are fine
        remove_index_files(path)


class TestDocuments:
    """Writing documents."""

    def test_add_document_is_upsert(self, index):
        index.add_document(_doc(7, "first draft"))
        index.add_document(_doc(7, "second version"))
        assert index.doc_count() == 1
        assert index.search("first") == []
        assert [h.note_id for h in index.search("second")] == [7]

    def test_add_documents_empty_batch(self, index):
        assert index.add_documents([]) == 0

    def test_doc_id_is_string_note_id(self):
        assert _doc(12, "x").doc_id == "12"


class TestSearch:
    """Querying the index."""

    @pytest.fixture
    def populated(self, index):
        index.add_documents(
            [
                _doc(1, "hello world", author="alice"),
                _doc(2, "ciao mondo", author="bob"),
                _doc(3, "buonasera a tutti", author="alice"),
                _doc(4, "hello hello hello again", author="carol"),
            ]
        )
        index.mark_ready()
        return index

    def test_term_query(self, populated):
        hits = populated.search("ciao")
        assert [h.note_id for h in hits] == [2]

    def test_scores_descending(self, populated):
        hits = populated.search("hello")
        assert {h.note_id for h in hits} == {1, 4}
        assert hits[0].score >= hits[1].score
        assert hits[0].note_id == 4

    def test_author_column_filter(self, populated):
        hits = populated.search("author:alice")
        assert sorted(h.note_id for h in hits) == [1, 3]

    def test_phrase_and_prefix(self, populated):
        assert [h.note_id for h in populated.search('"ciao mondo"')] == [2]
        assert [h.note_id for h in populated.search("buona*")] == [3]

    def test_limit(self, populated):
        assert len(populated.search("hello OR ciao", limit=2)) == 2

    def test_offset_pages_through_ranking(self, populated):
        ranked = [h.note_id for h in populated.search("hello OR ciao OR alice")]
        first = populated.search("hello OR ciao OR alice", limit=2)
        rest = populated.search("hello OR ciao OR alice", limit=2, offset=2)
        assert [h.note_id for h in first + rest] == ranked
        assert populated.search("hello OR ciao OR alice", limit=2, offset=len(ranked)) == []

    @pytest.mark.parametrize("query", ["", "   "])
    def test_blank_query(self, populated, query):
        assert populated.search(query) == []

    def test_syntax_error(self, populated):
        with pytest.raises(SearchIndexError) as exc_info:
            populated.search('"unbalanced')
        assert exc_info.value.code == ErrorCode.INDEX_QUERY_FAILED
        assert exc_info.value.query == '"unbalanced'

    def test_hit_to_dict(self, populated):
        hit = populated.search("ciao")[0]
        assert hit.to_dict() == {"id": 2, "score": hit.score}
