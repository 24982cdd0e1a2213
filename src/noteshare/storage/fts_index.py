"""FTS5 full-text search index for notes.

The index lives in its own SQLite file, separate from the relational
store, and is a lagging projection of it: every document can be
regenerated from the store by the rebuilder. Each document is keyed by
the note id (the FTS5 rowid) and carries the author's display name,
the note content, and its creation timestamp.

Queries are passed to FTS5 ``MATCH`` untouched, so the full FTS5
syntax is available: bare terms, "quoted phrases", boolean operators,
prefix terms (``ciao*``) and column filters (``author:alice``).
"""
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool

from noteshare.exceptions import ErrorCode, SearchIndexError
from noteshare.models.schema import SearchHit, unix_now

logger = logging.getLogger(__name__)

STATE_BUILDING = "building"
STATE_READY = "ready"


@dataclass(frozen=True)
class IndexDocument:
    """A note projected into the search index."""

    note_id: int
    author: str
    content: str
    created: int

    @property
    def doc_id(self) -> str:
        return str(self.note_id)


def _make_engine(path: Path, busy_timeout: float, wal: bool) -> Engine:
    engine = create_engine(
        f"sqlite:///{path}",
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=busy_timeout,
        pool_pre_ping=True,
        connect_args={"timeout": busy_timeout, "check_same_thread": False},
    )
    journal_mode = "WAL" if wal else "DELETE"

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA journal_mode={journal_mode}")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return engine


class FtsIndex:
    """FTS5 index over note content and author names.

    Use ``FtsIndex.open`` for a live, fully built index and
    ``FtsIndex.create`` for a fresh one that the rebuilder fills.

    Args:
        engine: SQLAlchemy engine bound to the index file.
        path: Location of the index file.
    """

    def __init__(self, engine: Engine, path: Path) -> None:
        self.engine = engine
        self.path = path
        # One writer at a time, as in the note store
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def create(cls, path: Union[str, Path], busy_timeout: float = 30.0) -> "FtsIndex":
        """Create an empty index at ``path`` in the building state.

        Any file already at ``path`` is replaced. The new index cannot
        be opened with ``open`` until ``mark_ready`` is called.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        remove_index_files(path)
        engine = _make_engine(path, busy_timeout, wal=False)
        try:
            with engine.begin() as conn:
                conn.execute(text("""
                    CREATE VIRTUAL TABLE notes_fts USING fts5(
                        author,
                        content,
                        created UNINDEXED
                    )
                """))
                conn.execute(text(
                    "CREATE TABLE index_meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
                ))
                conn.execute(
                    text("INSERT INTO index_meta (key, value) VALUES ('state', :state)"),
                    {"state": STATE_BUILDING},
                )
        except SQLAlchemyError as e:
            engine.dispose()
            raise SearchIndexError(
                f"Failed to create index at {path.name}",
                code=ErrorCode.INDEX_WRITE_FAILED,
                original_error=e,
            ) from e
        logger.info(f"Created empty search index: {path}")
        return cls(engine, path)

    @classmethod
    def open(cls, path: Union[str, Path], busy_timeout: float = 30.0) -> "FtsIndex":
        """Open a fully built index.

        Raises:
            SearchIndexError: The file is missing, is not an index, or is
                a partial build that never reached the ready state.
        """
        path = Path(path)
        if not path.exists():
            raise SearchIndexError(
                f"No search index at {path.name}; run noteshare-index to build one",
                code=ErrorCode.INDEX_INVALID,
            )
        index = cls(_make_engine(path, busy_timeout, wal=True), path)
        try:
            state = index.state()
        except SearchIndexError:
            index.close()
            raise
        if state != STATE_READY:
            index.close()
            raise SearchIndexError(
                f"Search index at {path.name} is incomplete (state={state})",
                code=ErrorCode.INDEX_INVALID,
            )
        return index

    def close(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    def state(self) -> Optional[str]:
        """The build state recorded in the index, or None if unset."""
        return self._get_meta("state")

    def mark_ready(self) -> int:
        """Record a completed build. Returns the document count."""
        count = self.doc_count()
        try:
            with self._write_lock, self.engine.begin() as conn:
                for key, value in (
                    ("state", STATE_READY),
                    ("doc_count", str(count)),
                    ("built_at", str(unix_now())),
                ):
                    conn.execute(
                        text(
                            "INSERT INTO index_meta (key, value) VALUES (:key, :value) "
                            "ON CONFLICT(key) DO UPDATE SET value = excluded.value"
                        ),
                        {"key": key, "value": value},
                    )
        except SQLAlchemyError as e:
            raise SearchIndexError(
                "Failed to finalize search index",
                code=ErrorCode.INDEX_WRITE_FAILED,
                original_error=e,
            ) from e
        return count

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def add_document(self, doc: IndexDocument) -> None:
        """Insert or replace the document for ``doc.note_id``."""
        try:
            with self._write_lock, self.engine.begin() as conn:
                conn.execute(
                    text("DELETE FROM notes_fts WHERE rowid = :id"),
                    {"id": doc.note_id},
                )
                conn.execute(
                    text(
                        "INSERT INTO notes_fts (rowid, author, content, created) "
                        "VALUES (:id, :author, :content, :created)"
                    ),
                    {
                        "id": doc.note_id,
                        "author": doc.author,
                        "content": doc.content,
                        "created": doc.created,
                    },
                )
        except SQLAlchemyError as e:
            raise SearchIndexError(
                f"Failed to index note {doc.note_id}",
                code=ErrorCode.INDEX_WRITE_FAILED,
                original_error=e,
            ) from e

    def add_documents(self, docs: List[IndexDocument]) -> int:
        """Insert a batch of new documents in one transaction.

        Intended for a fresh index; documents are not de-duplicated.
        """
        if not docs:
            return 0
        try:
            with self._write_lock, self.engine.begin() as conn:
                conn.execute(
                    text(
                        "INSERT INTO notes_fts (rowid, author, content, created) "
                        "VALUES (:id, :author, :content, :created)"
                    ),
                    [
                        {
                            "id": d.note_id,
                            "author": d.author,
                            "content": d.content,
                            "created": d.created,
                        }
                        for d in docs
                    ],
                )
        except SQLAlchemyError as e:
            raise SearchIndexError(
                f"Failed to index batch starting at note {docs[0].note_id}",
                code=ErrorCode.INDEX_WRITE_FAILED,
                original_error=e,
            ) from e
        return len(docs)

    def doc_count(self) -> int:
        """Number of documents in the index."""
        try:
            with self.engine.connect() as conn:
                return conn.execute(text("SELECT COUNT(*) FROM notes_fts")).scalar() or 0
        except SQLAlchemyError as e:
            raise SearchIndexError(
                "Failed to count index documents",
                original_error=e,
            ) from e

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def search(self, query: str, limit: int = 50, offset: int = 0) -> List[SearchHit]:
        """Run an FTS5 query and return hits, best first.

        The query is forwarded untouched and results are NOT filtered by
        note visibility: a hit may name a note the caller cannot open.
        ``NoteService.search`` is the access-checked entry point.

        Args:
            query: FTS5 query string.
            limit: Maximum number of hits.
            offset: Number of best-ranked hits to skip, for paging.

        Returns:
            Hits ordered by descending score (score = -bm25).

        Raises:
            SearchIndexError: Malformed query or engine failure.
        """
        if not query or not query.strip():
            return []
        sql = text("""
            SELECT rowid, bm25(notes_fts) AS rank
            FROM notes_fts
            WHERE notes_fts MATCH :query
            ORDER BY rank, rowid
            LIMIT :limit OFFSET :offset
        """)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    sql, {"query": query, "limit": limit, "offset": offset}
                ).fetchall()
        except SQLAlchemyError as e:
            logger.warning(f"FTS5 query failed for '{query}': {e}")
            raise SearchIndexError(
                "Search query failed",
                query=query,
                code=ErrorCode.INDEX_QUERY_FAILED,
                original_error=e,
            ) from e
        return [SearchHit(note_id=row[0], score=-row[1]) for row in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_meta(self, key: str) -> Optional[str]:
        try:
            with self.engine.connect() as conn:
                return conn.execute(
                    text("SELECT value FROM index_meta WHERE key = :key"),
                    {"key": key},
                ).scalar()
        except SQLAlchemyError as e:
            raise SearchIndexError(
                f"Not a valid search index: {self.path.name}",
                code=ErrorCode.INDEX_INVALID,
                original_error=e,
            ) from e


def remove_index_files(path: Path) -> None:
    """Delete an index file together with its WAL and shared-memory files."""
    for candidate in (path, Path(f"{path}-wal"), Path(f"{path}-shm"), Path(f"{path}-journal")):
        try:
            os.remove(candidate)
        except FileNotFoundError:
            pass
