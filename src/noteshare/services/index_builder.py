"""Offline rebuild of the search index from the note store.

Used to bootstrap an index before the first server start and to repair
drift left by failed live index writes. The build never touches the
live index until it has fully succeeded:

1. Create a fresh index at ``<index_path>.building`` (state=building).
2. Stream every note once, resolve its author's name, add the document.
3. Mark the new index ready and atomically move it over the target.
4. Clear the outbox entries of every note that was indexed.
5. Index any note committed after step 2 read past its id.

The whole build runs under the exclusive index lock, so it refuses to
start while a server holds the index open for writing.

A note whose author does not resolve aborts the build and the partial
file is deleted; that state means the store itself is damaged.
"""
import logging
import os
import time
from pathlib import Path
from typing import Dict, List, Optional, Union

from noteshare.exceptions import (
    AuthorNotFoundError,
    ErrorCode,
    IndexBuildError,
)
from noteshare.models.schema import RebuildReport
from noteshare.services.index_sync import IndexSynchronizer
from noteshare.storage.fts_index import FtsIndex, IndexDocument, remove_index_files
from noteshare.storage.index_lock import IndexLock
from noteshare.storage.note_store import NoteStore

logger = logging.getLogger(__name__)

# Documents per index transaction
DEFAULT_BATCH_SIZE = 200
# Outbox ids cleared per statement, below SQLite's bound-parameter limit
OUTBOX_CHUNK_SIZE = 500


class IndexBuilder:
    """Regenerates a complete search index from the store."""

    def __init__(
        self,
        store: NoteStore,
        index_path: Union[str, Path],
        batch_size: int = DEFAULT_BATCH_SIZE,
        busy_timeout: float = 30.0,
    ):
        self.store = store
        self.index_path = Path(index_path)
        self.batch_size = max(1, batch_size)
        self.busy_timeout = busy_timeout

    @property
    def building_path(self) -> Path:
        return self.index_path.with_name(self.index_path.name + ".building")

    def rebuild(self) -> RebuildReport:
        """Build a fresh index and swap it into place.

        Holds the index lock exclusively for the whole build, so it
        refuses to run while a server or replay has the index open.

        Returns:
            Counts and timing for the completed build.

        Raises:
            SearchIndexError: The index is locked by a running writer
                (``INDEX_LOCKED``).
            IndexBuildError: A note references a missing author, or the
                index could not be written. No partial index is left behind.
            StoreError: The store could not be read.
        """
        with IndexLock(self.index_path):
            return self._rebuild_locked()

    def _rebuild_locked(self) -> RebuildReport:
        start = time.perf_counter()
        repaired = self.store.ensure_self_shares()

        index = FtsIndex.create(self.building_path, busy_timeout=self.busy_timeout)
        indexed_ids: List[int] = []
        try:
            self._fill(index, indexed_ids)
            doc_count = index.mark_ready()
        except Exception:
            index.close()
            remove_index_files(self.building_path)
            logger.error(f"Index rebuild aborted; removed partial {self.building_path}")
            raise
        index.close()

        self._swap_into_place()
        self._clear_outbox(indexed_ids)
        doc_count += self._catch_up(indexed_ids[-1] if indexed_ids else 0)

        elapsed = time.perf_counter() - start
        report = RebuildReport(
            doc_count=doc_count,
            elapsed_seconds=elapsed,
            repaired_self_shares=repaired,
        )
        logger.info(
            f"Rebuilt search index {self.index_path}: {doc_count} documents "
            f"in {elapsed:.2f}s ({report.docs_per_second:.1f} docs/s)"
        )
        return report

    def _fill(self, index: FtsIndex, indexed_ids: List[int]) -> None:
        names: Dict[int, str] = {}
        batch: List[IndexDocument] = []

        for note_id, author_id, content, created in self.store.iter_notes():
            author = names.get(author_id)
            if author is None:
                author = self._resolve_author(note_id, author_id)
                names[author_id] = author
            batch.append(
                IndexDocument(note_id=note_id, author=author, content=content, created=created)
            )
            if len(batch) >= self.batch_size:
                index.add_documents(batch)
                indexed_ids.extend(d.note_id for d in batch)
                batch = []

        if batch:
            index.add_documents(batch)
            indexed_ids.extend(d.note_id for d in batch)

    def _catch_up(self, after_id: int) -> int:
        """Index notes stored after the streaming pass read past them.

        A writer that committed during the build may have sent its
        document to the file that was just replaced.
        """
        late = [row[0] for row in self.store.iter_notes(after_id=after_id)]
        if not late:
            return 0
        index = FtsIndex.open(self.index_path, busy_timeout=self.busy_timeout)
        try:
            synchronizer = IndexSynchronizer(self.store, index)
            added = sum(1 for note_id in late if synchronizer.index_note(note_id))
        finally:
            index.close()
        if added < len(late):
            logger.warning(
                f"{len(late) - added} notes stored during the rebuild are still pending"
            )
        logger.info(f"Indexed {added} notes stored during the rebuild")
        return added

    def _resolve_author(self, note_id: int, author_id: int) -> str:
        try:
            return self.store.get_author(author_id).name
        except AuthorNotFoundError as e:
            raise IndexBuildError(
                f"Cannot find author {author_id} of note {note_id}",
                note_id=note_id,
                code=ErrorCode.DANGLING_AUTHOR,
                original_error=e,
            ) from e

    def _swap_into_place(self) -> None:
        # Stale WAL files would be replayed against the new database
        for suffix in ("-wal", "-shm"):
            stale = Path(f"{self.index_path}{suffix}")
            if stale.exists():
                stale.unlink()
        try:
            os.replace(self.building_path, self.index_path)
        except OSError as e:
            remove_index_files(self.building_path)
            raise IndexBuildError(
                f"Could not move rebuilt index into place: {self.index_path.name}",
                original_error=e,
            ) from e

    def _clear_outbox(self, indexed_ids: List[int]) -> None:
        cleared = 0
        for start in range(0, len(indexed_ids), OUTBOX_CHUNK_SIZE):
            cleared += self.store.mark_indexed(indexed_ids[start:start + OUTBOX_CHUNK_SIZE])
        if cleared:
            logger.info(f"Cleared {cleared} pending index writes covered by rebuild")


def rebuild_index(
    store: NoteStore,
    index_path: Union[str, Path],
    batch_size: Optional[int] = None,
    busy_timeout: float = 30.0,
) -> RebuildReport:
    """Rebuild the index at ``index_path`` from ``store``."""
    builder = IndexBuilder(
        store,
        index_path,
        batch_size=batch_size or DEFAULT_BATCH_SIZE,
        busy_timeout=busy_timeout,
    )
    return builder.rebuild()
