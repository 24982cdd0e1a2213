"""Keeps the search index in step with the note store.

Write order is fixed: the store commits first (together with an
index-outbox intent row), then the document is written to the index,
then the intent is cleared. If the index write fails the note stays
committed and its intent row stays behind; nothing retries on its own.
``replay_pending`` or a full rebuild repairs the gap later.
"""
import logging
from typing import List, Optional, Tuple

from noteshare.exceptions import NoteShareError, SearchIndexError, StoreError
from noteshare.storage.fts_index import FtsIndex, IndexDocument
from noteshare.storage.note_store import NoteStore

logger = logging.getLogger(__name__)


class IndexSynchronizer:
    """Projects single notes into the search index after store writes."""

    def __init__(self, store: NoteStore, index: Optional[FtsIndex]):
        """Initialize the synchronizer.

        Args:
            store: The authoritative note store.
            index: The live search index, or None when no index could be
                opened. Without an index every note stays pending.
        """
        self.store = store
        self.index = index

    def index_note(self, note_id: int) -> bool:
        """Write one note's document to the index.

        Never raises: store success is what the caller reports, so index
        trouble is logged for the rebuild process instead.

        Returns:
            True if the document is in the index, False if it is still pending.
        """
        if self.index is None:
            logger.warning(f"No search index open; note {note_id} left pending")
            return False

        try:
            note_id, author, content, created = self.store.get_index_source(note_id)
            self.index.add_document(
                IndexDocument(note_id=note_id, author=author, content=content, created=created)
            )
        except SearchIndexError as e:
            logger.warning(f"Index write failed for note {note_id}, left pending: {e}")
            return False
        except NoteShareError as e:
            logger.error(f"Cannot project note {note_id} into index: {e}")
            return False

        try:
            self.store.mark_indexed([note_id])
        except StoreError as e:
            # The document is indexed; a replay will simply rewrite it
            logger.warning(f"Note {note_id} indexed but outbox not cleared: {e}")
        return True

    def pending(self) -> List[int]:
        """Note ids whose index write has not been confirmed."""
        return self.store.pending_index_ids()

    def replay_pending(self, limit: Optional[int] = None) -> Tuple[int, int]:
        """Retry every outstanding index write.

        Args:
            limit: Replay at most this many notes.

        Returns:
            (replayed, still_pending) counts.
        """
        pending = self.pending()
        if limit is not None:
            pending = pending[:limit]
        replayed = sum(1 for note_id in pending if self.index_note(note_id))
        still_pending = len(pending) - replayed
        if pending:
            logger.info(
                f"Replayed {replayed} of {len(pending)} pending index writes"
            )
        return replayed, still_pending
