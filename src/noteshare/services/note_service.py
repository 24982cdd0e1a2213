"""Service layer for NoteShare operations.

Every public method takes the caller's already-authenticated integer
identity where one applies and returns an ``OperationResult``; store and
index exceptions are converted here so none cross into the transport.
"""
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from noteshare.config import NoteShareConfig, config as default_config
from noteshare.exceptions import (
    ErrorCode,
    NoteShareError,
    SearchIndexError,
    StoreError,
    ValidationError,
)
from noteshare.models.schema import (
    DEFAULT_PRIVACY,
    Author,
    Note,
    NoteDraft,
    NoteTitle,
    OperationResult,
    Privacy,
    SearchHit,
    validate_limit,
    validate_privacy,
)
from noteshare.observability import timed_operation
from noteshare.services.index_sync import IndexSynchronizer
from noteshare.storage.fts_index import FtsIndex
from noteshare.storage.index_lock import IndexLock
from noteshare.storage.note_store import NoteStore

logger = logging.getLogger(__name__)


class NoteService:
    """Facade over the note store, the search index and its synchronizer."""

    def __init__(
        self,
        store: NoteStore,
        index: Optional[FtsIndex] = None,
        recent_limit: int = 20,
        search_limit: int = 50,
        search_overfetch: int = 4,
        index_lock: Optional[IndexLock] = None,
    ):
        """Initialize the service.

        Args:
            store: The authoritative note store.
            index: The live search index. When None, notes are still
                stored and listed but search reports an index error and
                every new note stays pending for the rebuilder.
            recent_limit: Default size of recency listings.
            search_limit: Default number of search hits.
            search_overfetch: Raw hits fetched per requested hit so that
                hits hidden from the viewer can be dropped; also the page
                size factor when paging deeper into the ranking.
            index_lock: Shared index lock to release on shutdown.
        """
        self.store = store
        self.index = index
        self.synchronizer = IndexSynchronizer(store, index)
        self.recent_limit = recent_limit
        self.search_limit = search_limit
        self.search_overfetch = search_overfetch
        self.index_lock = index_lock

    @classmethod
    def from_config(cls, settings: Optional[NoteShareConfig] = None) -> "NoteService":
        """Open the store and, if it has been built, the search index.

        Takes the shared index lock first and keeps it until ``shutdown``
        so that a rebuild cannot replace the index underneath this service.

        Raises:
            SearchIndexError: A rebuild holds the index lock (``INDEX_LOCKED``).
            StoreError: The store could not be opened.
        """
        settings = settings or default_config
        index_path: Path = settings.get_index_path()
        index_lock = IndexLock(index_path).acquire_or_raise()
        try:
            store = NoteStore(
                database_path=settings.get_db_path(),
                bcrypt_rounds=settings.bcrypt_rounds,
                busy_timeout=settings.busy_timeout,
            )
        except NoteShareError:
            index_lock.release()
            raise
        try:
            index: Optional[FtsIndex] = FtsIndex.open(
                index_path, busy_timeout=settings.busy_timeout
            )
        except SearchIndexError as e:
            logger.warning(f"Search disabled until the index is rebuilt: {e}")
            index = None
        return cls(
            store,
            index,
            recent_limit=settings.recent_limit,
            search_limit=settings.search_limit,
            search_overfetch=settings.search_overfetch,
            index_lock=index_lock,
        )

    def shutdown(self) -> None:
        """Close the index and the store, then release the index lock."""
        if self.index is not None:
            self.index.close()
        self.store.close()
        if self.index_lock is not None:
            self.index_lock.release()

    # ------------------------------------------------------------------
    # Authors
    # ------------------------------------------------------------------

    def register_author(self, name: str, password: str) -> OperationResult[int]:
        """Register an author; the password is hashed before storage."""
        return self._run(
            "register_author", lambda: self.store.create_author(name, password)
        )

    def authenticate(self, name: str, password: str) -> OperationResult[int]:
        """Resolve credentials to an author id."""
        return self._run("authenticate", lambda: self.store.authenticate(name, password))

    def get_author(self, author_id: int) -> OperationResult[Author]:
        return self._run(
            "get_author", lambda: self.store.get_author(author_id), author_id=author_id
        )

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def create_note(
        self,
        caller_id: int,
        content: str,
        privacy: Any = DEFAULT_PRIVACY,
        render_hint: int = 0,
        created_at: Optional[int] = None,
    ) -> OperationResult[int]:
        """Store a note authored by the caller and mirror it into the index.

        Success is decided by the store alone: an index failure leaves
        the note pending for the rebuilder and the call still succeeds.
        """
        def create() -> int:
            fields = {
                "author_id": caller_id,
                "content": content,
                "privacy": validate_privacy(privacy),
                "render_hint": render_hint,
            }
            if created_at is not None:
                fields["created_at"] = created_at
            try:
                draft = NoteDraft(**fields)
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Invalid note: {e.errors()[0]['msg']}",
                    field=str(e.errors()[0]["loc"][0]),
                ) from e
            note_id = self.store.create_note(draft)
            if not self.synchronizer.index_note(note_id):
                logger.warning(
                    f"Note {note_id} stored but not yet searchable; "
                    "run noteshare-index to repair"
                )
            return note_id

        return self._run("create_note", create, caller_id=caller_id)

    def get_note(self, viewer_id: int, note_id: int) -> OperationResult[Note]:
        """Fetch a note; absent and hidden notes both report not-found."""
        return self._run(
            "get_note",
            lambda: self.store.get_note(viewer_id, note_id),
            viewer_id=viewer_id,
            note_id=note_id,
        )

    def get_recent_notes(
        self, viewer_id: int, limit: Optional[int] = None
    ) -> OperationResult[List[int]]:
        limit = self.recent_limit if limit is None else limit
        return self._run(
            "get_recent_notes",
            lambda: self.store.get_recent_notes(viewer_id, limit),
            viewer_id=viewer_id,
            limit=limit,
        )

    def get_titles(
        self, viewer_id: int, note_ids: Iterable[int]
    ) -> OperationResult[List[NoteTitle]]:
        return self._run(
            "get_titles",
            lambda: self.store.get_titles(viewer_id, note_ids),
            viewer_id=viewer_id,
        )

    def set_note_privacy(
        self, caller_id: int, note_id: int, privacy: Any
    ) -> OperationResult[Privacy]:
        """Change privacy of the caller's own note; returns the new level."""
        def update() -> Privacy:
            self.store.set_note_privacy(caller_id, note_id, privacy)
            return Privacy(privacy)

        return self._run(
            "set_note_privacy", update, caller_id=caller_id, note_id=note_id
        )

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    def share_with(self, sharer_id: int, sharee_id: int) -> OperationResult[bool]:
        """Share the caller's protected notes; value is True for a new edge."""
        return self._run(
            "share_with",
            lambda: self.store.share_with(sharer_id, sharee_id),
            sharer_id=sharer_id,
            sharee_id=sharee_id,
        )

    def list_sharees(self, sharer_id: int) -> OperationResult[List[int]]:
        return self._run(
            "list_sharees",
            lambda: self.store.list_sharees(sharer_id),
            sharer_id=sharer_id,
        )

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self, viewer_id: int, query: str, limit: Optional[int] = None
    ) -> OperationResult[List[SearchHit]]:
        """Full-text search restricted to notes the viewer may open.

        Pages through raw hits in score order, resolving each page
        against the store's visibility rule in one query, until ``limit``
        visible hits are found or the index has no more matches.
        """
        def search() -> List[SearchHit]:
            wanted = validate_limit(self.search_limit if limit is None else limit)
            if self.index is None:
                raise SearchIndexError(
                    "Search index is not available",
                    query=query,
                    code=ErrorCode.INDEX_INVALID,
                )
            if wanted == 0:
                return []
            page_size = wanted * self.search_overfetch
            hits: List[SearchHit] = []
            seen: Set[int] = set()
            offset = 0
            while len(hits) < wanted:
                raw = self.index.search(query, page_size, offset=offset)
                fresh = [h for h in raw if h.note_id not in seen]
                seen.update(h.note_id for h in fresh)
                visible = self.store.visible_note_ids(viewer_id, (h.note_id for h in fresh))
                hits.extend(h for h in fresh if h.note_id in visible)
                if len(raw) < page_size:
                    break
                offset += page_size
            if offset:
                logger.debug(
                    f"Search for viewer {viewer_id} paged {offset // page_size + 1} "
                    f"windows of {page_size} raw hits"
                )
            return hits[:wanted]

        return self._run("search", search, viewer_id=viewer_id)

    def pending_index_writes(self) -> OperationResult[List[int]]:
        """Note ids still waiting for their index document."""
        return self._run("pending_index_writes", self.synchronizer.pending)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _run(self, operation: str, fn: Callable[[], Any], **context) -> OperationResult:
        with timed_operation(operation, **context) as op:
            try:
                value = fn()
            except NoteShareError as e:
                op["error"] = e.code.name
                logger.info(f"{operation} failed: {e}")
                return OperationResult.failure(e)
            except Exception as e:
                op["error"] = type(e).__name__
                logger.error(f"Unexpected error in {operation}: {e}", exc_info=True)
                return OperationResult.failure(
                    StoreError(
                        f"Unexpected failure in {operation}",
                        operation=operation,
                        original_error=e,
                    )
                )
            if isinstance(value, list):
                op["result_count"] = len(value)
            return OperationResult.success(value)
