"""Relational store for authors, notes and sharing edges.

The store is the authoritative home of every record. All writes go
through one in-process lock (single-writer discipline for SQLite);
reads run concurrently under WAL. Every read of note rows is filtered
by the visibility predicate in ``noteshare.storage.access``.
"""
import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Set, Tuple

import bcrypt
from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from noteshare.config import config
from noteshare.exceptions import (
    AuthorizationError,
    AuthorNotFoundError,
    ConflictError,
    ErrorCode,
    NoteNotFoundError,
    StoreError,
    ValidationError,
)
from noteshare.models.db_models import (
    DBAuthor,
    DBIndexOutbox,
    DBNote,
    DBSharing,
    get_session_factory,
    init_db,
)
from noteshare.models.schema import (
    Author,
    Note,
    NoteDraft,
    NoteTitle,
    Privacy,
    derive_title,
    unix_now,
    validate_limit,
    validate_note_ids,
    validate_privacy,
)
from noteshare.storage.access import visible_to

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255
# bcrypt only hashes the first 72 bytes and newer releases reject longer input
MAX_PASSWORD_BYTES = 72
# Rows fetched per round trip when streaming every note
STREAM_BATCH_SIZE = 500


class NoteStore:
    """SQLite-backed store for authors, notes and sharing edges."""

    def __init__(
        self,
        database_path: Optional[Path] = None,
        engine: Optional[Engine] = None,
        bcrypt_rounds: Optional[int] = None,
        busy_timeout: Optional[float] = None,
    ):
        """Initialize the store.

        Args:
            database_path: SQLite file. Defaults to config.database_path.
                Ignored when engine is provided.
            engine: Pre-configured SQLAlchemy engine to share.
            bcrypt_rounds: Password hashing cost. Defaults to config.
            busy_timeout: Seconds to wait on a lock. Defaults to config.
        """
        self.bcrypt_rounds = bcrypt_rounds or config.bcrypt_rounds
        timeout = busy_timeout or config.busy_timeout
        if engine is not None:
            self.engine = engine
        else:
            path = Path(database_path) if database_path else config.get_db_path()
            try:
                self.engine = init_db(path, busy_timeout=timeout)
            except SQLAlchemyError as e:
                raise StoreError(
                    "Failed to open note store",
                    operation="open",
                    code=ErrorCode.STORAGE_CONNECTION_FAILED,
                    original_error=e,
                ) from e
            logger.info(f"NoteStore opened: {path}")
        self.session_factory = get_session_factory(self.engine)
        self._write_lock = threading.Lock()

    def close(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Authors
    # ------------------------------------------------------------------

    def create_author(self, name: str, password: str) -> int:
        """Register an author and return the new id.

        The password is hashed with bcrypt before it reaches the database.
        The author row and its self-sharing edge are written in one
        transaction, so an author always shares with themself.

        Raises:
            ValidationError: Empty or oversized name or password.
            ConflictError: The name is already registered.
            StoreError: Any other database failure.
        """
        name = self._validate_name(name)
        secret = self._hash_password(password)

        with self._write_lock:
            try:
                with self.session_factory() as session:
                    author = DBAuthor(name=name, secret=secret)
                    session.add(author)
                    session.flush()
                    author_id = author.id
                    session.add(DBSharing(sharer_id=author_id, sharee_id=author_id))
                    session.commit()
            except IntegrityError as e:
                raise ConflictError(
                    f"Author name already registered: {name}",
                    code=ErrorCode.DUPLICATE_AUTHOR,
                    details={"name": name},
                ) from e
            except SQLAlchemyError as e:
                raise StoreError(
                    "Failed to create author",
                    operation="create_author",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e

        logger.info(f"Registered author {author_id}")
        return author_id

    def authenticate(self, name: str, password: str) -> int:
        """Verify a name/password pair and return the author id.

        Unknown names and wrong passwords fail identically.

        Raises:
            AuthorizationError: The credentials do not match.
        """
        with self._read("authenticate") as session:
            row = session.execute(
                select(DBAuthor.id, DBAuthor.secret).where(DBAuthor.name == name)
            ).first()

        if row is None or not self._check_password(password, row.secret):
            raise AuthorizationError(
                "No matching author for these credentials",
                code=ErrorCode.BAD_CREDENTIALS,
            )
        return row.id

    def get_author(self, author_id: int) -> Author:
        """Get an author by id.

        Raises:
            AuthorNotFoundError: No such author.
        """
        with self._read("get_author") as session:
            db_author = session.get(DBAuthor, author_id)
            if db_author is None:
                raise AuthorNotFoundError(author_id)
            return Author(id=db_author.id, name=db_author.name)

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def create_note(self, draft: NoteDraft) -> int:
        """Insert a note and return its id.

        An index-outbox row is written in the same transaction; it is
        removed once the note's search document is confirmed written.
        Either both rows are committed or neither is.
        """
        privacy = validate_privacy(draft.privacy)
        with self._write_lock:
            try:
                with self.session_factory() as session:
                    db_note = DBNote(
                        author_id=draft.author_id,
                        content=draft.content,
                        created_at=draft.created_at,
                        privacy=int(privacy),
                        render_hint=draft.render_hint,
                    )
                    session.add(db_note)
                    session.flush()
                    note_id = db_note.id
                    session.add(DBIndexOutbox(note_id=note_id, queued_at=unix_now()))
                    session.commit()
            except SQLAlchemyError as e:
                raise StoreError(
                    "Failed to create note",
                    operation="create_note",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
        return note_id

    def get_note(self, viewer_id: int, note_id: int) -> Note:
        """Get a note the viewer may read.

        Raises:
            NoteNotFoundError: The note is absent or not visible; the two
                cases are indistinguishable.
        """
        with self._read("get_note") as session:
            db_note = session.scalar(
                select(DBNote).where(DBNote.id == note_id, visible_to(viewer_id))
            )
            if db_note is None:
                raise NoteNotFoundError(note_id, viewer_id)
            return self._db_note_to_model(db_note)

    def get_recent_notes(self, viewer_id: int, limit: int) -> List[int]:
        """Ids of the newest notes visible to the viewer, newest first.

        Equal timestamps are ordered by descending id, i.e. the later
        insertion comes first.
        """
        limit = validate_limit(limit)
        if limit == 0:
            return []
        with self._read("get_recent_notes") as session:
            rows = session.execute(
                select(DBNote.id)
                .where(visible_to(viewer_id))
                .order_by(DBNote.created_at.desc(), DBNote.id.desc())
                .limit(limit)
            ).scalars().all()
        return list(rows)

    def get_titles(self, viewer_id: int, note_ids: Iterable[int]) -> List[NoteTitle]:
        """Titles of the requested notes that the viewer may read.

        Absent and hidden ids are left out; request order is preserved.
        """
        ids = validate_note_ids(note_ids)
        if not ids:
            return []
        with self._read("get_titles") as session:
            rows = session.execute(
                select(DBNote.id, DBNote.content)
                .where(DBNote.id.in_(ids), visible_to(viewer_id))
            ).all()
        titles = {row.id: derive_title(row.content) for row in rows}
        return [NoteTitle(id=nid, title=titles[nid]) for nid in ids if nid in titles]

    def visible_note_ids(self, viewer_id: int, note_ids: Iterable[int]) -> Set[int]:
        """Subset of ``note_ids`` the viewer may read."""
        ids = set(note_ids)
        if not ids:
            return set()
        with self._read("visible_note_ids") as session:
            rows = session.execute(
                select(DBNote.id).where(DBNote.id.in_(ids), visible_to(viewer_id))
            ).scalars().all()
        return set(rows)

    def set_note_privacy(self, caller_id: int, note_id: int, privacy: Any) -> None:
        """Change a note's privacy level. Only the author may do this.

        Raises:
            ValidationError: The level is not 0, 1 or 2. Nothing is written.
            AuthorizationError: No note with this id belongs to the caller
                (covers both a foreign note and a missing one).
        """
        level = validate_privacy(privacy)
        with self._write_lock:
            try:
                with self.session_factory() as session:
                    result = session.execute(
                        update(DBNote)
                        .where(DBNote.id == note_id, DBNote.author_id == caller_id)
                        .values(privacy=int(level))
                    )
                    updated = result.rowcount
                    session.commit()
            except SQLAlchemyError as e:
                raise StoreError(
                    "Failed to update note privacy",
                    operation="set_note_privacy",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e

        if updated <= 0:
            raise AuthorizationError(
                f"Privacy update matches no author-note pair: {caller_id} {note_id}",
                caller_id=caller_id,
                code=ErrorCode.NO_MATCHING_ROW,
            )
        logger.debug(f"Note {note_id} privacy set to {level.name}")

    def iter_notes(self, after_id: int = 0) -> Iterator[Tuple[int, int, str, int]]:
        """Stream (id, author_id, content, created_at) for every note.

        A single forward pass over the table in id order, fetched in
        batches so memory stays flat on large stores. Only notes with an
        id above ``after_id`` are returned.
        """
        try:
            with self.session_factory() as session:
                result = session.execute(
                    select(DBNote.id, DBNote.author_id, DBNote.content, DBNote.created_at)
                    .where(DBNote.id > after_id)
                    .order_by(DBNote.id)
                    .execution_options(yield_per=STREAM_BATCH_SIZE)
                )
                for row in result:
                    yield row.id, row.author_id, row.content, row.created_at
        except SQLAlchemyError as e:
            raise StoreError(
                "Failed to stream notes",
                operation="iter_notes",
                original_error=e,
            ) from e

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    def share_with(self, sharer_id: int, sharee_id: int) -> bool:
        """Let ``sharee_id`` read ``sharer_id``'s protected notes.

        Idempotent: an existing edge is left alone and the call still
        succeeds.

        Returns:
            True if a new edge was created, False if it already existed.

        Raises:
            AuthorNotFoundError: The sharee is not a registered author.
        """
        with self._write_lock:
            try:
                with self.session_factory() as session:
                    if session.get(DBAuthor, sharee_id) is None:
                        raise AuthorNotFoundError(sharee_id)
                    existing = session.scalar(
                        select(DBSharing.id).where(
                            DBSharing.sharer_id == sharer_id,
                            DBSharing.sharee_id == sharee_id,
                        )
                    )
                    created = existing is None
                    if created:
                        # Another process may insert the same edge first
                        session.execute(
                            sqlite_insert(DBSharing)
                            .values(sharer_id=sharer_id, sharee_id=sharee_id)
                            .on_conflict_do_nothing(
                                index_elements=["sharer_id", "sharee_id"]
                            )
                        )
                        session.commit()
            except SQLAlchemyError as e:
                raise StoreError(
                    "Failed to share notes",
                    operation="share_with",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e

        if created:
            logger.info(f"Author {sharer_id} now shares with {sharee_id}")
        return created

    def list_sharees(self, sharer_id: int) -> List[int]:
        """Authors ``sharer_id`` shares with, excluding themself, ascending."""
        with self._read("list_sharees") as session:
            rows = session.execute(
                select(DBSharing.sharee_id)
                .where(
                    DBSharing.sharer_id == sharer_id,
                    DBSharing.sharee_id != sharer_id,
                )
                .order_by(DBSharing.sharee_id)
            ).scalars().all()
        return list(rows)

    def ensure_self_shares(self) -> int:
        """Insert any missing author self-edges.

        Registrations from before self-edges were written atomically can
        lack one; this detects and repairs them.

        Returns:
            Number of edges inserted.
        """
        with self._write_lock:
            try:
                with self.session_factory() as session:
                    self_edge = (
                        select(DBSharing.id)
                        .where(
                            DBSharing.sharer_id == DBAuthor.id,
                            DBSharing.sharee_id == DBAuthor.id,
                        )
                        .exists()
                    )
                    missing = session.execute(
                        select(DBAuthor.id).where(~self_edge)
                    ).scalars().all()
                    for author_id in missing:
                        session.execute(
                            sqlite_insert(DBSharing)
                            .values(sharer_id=author_id, sharee_id=author_id)
                            .on_conflict_do_nothing(
                                index_elements=["sharer_id", "sharee_id"]
                            )
                        )
                    session.commit()
            except SQLAlchemyError as e:
                raise StoreError(
                    "Failed to repair self-sharing edges",
                    operation="ensure_self_shares",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
        repaired = len(missing)
        if repaired:
            logger.warning(f"Repaired {repaired} missing self-sharing edges")
        return repaired

    # ------------------------------------------------------------------
    # Index outbox
    # ------------------------------------------------------------------

    def pending_index_ids(self) -> List[int]:
        """Note ids whose search document is not confirmed written."""
        with self._read("pending_index_ids") as session:
            rows = session.execute(
                select(DBIndexOutbox.note_id).order_by(DBIndexOutbox.note_id)
            ).scalars().all()
        return list(rows)

    def mark_indexed(self, note_ids: Iterable[int]) -> int:
        """Remove outbox entries for notes now present in the index."""
        ids = list(note_ids)
        if not ids:
            return 0
        with self._write_lock:
            try:
                with self.session_factory() as session:
                    deleted = (
                        session.query(DBIndexOutbox)
                        .filter(DBIndexOutbox.note_id.in_(ids))
                        .delete(synchronize_session=False)
                    )
                    session.commit()
            except SQLAlchemyError as e:
                raise StoreError(
                    "Failed to update index outbox",
                    operation="mark_indexed",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
        return deleted

    def get_index_source(self, note_id: int) -> Tuple[int, str, str, int]:
        """(id, author name, content, created_at) for one note, unfiltered.

        Only the index synchronizer uses this; it never reaches a viewer.

        Raises:
            NoteNotFoundError: No such note.
            AuthorNotFoundError: The note's author does not resolve.
        """
        with self._read("get_index_source") as session:
            db_note = session.get(DBNote, note_id)
            if db_note is None:
                raise NoteNotFoundError(note_id)
            author = session.get(DBAuthor, db_note.author_id)
            if author is None:
                raise AuthorNotFoundError(
                    db_note.author_id,
                    f"Note {note_id} references missing author {db_note.author_id}",
                )
            return db_note.id, author.name, db_note.content, db_note.created_at

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _read(self, operation: str) -> "_ReadSession":
        return _ReadSession(self.session_factory, operation)

    def _hash_password(self, password: str) -> str:
        encoded = self._encode_password(password)
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.bcrypt_rounds)).decode("utf-8")

    @staticmethod
    def _check_password(password: str, secret: str) -> bool:
        try:
            encoded = NoteStore._encode_password(password)
            return bcrypt.checkpw(encoded, secret.encode("utf-8"))
        except (ValidationError, ValueError):
            return False

    @staticmethod
    def _encode_password(password: str) -> bytes:
        if not isinstance(password, str):
            raise ValidationError("Password must be a string", field="password")
        encoded = password.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise ValidationError(
                f"Password exceeds {MAX_PASSWORD_BYTES} bytes",
                field="password",
            )
        return encoded

    @staticmethod
    def _validate_name(name: str) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(
                "Author name cannot be empty",
                field="name",
                code=ErrorCode.INVALID_AUTHOR_NAME,
            )
        name = name.strip()
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(
                f"Author name exceeds {MAX_NAME_LENGTH} characters",
                field="name",
                value=name,
                code=ErrorCode.INVALID_AUTHOR_NAME,
            )
        return name

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> Note:
        return Note(
            id=db_note.id,
            author_id=db_note.author_id,
            content=db_note.content,
            created_at=db_note.created_at,
            privacy=Privacy(db_note.privacy),
            render_hint=db_note.render_hint,
        )


class _ReadSession:
    """Session context that converts driver failures into StoreError.

    Domain errors raised inside the block pass through untouched.
    """

    def __init__(self, session_factory, operation: str):
        self._session = session_factory()
        self._operation = operation

    def __enter__(self):
        return self._session

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._session.close()
        if exc is not None and isinstance(exc, SQLAlchemyError):
            raise StoreError(
                f"Store read failed during {self._operation}",
                operation=self._operation,
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=exc,
            ) from exc
        return False
