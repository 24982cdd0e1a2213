"""SQLAlchemy database models for the NoteShare relational store."""
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import (Column, Index, Integer, String, Text, UniqueConstraint,
                        create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from noteshare.models.schema import DEFAULT_PRIVACY

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBAuthor(Base):
    """Database model for an author."""
    __tablename__ = "authors"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    # bcrypt hash, never returned by the store
    secret = Column(String(255), nullable=False)

    def __repr__(self) -> str:
        """Return string representation of author."""
        return f"<Author(id={self.id}, name='{self.name}')>"


class DBNote(Base):
    """Database model for a note.

    ``author_id`` has no foreign key; callers populate it from a trusted
    identity and the index rebuild treats a dangling reference as a fatal
    integrity fault.
    """
    __tablename__ = "notes"
    id = Column(Integer, primary_key=True, autoincrement=True)
    author_id = Column(Integer, nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_at = Column(Integer, nullable=False)
    privacy = Column(Integer, default=int(DEFAULT_PRIVACY), nullable=False)
    render_hint = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_notes_created_id", "created_at", "id"),
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return (
            f"<Note(id={self.id}, author_id={self.author_id}, "
            f"privacy={self.privacy})>"
        )


class DBSharing(Base):
    """Directed sharing edge: ``sharer_id`` lets ``sharee_id`` read protected notes."""
    __tablename__ = "sharing"
    id = Column(Integer, primary_key=True, autoincrement=True)
    sharer_id = Column(Integer, nullable=False, index=True)
    sharee_id = Column(Integer, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("sharer_id", "sharee_id", name="unique_sharing_edge"),
    )

    def __repr__(self) -> str:
        """Return string representation of sharing edge."""
        return f"<Sharing(sharer={self.sharer_id}, sharee={self.sharee_id})>"


class DBIndexOutbox(Base):
    """A note whose index document has not been confirmed written."""
    __tablename__ = "index_outbox"
    note_id = Column(Integer, primary_key=True)
    queued_at = Column(Integer, nullable=False)

    def __repr__(self) -> str:
        return f"<IndexOutbox(note_id={self.note_id})>"


def init_db(
    database_path: Union[str, Path],
    busy_timeout: float = 30.0,
) -> Engine:
    """Open (and create if needed) the relational store.

    Applies SQLite settings suited to one writer with concurrent readers:
    - WAL (Write-Ahead Logging) so readers are not blocked by a writer
    - NORMAL synchronous mode
    - A driver-level busy timeout so a stalled lock cannot pin a worker
    - Pool pre-ping to detect stale connections

    Args:
        database_path: SQLite file path.
        busy_timeout: Seconds to wait for a lock before failing.

    Returns:
        The configured engine with all tables created.
    """
    engine = create_engine(
        f"sqlite:///{database_path}",
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=busy_timeout,
        pool_pre_ping=True,
        connect_args={"timeout": busy_timeout, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine, expire_on_commit: Optional[bool] = False):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=expire_on_commit)
