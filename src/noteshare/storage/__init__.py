"""Storage layer for the NoteShare service."""

from noteshare.storage.fts_index import FtsIndex, IndexDocument
from noteshare.storage.note_store import NoteStore

__all__ = [
    "FtsIndex",
    "IndexDocument",
    "NoteStore",
]
