"""Visibility rules for notes.

A viewer may read a note when any of these hold:

    privacy == PUBLIC
    or author == viewer
    or (privacy == PROTECTED and a sharing edge author -> viewer exists)

PRIVATE notes are therefore readable by their author only. Every read
path of the store filters through ``visible_to`` inside its SQL, so an
unfiltered row can never be handed back before the check runs.
"""
from sqlalchemy import and_, exists, or_
from sqlalchemy.sql.elements import ColumnElement

from noteshare.models.db_models import DBNote, DBSharing
from noteshare.models.schema import Privacy


def is_visible(viewer_id: int, author_id: int, privacy: Privacy, shared: bool) -> bool:
    """Evaluate the visibility rule for a single note.

    Args:
        viewer_id: The caller's identity.
        author_id: The note's author.
        privacy: The note's privacy level.
        shared: Whether a sharing edge author -> viewer exists.
    """
    return (
        privacy == Privacy.PUBLIC
        or author_id == viewer_id
        or (privacy == Privacy.PROTECTED and shared)
    )


def shared_with(viewer_id: int) -> ColumnElement[bool]:
    """EXISTS clause: the current note's author shares with ``viewer_id``."""
    return exists().where(
        DBSharing.sharer_id == DBNote.author_id,
        DBSharing.sharee_id == viewer_id,
    )


def visible_to(viewer_id: int) -> ColumnElement[bool]:
    """SQL predicate over ``notes`` matching ``is_visible`` for ``viewer_id``."""
    return or_(
        DBNote.privacy == int(Privacy.PUBLIC),
        DBNote.author_id == viewer_id,
        and_(DBNote.privacy == int(Privacy.PROTECTED), shared_with(viewer_id)),
    )
