"""
NoteShare - a personal note-taking service with per-note visibility.

Authors write short notes, decide who may read them (private, protected,
public, plus an explicit sharing graph) and find them again by recency,
identifier, or full-text search. The relational store is authoritative;
the full-text index is a rebuildable projection of it.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("noteshare")
except PackageNotFoundError:
    __version__ = "0.3.0"
