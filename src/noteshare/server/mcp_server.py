"""MCP server exposing NoteShare operations as tools."""

import atexit
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from mcp.server.fastmcp import FastMCP

from noteshare.config import NoteShareConfig
from noteshare.models.schema import Note, OperationResult, Privacy
from noteshare.observability import metrics, timed_operation
from noteshare.services.note_service import NoteService

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1_000_000  # 1 MB
MAX_QUERY_LENGTH = 1_000


def _parse_privacy(value: str) -> Any:
    """Accept a level name (private/protected/public) or its number."""
    value = value.strip()
    if value.lstrip("-").isdigit():
        return int(value)
    try:
        return Privacy[value.upper()]
    except KeyError:
        return value


def _format_note(note: Note, author_name: Optional[str] = None) -> str:
    created = datetime.fromtimestamp(note.created_at, tz=timezone.utc).isoformat()
    result = f"# {note.title or '(untitled)'}\n"
    result += f"ID: {note.id}\n"
    result += f"Author: {author_name or note.author_id}\n"
    result += f"Privacy: {note.privacy.name.lower()}\n"
    result += f"Created: {created}\n"
    result += f"Render hint: {note.render_hint}\n"
    result += f"\n{note.content}\n"
    return result


class NoteShareMcpServer:
    """MCP server bound to one authenticated author.

    The server process is the session: it is started for an author whose
    credentials were verified once, and that integer identity is passed
    into every service call.
    """

    def __init__(
        self,
        service: NoteService,
        author_id: int,
        settings: NoteShareConfig,
    ):
        """Initialize the MCP server.

        Args:
            service: The note service all tools delegate to.
            author_id: Verified identity the tools act as.
            settings: Server name/version and query defaults.
        """
        self.service = service
        self.author_id = author_id
        self.settings = settings
        self.mcp = FastMCP(settings.server_name)
        atexit.register(self._shutdown)
        self._register_tools()
        logger.info(f"NoteShare MCP server initialized for author {author_id}")

    def run(self) -> None:
        self.mcp.run()

    def _shutdown(self) -> None:
        """Clean up resources on server exit."""
        self.service.shutdown()

    def format_error_response(self, result: OperationResult) -> str:
        """Render a failed outcome without leaking internals.

        Store and index failures get a reference id that matches the log
        line; caller-facing failures echo their message.
        """
        error = result.error
        kind = result.error_kind
        if kind in ("StoreError", "SearchIndexError"):
            error_id = str(uuid.uuid4())[:8]
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {kind} {error.code.name} (ref: {error_id})"
        return f"Error: {kind} {error.code.name}: {error.message}"

    def _respond(self, result: OperationResult, render: Callable[[Any], str]) -> str:
        if not result.ok:
            return self.format_error_response(result)
        return render(result.value)

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="ns_create_note")
        def ns_create_note(
            content: str,
            privacy: str = "protected",
            render_hint: int = 0,
        ) -> str:
            """Create a new note as the current author.
            Args:
                content: Note text; the first line doubles as its title
                privacy: private, protected (default) or public, or 0/1/2
                render_hint: Presentation tag stored with the note
            """
            with timed_operation("ns_create_note") as op:
                if len(content) > MAX_CONTENT_LENGTH:
                    return f"Error: Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
                result = self.service.create_note(
                    self.author_id,
                    content,
                    privacy=_parse_privacy(privacy),
                    render_hint=render_hint,
                )
                if result.ok:
                    op["note_id"] = result.value
                return self._respond(
                    result, lambda note_id: f"Note created successfully with ID: {note_id}"
                )

        @self.mcp.tool(name="ns_get_note")
        def ns_get_note(note_id: int) -> str:
            """Retrieve a note by ID.
            Args:
                note_id: The note's numeric ID
            """
            with timed_operation("ns_get_note", note_id=note_id):
                result = self.service.get_note(self.author_id, note_id)
                if not result.ok:
                    return self._respond(result, str)
                author = self.service.get_author(result.value.author_id)
                name = author.value.name if author.status == "ok" else None
                return _format_note(result.value, name)

        @self.mcp.tool(name="ns_recent_notes")
        def ns_recent_notes(limit: Optional[int] = None) -> str:
            """List the most recent notes you can read, newest first.
            Args:
                limit: Maximum number of notes (default from server settings)
            """
            with timed_operation("ns_recent_notes") as op:
                result = self.service.get_recent_notes(self.author_id, limit)
                if result.status == "empty":
                    return "No notes found."
                if not result.ok:
                    return self._respond(result, str)
                op["result_count"] = len(result.value)
                titles = self.service.get_titles(self.author_id, result.value)
                return self._respond(titles, self._render_titles)

        @self.mcp.tool(name="ns_note_titles")
        def ns_note_titles(note_ids: str) -> str:
            """Get titles for a comma-separated list of note IDs.
            Notes you cannot read are left out.
            Args:
                note_ids: Comma-separated note IDs, e.g. "3,7,12"
            """
            try:
                ids = [int(part) for part in note_ids.split(",") if part.strip()]
            except ValueError:
                return f"Error: Invalid note ID list: {note_ids}"
            result = self.service.get_titles(self.author_id, ids)
            if result.status == "empty":
                return "No readable notes in that list."
            return self._respond(result, self._render_titles)

        @self.mcp.tool(name="ns_search")
        def ns_search(query: str, limit: Optional[int] = None) -> str:
            """Full-text search over notes you can read.
            Args:
                query: FTS5 query: terms, "phrases", OR/NOT, prefix*, author:name
                limit: Maximum number of hits
            """
            if len(query) > MAX_QUERY_LENGTH:
                return f"Error: Query exceeds maximum length of {MAX_QUERY_LENGTH} characters"
            result = self.service.search(self.author_id, query, limit)
            if result.status == "empty":
                return f"No notes match: {query}"
            return self._respond(
                result,
                lambda hits: json.dumps([h.to_dict() for h in hits], indent=2),
            )

        @self.mcp.tool(name="ns_set_privacy")
        def ns_set_privacy(note_id: int, privacy: str) -> str:
            """Change the privacy of one of your notes.
            Args:
                note_id: The note's numeric ID
                privacy: private, protected or public, or 0/1/2
            """
            result = self.service.set_note_privacy(
                self.author_id, note_id, _parse_privacy(privacy)
            )
            return self._respond(
                result,
                lambda level: f"Note {note_id} is now {level.name.lower()}",
            )

        @self.mcp.tool(name="ns_share_with")
        def ns_share_with(author_id: int) -> str:
            """Let another author read your protected notes.
            Args:
                author_id: Numeric ID of the author to share with
            """
            result = self.service.share_with(self.author_id, author_id)
            return self._respond(
                result,
                lambda created: (
                    f"Now sharing with author {author_id}"
                    if created
                    else f"Already sharing with author {author_id}"
                ),
            )

        @self.mcp.tool(name="ns_list_sharees")
        def ns_list_sharees() -> str:
            """List the authors you share protected notes with."""
            result = self.service.list_sharees(self.author_id)
            if result.status == "empty":
                return "You are not sharing with anyone."
            return self._respond(
                result, lambda ids: "Sharing with: " + ", ".join(str(i) for i in ids)
            )

        @self.mcp.tool(name="ns_register_author")
        def ns_register_author(name: str, password: str) -> str:
            """Register a new author account.
            Args:
                name: Unique author name
                password: Initial password (stored only as a bcrypt hash)
            """
            result = self.service.register_author(name, password)
            return self._respond(
                result, lambda author_id: f"Registered author {name} with ID: {author_id}"
            )

        @self.mcp.tool(name="ns_status")
        def ns_status() -> str:
            """Show index health and operation metrics."""
            pending = self.service.pending_index_writes()
            status = {
                "author_id": self.author_id,
                "server_version": self.settings.server_version,
                "search_available": self.service.index is not None,
                "pending_index_writes": len(pending.value or []) if pending.ok else None,
                "metrics": metrics.get_summary(),
            }
            return json.dumps(status, indent=2, default=str)

    @staticmethod
    def _render_titles(titles) -> str:
        return "\n".join(f"{t.id}: {t.title or '(untitled)'}" for t in titles)
