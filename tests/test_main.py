"""Tests for the command line entry points."""
import logging
from unittest.mock import patch

import pytest
from pydantic import SecretStr

from noteshare.main import index_main, main, parse_args, parse_index_args
from noteshare.models.schema import NoteDraft, Privacy
from noteshare.observability import ROOT_LOGGER_NAME
from noteshare.services.note_service import NoteService
from noteshare.storage.fts_index import FtsIndex
from noteshare.storage.index_lock import IndexLock


@pytest.fixture(autouse=True)
def restore_logger():
    """Drop handlers the entry points attach to the package logger."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    saved_handlers = list(logger.handlers)
    saved_level = logger.level
    yield
    for handler in logger.handlers:
        if handler not in saved_handlers:
            handler.close()
    logger.handlers = saved_handlers
    logger.setLevel(saved_level)


@pytest.fixture
def cli_paths(test_config):
    db = test_config.get_db_path()
    index = test_config.get_index_path()
    return ["--db", str(db), "--index", str(index), "--log-dir", str(test_config.log_dir)]


class TestArgumentParsing:
    """Flags understood by both tools."""

    def test_server_flags(self):
        args = parse_args(["--db", "a.sqlite3", "--index", "a.index", "--author", "alice"])
        assert args.db == "a.sqlite3"
        assert args.index == "a.index"
        assert args.author == "alice"

    def test_index_flags(self):
        args = parse_index_args(["--replay", "--batch-size", "10", "--log-level", "DEBUG"])
        assert args.replay is True
        assert args.batch_size == 10
        assert args.log_level == "DEBUG"


class TestIndexTool:
    """The noteshare-index entry point."""

    def test_rebuild(self, note_store, authors, cli_paths, test_config, capsys):
        for word in ("hello", "ciao"):
            note_store.create_note(
                NoteDraft(author_id=authors["alice"], content=word, privacy=Privacy.PUBLIC)
            )

        index_main(cli_paths)

        assert "Indexed 2 documents" in capsys.readouterr().out
        index = FtsIndex.open(test_config.get_index_path())
        try:
            assert index.doc_count() == 2
        finally:
            index.close()
        assert note_store.pending_index_ids() == []

    def test_replay(self, note_store, authors, cli_paths, capsys):
        index_main(cli_paths)
        note_store.create_note(NoteDraft(author_id=authors["bob"], content="late arrival"))

        index_main(cli_paths + ["--replay"])

        assert "Replayed 1 pending index writes, 0 still pending" in capsys.readouterr().out
        assert note_store.pending_index_ids() == []

    def test_replay_without_index(self, note_store, cli_paths):
        with pytest.raises(SystemExit) as exc_info:
            index_main(cli_paths + ["--replay"])
        assert exc_info.value.code == 1

    def test_rebuild_refused_while_server_running(self, note_store, authors, cli_paths, test_config):
        index_main(cli_paths)
        service = NoteService.from_config(test_config)
        try:
            with pytest.raises(SystemExit) as exc_info:
                index_main(cli_paths)
            assert exc_info.value.code == 1

            created = service.create_note(authors["bob"], "quokka", privacy=Privacy.PUBLIC)
            assert service.pending_index_writes().status == "empty"
            index = FtsIndex.open(test_config.get_index_path())
            try:
                assert [h.note_id for h in index.search("quokka")] == [created.value]
            finally:
                index.close()
        finally:
            service.shutdown()

        index_main(cli_paths)

    def test_replay_refused_during_rebuild(self, note_store, cli_paths, test_config):
        index_main(cli_paths)
        with IndexLock(test_config.get_index_path()):
            with pytest.raises(SystemExit) as exc_info:
                index_main(cli_paths + ["--replay"])
        assert exc_info.value.code == 1

    def test_rebuild_with_dangling_author(self, note_store, cli_paths, test_config):
        note_store.create_note(NoteDraft(author_id=404, content="orphan"))
        with pytest.raises(SystemExit) as exc_info:
            index_main(cli_paths)
        assert exc_info.value.code == 1
        assert not test_config.get_index_path().exists()


class TestServerEntryPoint:
    """The noteshare entry point."""

    @pytest.fixture(autouse=True)
    def no_identity(self, test_config, monkeypatch):
        monkeypatch.setattr(test_config, "author_name", None)
        monkeypatch.setattr(test_config, "author_password", None)

    def test_requires_credentials(self, cli_paths):
        with pytest.raises(SystemExit) as exc_info:
            main(cli_paths)
        assert exc_info.value.code == 1

    def test_rejects_bad_credentials(self, note_store, authors, cli_paths, test_config):
        test_config.author_password = SecretStr("wrong")
        with pytest.raises(SystemExit) as exc_info:
            main(cli_paths + ["--author", "alice"])
        assert exc_info.value.code == 1

    def test_starts_server_as_author(self, note_store, authors, cli_paths, test_config):
        test_config.author_password = SecretStr("alice-password")
        with patch("noteshare.server.mcp_server.NoteShareMcpServer") as server_cls:
            main(cli_paths + ["--author", "alice"])

        service, author_id, settings = server_cls.call_args.args
        assert author_id == authors["alice"]
        assert settings is test_config
        server_cls.return_value.run.assert_called_once()
        service.shutdown()
