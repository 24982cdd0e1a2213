"""Tests for configuration loading and validation."""
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from noteshare.config import NoteShareConfig


class TestDefaults:
    """Values used when no environment overrides are present."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in (
            "NOTESHARE_DATABASE_PATH",
            "NOTESHARE_INDEX_PATH",
            "NOTESHARE_BCRYPT_ROUNDS",
            "NOTESHARE_RECENT_LIMIT",
            "NOTESHARE_SEARCH_LIMIT",
            "NOTESHARE_AUTHOR",
            "NOTESHARE_PASSWORD",
            "NOTESHARE_LOG_DIR",
        ):
            monkeypatch.delenv(name, raising=False)

    def test_default_paths(self):
        cfg = NoteShareConfig()
        assert cfg.database_path == Path("data/notes.sqlite3")
        assert cfg.index_path == Path("data/notes.index")

    def test_default_limits(self):
        cfg = NoteShareConfig()
        assert cfg.bcrypt_rounds == 12
        assert cfg.recent_limit == 20
        assert cfg.search_limit == 50
        assert cfg.author_name is None
        assert cfg.author_password is None

    def test_default_log_dir(self):
        assert NoteShareConfig().get_log_dir() == Path.home() / ".noteshare" / "logs"


class TestEnvironment:
    """NOTESHARE_* environment variables."""

    def test_paths_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("NOTESHARE_DATABASE_PATH", str(tmp_path / "db.sqlite3"))
        monkeypatch.setenv("NOTESHARE_INDEX_PATH", "idx/notes.index")
        monkeypatch.setenv("NOTESHARE_BASE_DIR", str(tmp_path))
        cfg = NoteShareConfig()
        assert cfg.get_db_path() == tmp_path / "db.sqlite3"
        assert cfg.get_index_path() == tmp_path / "idx" / "notes.index"
        assert (tmp_path / "idx").is_dir()

    def test_password_is_secret(self, monkeypatch):
        monkeypatch.setenv("NOTESHARE_AUTHOR", "alice")
        monkeypatch.setenv("NOTESHARE_PASSWORD", "hunter2")
        cfg = NoteShareConfig()
        assert cfg.author_name == "alice"
        assert cfg.author_password.get_secret_value() == "hunter2"
        assert "hunter2" not in repr(cfg)

    def test_log_level_upper_cased(self, monkeypatch):
        monkeypatch.setenv("NOTESHARE_LOG_LEVEL", "debug")
        assert NoteShareConfig().log_level == "DEBUG"


class TestValidation:
    """Settings the service cannot honor are rejected."""

    @pytest.mark.parametrize("rounds", [3, 32])
    def test_bcrypt_rounds_range(self, rounds):
        with pytest.raises(PydanticValidationError):
            NoteShareConfig(bcrypt_rounds=rounds)

    def test_low_rounds_allowed(self):
        assert NoteShareConfig(bcrypt_rounds=4).bcrypt_rounds == 4

    @pytest.mark.parametrize(
        "field,value",
        [("busy_timeout", 0), ("recent_limit", 0), ("search_limit", 0), ("search_overfetch", 0)],
    )
    def test_non_positive_settings(self, field, value):
        with pytest.raises(PydanticValidationError):
            NoteShareConfig(**{field: value})

    def test_absolute_path_kept(self, tmp_path):
        cfg = NoteShareConfig(base_dir=Path("/elsewhere"))
        assert cfg.get_absolute_path(tmp_path) == tmp_path
        assert cfg.get_absolute_path(Path("rel")) == Path("/elsewhere/rel")
