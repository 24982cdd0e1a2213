"""Configuration module for the NoteShare service."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, model_validator

from noteshare import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the default data directory
_USER_ENV = Path.home() / ".noteshare" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# bcrypt refuses cost factors outside this range
_MIN_BCRYPT_ROUNDS = 4
_MAX_BCRYPT_ROUNDS = 31


def _env_path(name: str) -> Optional[Path]:
    value = os.getenv(name)
    return Path(value) if value else None


class NoteShareConfig(BaseModel):
    """Configuration for the NoteShare service."""

    # Base directory that relative paths are resolved against
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTESHARE_BASE_DIR", "."))
    )
    # Relational store (authors, notes, sharing edges)
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTESHARE_DATABASE_PATH", "data/notes.sqlite3")
        )
    )
    # Full-text index file, rebuilt by noteshare-index
    index_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTESHARE_INDEX_PATH", "data/notes.index")
        )
    )
    # Logging
    log_dir: Optional[Path] = Field(
        default_factory=lambda: _env_path("NOTESHARE_LOG_DIR")
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTESHARE_LOG_LEVEL", "INFO").upper()
    )
    # Password hashing cost
    bcrypt_rounds: int = Field(
        default_factory=lambda: int(os.getenv("NOTESHARE_BCRYPT_ROUNDS", "12"))
    )
    # Seconds a store or index call may wait on a lock before failing
    busy_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NOTESHARE_BUSY_TIMEOUT", "30"))
    )
    # Query limits
    recent_limit: int = Field(
        default_factory=lambda: int(os.getenv("NOTESHARE_RECENT_LIMIT", "20"))
    )
    search_limit: int = Field(
        default_factory=lambda: int(os.getenv("NOTESHARE_SEARCH_LIMIT", "50"))
    )
    # Raw hits fetched per requested hit before access filtering
    search_overfetch: int = Field(
        default_factory=lambda: int(os.getenv("NOTESHARE_SEARCH_OVERFETCH", "4"))
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("NOTESHARE_SERVER_NAME", "noteshare"))
    server_version: str = Field(default=__version__)
    # Identity the MCP server acts as once authenticated
    author_name: Optional[str] = Field(
        default_factory=lambda: os.getenv("NOTESHARE_AUTHOR")
    )
    author_password: Optional[SecretStr] = Field(
        default_factory=lambda: (
            SecretStr(os.environ["NOTESHARE_PASSWORD"])
            if os.getenv("NOTESHARE_PASSWORD") is not None
            else None
        )
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "NoteShareConfig":
        """Reject settings the store or hashing backend cannot honor."""
        if not _MIN_BCRYPT_ROUNDS <= self.bcrypt_rounds <= _MAX_BCRYPT_ROUNDS:
            raise ValueError(
                f"bcrypt_rounds must be between {_MIN_BCRYPT_ROUNDS} "
                f"and {_MAX_BCRYPT_ROUNDS}"
            )
        if self.busy_timeout <= 0:
            raise ValueError("busy_timeout must be > 0")
        if self.recent_limit < 1 or self.search_limit < 1:
            raise ValueError("recent_limit and search_limit must be >= 1")
        if self.search_overfetch < 1:
            raise ValueError("search_overfetch must be >= 1")
        if self.bcrypt_rounds < 10:
            logger.warning(
                "bcrypt_rounds=%d is below the recommended minimum of 10; "
                "only use low cost factors in tests.",
                self.bcrypt_rounds,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_path(self) -> Path:
        """Get the absolute store path, creating its directory."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return db_path

    def get_index_path(self) -> Path:
        """Get the absolute index path, creating its directory."""
        index_path = self.get_absolute_path(self.index_path)
        index_path.parent.mkdir(parents=True, exist_ok=True)
        return index_path

    def get_log_dir(self) -> Path:
        """Get the log directory (defaults to ~/.noteshare/logs)."""
        if self.log_dir is None:
            return Path.home() / ".noteshare" / "logs"
        return self.get_absolute_path(self.log_dir)


# Default instance for entry points; core classes take explicit arguments
config = NoteShareConfig()
