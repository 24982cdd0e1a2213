"""Advisory lock guarding the live search index file.

Processes that write into the live index (the MCP server and the
replay tool) hold a shared ``flock`` on ``<index_path>.lock``. A
rebuild swaps a new file over the index path, so it needs the lock
exclusively and refuses to start while any writer holds it. The kernel
drops the lock when its holder exits, crashed or not.
"""
import fcntl
import logging
import os
from pathlib import Path
from typing import Optional, Union

from noteshare.exceptions import ErrorCode, SearchIndexError

logger = logging.getLogger(__name__)


class IndexLock:
    """Shared/exclusive lock file beside an index.

    Args:
        index_path: The index the lock protects.
    """

    def __init__(self, index_path: Union[str, Path]):
        index_path = Path(index_path)
        self.path = index_path.with_name(index_path.name + ".lock")
        self._fd: Optional[int] = None
        self.exclusive = False

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self, exclusive: bool = False) -> bool:
        """Try to take the lock without waiting.

        Returns:
            True if the lock is now held, False if a conflicting holder has it.
        """
        if self._fd is not None:
            raise RuntimeError(f"Index lock already held: {self.path}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_CREAT | os.O_RDWR, 0o644)
        mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        try:
            fcntl.flock(fd, mode | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        self._fd = fd
        self.exclusive = exclusive
        logger.debug(f"Acquired {'exclusive' if exclusive else 'shared'} lock {self.path}")
        return True

    def acquire_or_raise(self, exclusive: bool = False) -> "IndexLock":
        """Take the lock or raise ``SearchIndexError(INDEX_LOCKED)``."""
        if not self.acquire(exclusive=exclusive):
            if exclusive:
                message = "Search index is in use by a running server; stop it before rebuilding"
            else:
                message = "Search index rebuild in progress; retry once it finishes"
            raise SearchIndexError(message, code=ErrorCode.INDEX_LOCKED)
        return self

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
            self.exclusive = False

    def __enter__(self) -> "IndexLock":
        return self.acquire_or_raise(exclusive=True)

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
