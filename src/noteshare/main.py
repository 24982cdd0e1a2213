#!/usr/bin/env python
"""Entry points for the NoteShare MCP server and the index tool."""
import argparse
import logging
import os
import sys
from pathlib import Path

from noteshare.config import config
from noteshare.exceptions import NoteShareError, SearchIndexError
from noteshare.observability import configure_logging
from noteshare.services.index_builder import DEFAULT_BATCH_SIZE, rebuild_index
from noteshare.services.index_sync import IndexSynchronizer
from noteshare.storage.fts_index import FtsIndex
from noteshare.storage.index_lock import IndexLock
from noteshare.storage.note_store import NoteStore

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db",
        help="SQLite store file path",
        type=str,
        default=os.environ.get("NOTESHARE_DATABASE_PATH"),
    )
    parser.add_argument(
        "--index",
        help="Search index file path",
        type=str,
        default=os.environ.get("NOTESHARE_INDEX_PATH"),
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for rotating log files",
        type=str,
        default=os.environ.get("NOTESHARE_LOG_DIR"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=LOG_LEVELS,
        default=config.log_level if config.log_level in LOG_LEVELS else "INFO",
    )


def parse_args(argv=None):
    """Parse command line arguments for the server."""
    parser = argparse.ArgumentParser(description="NoteShare MCP Server")
    _add_common_args(parser)
    parser.add_argument(
        "--author",
        help="Author name the server acts as (password from NOTESHARE_PASSWORD)",
        type=str,
        default=os.environ.get("NOTESHARE_AUTHOR"),
    )
    return parser.parse_args(argv)


def parse_index_args(argv=None):
    """Parse command line arguments for the index tool."""
    parser = argparse.ArgumentParser(
        description="Rebuild the NoteShare search index from the note store"
    )
    _add_common_args(parser)
    parser.add_argument(
        "--replay",
        help="Only retry pending index writes against the existing index",
        action="store_true",
    )
    parser.add_argument(
        "--batch-size",
        help="Documents per index transaction",
        type=int,
        default=DEFAULT_BATCH_SIZE,
    )
    return parser.parse_args(argv)


def update_config(args) -> None:
    """Update the global config with command line arguments."""
    if args.db:
        config.database_path = Path(args.db)
    if args.index:
        config.index_path = Path(args.index)
    if args.log_dir:
        config.log_dir = Path(args.log_dir)
    if getattr(args, "author", None):
        config.author_name = args.author


def _setup_logging(level_name: str, console: bool = True) -> logging.Logger:
    log_level = getattr(logging, level_name.upper(), logging.INFO)
    try:
        log_file = configure_logging(config.get_log_dir(), level=log_level, console=console)
    except OSError as e:
        # Fall back to console logging if the log directory is unusable
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_file = None

    logger = logging.getLogger(__name__)
    if log_file:
        logger.info(f"Persistent logging enabled: {log_file}")
    return logger


def main(argv=None):
    """Run the NoteShare MCP server."""
    args = parse_args(argv)
    update_config(args)
    logger = _setup_logging(args.log_level)

    # Imported here so the index tool does not pull in the MCP stack
    from noteshare.server.mcp_server import NoteShareMcpServer
    from noteshare.services.note_service import NoteService

    if not config.author_name or config.author_password is None:
        logger.error("Set NOTESHARE_AUTHOR and NOTESHARE_PASSWORD (or --author)")
        sys.exit(1)

    try:
        logger.info(f"Using note store: {config.get_db_path()}")
        service = NoteService.from_config(config)
    except NoteShareError as e:
        logger.error(f"Cannot start server: {e}")
        sys.exit(1)

    login = service.authenticate(
        config.author_name, config.author_password.get_secret_value()
    )
    if not login.ok:
        logger.error(f"Cannot start server for {config.author_name}: {login.error}")
        service.shutdown()
        sys.exit(1)

    try:
        logger.info(f"Starting NoteShare MCP server as author {login.value}")
        server = NoteShareMcpServer(service, login.value, config)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


def index_main(argv=None):
    """Rebuild the search index, or replay pending index writes."""
    args = parse_index_args(argv)
    update_config(args)
    logger = _setup_logging(args.log_level)

    try:
        store = NoteStore(
            database_path=config.get_db_path(),
            bcrypt_rounds=config.bcrypt_rounds,
            busy_timeout=config.busy_timeout,
        )
    except NoteShareError as e:
        logger.error(f"Failed to open note store: {e}")
        sys.exit(1)

    index_path = config.get_index_path()
    try:
        if args.replay:
            _replay(store, index_path, logger)
        else:
            report = rebuild_index(
                store,
                index_path,
                batch_size=args.batch_size,
                busy_timeout=config.busy_timeout,
            )
            print(
                f"Indexed {report.doc_count} documents in "
                f"{report.elapsed_seconds:.2f}s ({report.docs_per_second:.1f} docs/s)"
            )
            if report.repaired_self_shares:
                print(f"Repaired {report.repaired_self_shares} self-sharing edges")
    except NoteShareError as e:
        logger.error(f"Index tool failed: {e}")
        sys.exit(1)
    finally:
        store.close()


def _replay(store: NoteStore, index_path: Path, logger: logging.Logger) -> None:
    index_lock = IndexLock(index_path).acquire_or_raise()
    try:
        try:
            index = FtsIndex.open(index_path, busy_timeout=config.busy_timeout)
        except SearchIndexError:
            logger.error("No usable index to replay into; run a full rebuild instead")
            raise
        try:
            replayed, still_pending = IndexSynchronizer(store, index).replay_pending()
        finally:
            index.close()
    finally:
        index_lock.release()
    print(f"Replayed {replayed} pending index writes, {still_pending} still pending")
    if still_pending:
        sys.exit(1)


if __name__ == "__main__":
    main()
