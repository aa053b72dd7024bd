"""Database connection helpers for the GTFS graph SQLite store."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from gtfs_graph.data.config import get_import_config
from gtfs_graph.data.schema import INDEX_SQL, SCHEMA_SQL
from gtfs_graph.errors import StoreError

logger = logging.getLogger(__name__)


def get_db_path() -> Path:
    """Get the database path from configuration."""
    return get_import_config().db_path


async def _connect(db_path: Path) -> aiosqlite.Connection:
    # isolation_level=None: transactions are opened explicitly by transaction()
    db = await aiosqlite.connect(db_path, isolation_level=None)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys=ON")
    return db


@asynccontextmanager
async def get_db(db_path: Path | None = None) -> AsyncIterator[aiosqlite.Connection]:
    """Async context manager for read connections with Row factory.

    Args:
        db_path: Optional path to the database. Defaults to the configured
                 GTFS_GRAPH_DB_PATH.

    Yields:
        aiosqlite.Connection configured with Row factory for dict-like access.

    Raises:
        FileNotFoundError: If the database file doesn't exist.
    """
    if db_path is None:
        db_path = get_db_path()

    if not db_path.exists():
        raise FileNotFoundError(
            f"Database not found at {db_path}. Run 'gtfs-graph import <feed_id> <gtfs_path>' first."
        )

    db = await _connect(db_path)
    try:
        yield db
    finally:
        await db.close()


@asynccontextmanager
async def open_store(db_path: Path | None = None) -> AsyncIterator[aiosqlite.Connection]:
    """Open (and create if needed) the store for writing.

    Creates the parent directory, the schema and the indexes if they are missing.
    """
    if db_path is None:
        db_path = get_db_path()
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    db = await _connect(db_path)
    try:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.executescript(SCHEMA_SQL)
        await db.executescript(INDEX_SQL)
        yield db
    finally:
        await db.close()


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Run a block inside one write transaction.

    BEGIN IMMEDIATE takes SQLite's write lock up front, so concurrent writers
    serialize instead of interleaving. The block commits on success and rolls
    back on any exception; sqlite errors are re-raised as StoreError.
    """
    try:
        await db.execute("BEGIN IMMEDIATE")
    except aiosqlite.Error as e:
        raise StoreError(f"Could not start transaction: {e}") from e

    try:
        yield db
    except aiosqlite.Error as e:
        await _rollback(db)
        logger.error(f"Transaction rolled back: {e}")
        raise StoreError(str(e)) from e
    except BaseException:
        await _rollback(db)
        raise

    try:
        await db.execute("COMMIT")
    except aiosqlite.Error as e:
        await _rollback(db)
        raise StoreError(f"Commit failed: {e}") from e


async def _rollback(db: aiosqlite.Connection) -> None:
    if db.in_transaction:
        await db.execute("ROLLBACK")
