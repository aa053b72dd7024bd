"""Feed registry: namespaces, import timestamps and the per-feed import lock."""

import json
import logging
import os
import re
import socket
from datetime import datetime, timedelta

import aiosqlite

from gtfs_graph.data.database import transaction
from gtfs_graph.data.graph_store import GraphStore
from gtfs_graph.data.schema import FEED_TABLES
from gtfs_graph.errors import FeedError, FeedLockedError, StoreError
from gtfs_graph.models.gtfs import Feed, FeedCapabilities

logger = logging.getLogger(__name__)

FEED_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def validate_feed_id(feed_id: str | None) -> str:
    """Return the feed id if it can be used as a namespace.

    Raises:
        FeedError: If the id is empty or contains unsupported characters.
    """
    if not feed_id or not FEED_ID_PATTERN.match(feed_id):
        raise FeedError(f"Invalid feed identifier: {feed_id!r}")
    return feed_id


def _row_to_feed(row: aiosqlite.Row) -> Feed:
    last_imported = row["last_imported"]
    capabilities = json.loads(row["capabilities"] or "{}")
    return Feed(
        feed_id=row["feed_id"],
        uri=row["uri"],
        last_imported=datetime.fromisoformat(last_imported) if last_imported else None,
        capabilities=FeedCapabilities(columns=capabilities),
    )


async def get_feed(db: aiosqlite.Connection, feed_id: str) -> Feed | None:
    """Get a registered feed, or None if it was never imported."""
    sql = "SELECT feed_id, uri, last_imported, capabilities FROM feeds WHERE feed_id = ?"
    async with db.execute(sql, (feed_id,)) as cursor:
        row = await cursor.fetchone()
    return _row_to_feed(row) if row else None


async def list_feeds(db: aiosqlite.Connection) -> list[Feed]:
    """List all registered feeds ordered by id."""
    sql = "SELECT feed_id, uri, last_imported, capabilities FROM feeds ORDER BY feed_id"
    async with db.execute(sql) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_feed(row) for row in rows]


async def ensure_feed(db: aiosqlite.Connection, feed_id: str, uri: str | None = None) -> Feed:
    """Register a feed on first import; update its URI when a new one is given."""
    await db.execute(
        "INSERT OR IGNORE INTO feeds (feed_id, uri) VALUES (?, ?)",
        (feed_id, uri),
    )
    if uri is not None:
        await db.execute("UPDATE feeds SET uri = ? WHERE feed_id = ?", (uri, feed_id))
    feed = await get_feed(db, feed_id)
    if feed is None:
        raise StoreError(f"Feed {feed_id} missing right after registration")
    return feed


async def save_capabilities(
    db: aiosqlite.Connection, feed_id: str, capabilities: FeedCapabilities
) -> None:
    """Persist the optional-column record computed at load time."""
    payload = json.dumps({table: sorted(cols) for table, cols in capabilities.columns.items()})
    await db.execute("UPDATE feeds SET capabilities = ? WHERE feed_id = ?", (payload, feed_id))


async def mark_imported(db: aiosqlite.Connection, feed_id: str, when: datetime) -> None:
    """Advance last_imported. Only called once every import phase has committed."""
    async with transaction(db):
        await db.execute(
            "UPDATE feeds SET last_imported = ? WHERE feed_id = ?",
            (when.isoformat(), feed_id),
        )


async def delete_feed(db: aiosqlite.Connection, feed_id: str) -> dict[str, int]:
    """Remove every row and node of a feed, and the feed itself.

    Returns:
        Deleted row counts per table.
    """
    counts: dict[str, int] = {}
    async with transaction(db):
        for table_name in FEED_TABLES:
            cursor = await db.execute(f"DELETE FROM {table_name} WHERE feed_id = ?", (feed_id,))
            counts[table_name] = cursor.rowcount
        counts["nodes"] = await GraphStore(db).delete_feed_nodes(feed_id)
        await db.execute("DELETE FROM feeds WHERE feed_id = ?", (feed_id,))
    logger.info(f"Cleared feed {feed_id}: {counts}")
    return counts


def _lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def acquire_import_lock(
    db: aiosqlite.Connection,
    feed_id: str,
    stale_after: timedelta,
    now: datetime | None = None,
) -> None:
    """Take the exclusive import lock for one feed.

    A lock older than stale_after is assumed to belong to a crashed import
    and is taken over.

    Raises:
        FeedLockedError: If another import holds a fresh lock.
    """
    now = now or datetime.now()
    async with transaction(db):
        cursor = await db.execute(
            "DELETE FROM import_locks WHERE feed_id = ? AND acquired_at < ?",
            (feed_id, (now - stale_after).isoformat()),
        )
        if cursor.rowcount:
            logger.warning(f"Took over stale import lock for feed {feed_id}")
        cursor = await db.execute(
            "INSERT OR IGNORE INTO import_locks (feed_id, acquired_at, owner) VALUES (?, ?, ?)",
            (feed_id, now.isoformat(), _lock_owner()),
        )
        if cursor.rowcount == 0:
            raise FeedLockedError(feed_id)


async def release_import_lock(db: aiosqlite.Connection, feed_id: str) -> None:
    """Release the import lock of a feed."""
    async with transaction(db):
        await db.execute("DELETE FROM import_locks WHERE feed_id = ?", (feed_id,))
