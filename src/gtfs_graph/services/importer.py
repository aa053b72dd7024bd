"""Feed import pipeline: load-and-expand, cleanup, reconcile.

Each phase runs in its own transaction, so a failure leaves the store as it
was after the last committed phase. last_imported is only advanced once all
three phases have committed, which makes a failed import retry on the next
update run.
"""

import logging
import tempfile
from datetime import date, datetime, timedelta
from pathlib import Path

import aiosqlite

from gtfs_graph.data.config import ImportConfig, get_import_config
from gtfs_graph.data.database import open_store, transaction
from gtfs_graph.data.feed_client import FeedClient, is_newer
from gtfs_graph.data.feed_registry import (
    acquire_import_lock,
    delete_feed,
    ensure_feed,
    get_feed,
    mark_imported,
    release_import_lock,
    save_capabilities,
    validate_feed_id,
)
from gtfs_graph.data.gtfs_loader import GTFSLoader, check_required_files, open_gtfs_source
from gtfs_graph.errors import FeedError
from gtfs_graph.models.graph import ImportResult
from gtfs_graph.services.reconciler import FeedReconciler

logger = logging.getLogger(__name__)


async def cleanup_feed(db: aiosqlite.Connection, feed_id: str, cutoff: date) -> dict[str, int]:
    """Drop service dates on or before cutoff, and trips that no longer run.

    A trip no longer runs when its service has no remaining calendar date.
    Its stop_times go with it.

    Args:
        db: Store connection (inside a transaction).
        feed_id: Feed namespace.
        cutoff: Last date to delete.

    Returns:
        Deleted row counts per table.
    """
    counts: dict[str, int] = {}

    cursor = await db.execute(
        "DELETE FROM calendar_dates WHERE feed_id = ? AND date <= ?",
        (feed_id, cutoff.isoformat()),
    )
    counts["calendar_dates"] = cursor.rowcount

    # A service with no remaining date has no future run, whether its dates
    # were just cut or it never had any (trips referencing an undefined service).
    stale_trips = """
        SELECT trip_id FROM trips
        WHERE feed_id = ?
          AND service_id NOT IN (SELECT service_id FROM calendar_dates WHERE feed_id = ?)
    """
    cursor = await db.execute(
        f"DELETE FROM stop_times WHERE feed_id = ? AND trip_id IN ({stale_trips})",
        (feed_id, feed_id, feed_id),
    )
    counts["stop_times"] = cursor.rowcount

    cursor = await db.execute(
        """
        DELETE FROM trips
        WHERE feed_id = ?
          AND service_id NOT IN (SELECT service_id FROM calendar_dates WHERE feed_id = ?)
        """,
        (feed_id, feed_id),
    )
    counts["trips"] = cursor.rowcount

    logger.info(f"Cleanup of feed {feed_id} up to {cutoff}: {counts}")
    return counts


class FeedImporter:
    """Runs imports, updates and clears of feeds against one store."""

    def __init__(self, config: ImportConfig | None = None, db_path: Path | None = None):
        """Initialize the importer.

        Args:
            config: Import configuration. Defaults to the environment configuration.
            db_path: Store path. Defaults to config.db_path.
        """
        self.config = config or get_import_config()
        self.db_path = Path(db_path) if db_path else self.config.db_path

    @property
    def lock_stale_after(self) -> timedelta:
        return timedelta(seconds=self.config.lock_stale_after_seconds)

    async def import_feed(
        self,
        feed_id: str,
        gtfs_path: Path,
        uri: str | None = None,
        now: datetime | None = None,
    ) -> ImportResult:
        """Import a GTFS directory or ZIP archive as feed_id.

        Args:
            feed_id: Feed namespace.
            gtfs_path: GTFS directory or ZIP archive.
            uri: Source URI recorded with the feed, used by update runs.
            now: Import time; also drives the cleanup cutoff. Defaults to now.

        Returns:
            ImportResult with row, cleanup and reconcile counts.

        Raises:
            FeedError: If the feed id or the feed's base tables are unusable.
            ParseError: If the calendar contains malformed rows.
            FeedLockedError: If another import of the feed is running.
            StoreError: If a phase fails in the store.
        """
        validate_feed_id(feed_id)
        now = now or datetime.now()
        cutoff = now.date() - timedelta(days=self.config.cleanup_retention_days)

        with open_gtfs_source(Path(gtfs_path)) as source:
            check_required_files(source)

            async with open_store(self.db_path) as db:
                await acquire_import_lock(db, feed_id, self.lock_stale_after, now)
                try:
                    logger.info(f"Loading feed {feed_id} from {gtfs_path}")
                    async with transaction(db):
                        loader = GTFSLoader(db, self.config.chunk_size)
                        row_counts, capabilities = await loader.load(
                            feed_id, source, today=now.date()
                        )
                        await ensure_feed(db, feed_id, uri)
                        await save_capabilities(db, feed_id, capabilities)
                    for table_name, count in row_counts.items():
                        logger.info(f"  {table_name}: {count:,} rows")

                    async with transaction(db):
                        cleanup_counts = await cleanup_feed(db, feed_id, cutoff)

                    async with transaction(db):
                        reconcile = await FeedReconciler(db, feed_id, capabilities).reconcile()

                    await mark_imported(db, feed_id, now)
                finally:
                    await release_import_lock(db, feed_id)

        logger.info(f"Imported feed {feed_id}")
        return ImportResult(
            feed_id=feed_id,
            row_counts=row_counts,
            cleanup_counts=cleanup_counts,
            reconcile=reconcile,
            imported_at=now,
        )

    async def update_feed(
        self, feed_id: str, uri: str | None = None, now: datetime | None = None
    ) -> ImportResult | None:
        """Download and import a feed if the remote copy is newer than the last import.

        Args:
            feed_id: Feed namespace.
            uri: Feed URL. Defaults to the URI stored with the feed.
            now: Import time. Defaults to now.

        Returns:
            ImportResult, or None if the feed was up to date.

        Raises:
            FeedError: If no URI is known for the feed.
            httpx.HTTPError: If the download fails.
        """
        validate_feed_id(feed_id)
        async with open_store(self.db_path) as db:
            feed = await get_feed(db, feed_id)

        uri = uri or (feed.uri if feed else None)
        if not uri:
            raise FeedError(f"No URI known for feed {feed_id!r}")

        async with FeedClient(self.config) as client:
            modified = await client.get_last_modified(uri)
            if not is_newer(modified, feed.last_imported if feed else None):
                logger.info(f"Feed {feed_id} is up to date (last modified {modified})")
                return None

            with tempfile.TemporaryDirectory(prefix="gtfs-graph-") as tmp:
                archive = Path(tmp) / f"{feed_id}.zip"
                await client.download(uri, archive)
                return await self.import_feed(feed_id, archive, uri=uri, now=now)

    async def clear_feed(self, feed_id: str) -> dict[str, int]:
        """Delete every row and node of a feed.

        Raises:
            FeedLockedError: If an import of the feed is running.
        """
        validate_feed_id(feed_id)
        async with open_store(self.db_path) as db:
            await acquire_import_lock(db, feed_id, self.lock_stale_after)
            try:
                return await delete_feed(db, feed_id)
            finally:
                await release_import_lock(db, feed_id)
