import argparse
import asyncio
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel

from gtfs_graph.app import mcp
from gtfs_graph.errors import GTFSGraphError

# register tools
from gtfs_graph.tools import departure_tools  # noqa: F401

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: str


@mcp.tool()
def health() -> HealthResponse:
    """Check if the GTFS graph MCP server is running and healthy.

    Returns the server status, version, and current timestamp.
    """
    from gtfs_graph import __version__

    return HealthResponse(
        status="ok",
        version=__version__,
        timestamp=datetime.now(UTC).isoformat(),
    )


async def run_import(feed_id: str, gtfs_path: Path, db_path: Path | None, uri: str | None) -> None:
    """Run a feed import."""
    from gtfs_graph.services.importer import FeedImporter

    result = await FeedImporter(db_path=db_path).import_feed(feed_id, gtfs_path, uri=uri)

    print(f"\nImport of {feed_id} complete. Row counts:")
    for table, count in result.row_counts.items():
        print(f"  {table}: {count:,}")
    print("Cleanup:")
    for table, count in result.cleanup_counts.items():
        print(f"  {table}: {count:,} deleted")
    r = result.reconcile
    print(
        f"Stops: {r.stops_created} created, {r.stops_updated} updated, "
        f"{r.stops_unchanged} unchanged, {r.stops_rejected} rejected"
    )
    print(
        f"Lines: {r.lines_created} created, {r.lines_updated} updated, "
        f"{r.lines_unchanged} unchanged, {r.lines_rejected} rejected, {r.lines_skipped} skipped"
    )


async def run_update(feed_ids: list[str], db_path: Path | None, uri: str | None) -> None:
    """Download and import feeds whose remote copy changed since their last import."""
    from gtfs_graph.services.importer import FeedImporter

    importer = FeedImporter(db_path=db_path)
    for feed_id in feed_ids:
        result = await importer.update_feed(feed_id, uri=uri)
        if result is None:
            print(f"{feed_id}: up to date")
        else:
            print(f"{feed_id}: imported ({result.reconcile.lines_created} new lines)")


async def run_clear(feed_id: str, db_path: Path | None) -> None:
    """Delete every row and node of a feed."""
    from gtfs_graph.services.importer import FeedImporter

    counts = await FeedImporter(db_path=db_path).clear_feed(feed_id)
    print(f"\nCleared feed {feed_id}:")
    for table, count in counts.items():
        print(f"  {table}: {count:,}")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="SQLite database path (default: data/gtfs_graph.db or GTFS_GRAPH_DB_PATH env var)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gtfs-graph",
        description="GTFS feed importer and departure MCP server",
    )
    subparsers = parser.add_subparsers(dest="command")

    import_parser = subparsers.add_parser(
        "import",
        help="Import a GTFS feed and reconcile its stop and line nodes",
    )
    import_parser.add_argument("feed_id", help="Identifier to import the feed under")
    import_parser.add_argument(
        "gtfs_path",
        type=Path,
        help="Path to GTFS directory or ZIP file",
    )
    import_parser.add_argument("--uri", help="Source URL recorded for later updates")
    _add_common_arguments(import_parser)

    update_parser = subparsers.add_parser(
        "update",
        help="Download and import feeds that changed since their last import",
    )
    update_parser.add_argument("feed_ids", nargs="+", help="Feeds to update")
    update_parser.add_argument("--uri", help="Override the stored source URL")
    _add_common_arguments(update_parser)

    clear_parser = subparsers.add_parser(
        "clear",
        help="Delete all data and nodes of a feed",
    )
    clear_parser.add_argument("feed_id", help="Feed to clear")
    _add_common_arguments(clear_parser)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        # Default: run MCP server
        mcp.run()
        return

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "import":
        coro = run_import(args.feed_id, args.gtfs_path, args.db, args.uri)
    elif args.command == "update":
        coro = run_update(args.feed_ids, args.db, args.uri)
    else:
        coro = run_clear(args.feed_id, args.db)

    try:
        asyncio.run(coro)
    except GTFSGraphError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
