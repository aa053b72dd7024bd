"""GTFS data loader for ingesting one feed's tables into SQLite."""

import csv
import io
import logging
import zipfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import IO, Any

import aiosqlite

from gtfs_graph.data.schema import FEED_TABLES
from gtfs_graph.errors import FeedError, ParseError
from gtfs_graph.models.gtfs import ExpandedServiceDate, FeedCapabilities
from gtfs_graph.services.calendar_expander import expand_feed_calendar, parse_gtfs_date

logger = logging.getLogger(__name__)


class TableDefinition:
    """How one GTFS file maps onto a store table."""

    def __init__(
        self,
        filename: str,
        required: list[str],
        optional: list[str] | None = None,
        defaults: dict[str, Any] | None = None,
        integers: frozenset[str] = frozenset(),
    ):
        self.filename = filename
        self.required = required
        self.optional = optional or []
        self.defaults = defaults or {}
        self.integers = integers

    @property
    def columns(self) -> list[str]:
        return self.required + self.optional


# Table definitions: table_name -> definition. Defaults fill optional columns
# that are absent or empty in the source file.
TABLE_DEFINITIONS: dict[str, TableDefinition] = {
    "agency": TableDefinition(
        "agency.txt",
        ["agency_name"],
        ["agency_id", "agency_url", "agency_timezone", "agency_lang"],
        {"agency_id": "", "agency_lang": ""},
    ),
    "routes": TableDefinition(
        "routes.txt",
        ["route_id", "route_type"],
        [
            "agency_id",
            "route_short_name",
            "route_long_name",
            "route_url",
            "route_color",
            "route_text_color",
        ],
        {"agency_id": ""},
        frozenset({"route_type"}),
    ),
    "stops": TableDefinition(
        "stops.txt",
        ["stop_id"],
        [
            "stop_code",
            "stop_name",
            "stop_lat",
            "stop_lon",
            "location_type",
            "parent_station",
            "wheelchair_boarding",
            "platform_code",
        ],
        {"location_type": 0, "parent_station": "", "wheelchair_boarding": 0, "platform_code": ""},
        frozenset({"location_type", "wheelchair_boarding"}),
    ),
    "trips": TableDefinition(
        "trips.txt",
        ["route_id", "service_id", "trip_id"],
        ["trip_headsign", "direction_id", "shape_id", "wheelchair_accessible", "bikes_allowed"],
        {"direction_id": 0, "wheelchair_accessible": 0, "bikes_allowed": 0},
        frozenset({"direction_id", "wheelchair_accessible", "bikes_allowed"}),
    ),
    "stop_times": TableDefinition(
        "stop_times.txt",
        ["trip_id", "stop_id", "stop_sequence"],
        ["arrival_time", "departure_time", "stop_headsign", "pickup_type", "drop_off_type"],
        {"pickup_type": 0, "drop_off_type": 0},
        frozenset({"stop_sequence", "pickup_type", "drop_off_type"}),
    ),
    "shapes": TableDefinition(
        "shapes.txt",
        ["shape_id", "shape_pt_lat", "shape_pt_lon", "shape_pt_sequence"],
        integers=frozenset({"shape_pt_sequence"}),
    ),
}

CALENDAR_FILE = "calendar.txt"
CALENDAR_DATES_FILE = "calendar_dates.txt"
FEED_INFO_FILE = "feed_info.txt"

CALENDAR_COLUMNS = [
    "service_id",
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
    "start_date",
    "end_date",
]
CALENDAR_DATES_COLUMNS = ["service_id", "date", "exception_type"]
FEED_INFO_COLUMNS = [
    "feed_publisher_name",
    "feed_publisher_url",
    "feed_lang",
    "feed_start_date",
    "feed_end_date",
    "feed_valid_from",
    "feed_valid_to",
    "feed_version",
]

REQUIRED_FILES = [
    "agency.txt",
    "routes.txt",
    "trips.txt",
    "stops.txt",
    "stop_times.txt",
]

# Load order; calendar_dates and feed_info are handled separately.
LOAD_ORDER = ["agency", "routes", "trips", "stops", "stop_times", "shapes"]

# Columns whose presence is recorded per feed. Only optional columns vary.
CAPABILITY_TABLES = ("agency", "routes", "stops", "trips", "stop_times")

# Chunk size for bulk inserts
CHUNK_SIZE = 10000


class GTFSSource:
    """Read access to GTFS files in a directory or ZIP archive."""

    def __init__(self, path: Path, zf: zipfile.ZipFile | None = None):
        self.path = path
        self._zf = zf
        if zf is not None:
            # some archives nest the files one directory down
            self._names = {
                Path(name).name: name for name in zf.namelist() if not name.endswith("/")
            }
        else:
            self._names = {p.name: p.name for p in path.iterdir() if p.is_file()}

    def has(self, filename: str) -> bool:
        return filename in self._names

    @contextmanager
    def open(self, filename: str) -> Iterator[IO[str]]:
        if self._zf is not None:
            with self._zf.open(self._names[filename]) as f:
                yield io.TextIOWrapper(f, encoding="utf-8-sig", newline="")
        else:
            with open(self.path / filename, encoding="utf-8-sig", newline="") as f:
                yield f


@contextmanager
def open_gtfs_source(gtfs_path: Path) -> Iterator[GTFSSource]:
    """Open a GTFS directory or ZIP file.

    Raises:
        FileNotFoundError: If the path doesn't exist.
        FeedError: If the path is neither a directory nor a ZIP archive.
    """
    gtfs_path = Path(gtfs_path)
    if not gtfs_path.exists():
        raise FileNotFoundError(f"GTFS path not found: {gtfs_path}")

    if gtfs_path.is_dir():
        yield GTFSSource(gtfs_path)
    elif zipfile.is_zipfile(gtfs_path):
        with zipfile.ZipFile(gtfs_path, "r") as zf:
            yield GTFSSource(gtfs_path, zf)
    else:
        raise FeedError(f"Not a GTFS directory or ZIP archive: {gtfs_path}")


def check_required_files(source: GTFSSource) -> None:
    """Fail before any mutation if base tables are missing.

    Raises:
        FeedError: If a required file is missing, or neither calendar file exists.
    """
    missing = [name for name in REQUIRED_FILES if not source.has(name)]
    if not (source.has(CALENDAR_FILE) or source.has(CALENDAR_DATES_FILE)):
        missing.append(f"{CALENDAR_FILE} or {CALENDAR_DATES_FILE}")
    if missing:
        raise FeedError(f"Bad or incomplete GTFS data set, missing: {', '.join(missing)}")


class GTFSLoader:
    """Loads one feed's GTFS tables into the store, tagged with the feed id.

    The loader runs inside the caller's transaction: it replaces every row of
    the feed, so a reimport never leaves rows of the previous snapshot behind.
    """

    def __init__(self, db: aiosqlite.Connection, chunk_size: int = CHUNK_SIZE):
        """Initialize the loader.

        Args:
            db: Open store connection (inside a transaction).
            chunk_size: Rows per executemany batch.
        """
        self.db = db
        self.chunk_size = chunk_size

    async def load(
        self, feed_id: str, source: GTFSSource, today: date | None = None
    ) -> tuple[dict[str, int], FeedCapabilities]:
        """Load all tables of a feed.

        The calendar is expanded before anything is written, so a malformed
        calendar row aborts the feed without touching the store.

        Args:
            feed_id: Feed namespace for every row.
            source: Opened GTFS source.
            today: Date recorded as feed_info.date_added (default: today).

        Returns:
            Tuple of (row counts per table, capability record).

        Raises:
            FeedError: If required files are missing or base tables end up empty.
            ParseError: If the calendar contains malformed rows.
        """
        check_required_files(source)

        expanded = self._expand_calendar(source)
        capabilities = FeedCapabilities()
        row_counts: dict[str, int] = {}

        await self._delete_feed_rows(feed_id)

        row_counts["calendar_dates"] = await self._insert_rows(
            "calendar_dates",
            ["feed_id", "service_id", "date", "exception_type"],
            [(feed_id, d.service_id, d.date.isoformat(), int(d.exception_type)) for d in expanded],
        )

        agency_names: list[str] = []
        for table_name in LOAD_ORDER:
            definition = TABLE_DEFINITIONS[table_name]
            if not source.has(definition.filename):
                logger.warning(f"Optional file {definition.filename} not found")
                row_counts[table_name] = 0
                continue
            count, present = await self._load_table(
                feed_id, table_name, definition, source, agency_names
            )
            row_counts[table_name] = count
            if table_name in CAPABILITY_TABLES:
                capabilities.columns[table_name] = present

        row_counts["feed_info"] = await self._load_feed_info(
            feed_id, source, agency_names, today or date.today()
        )

        await self._verify_integrity(feed_id)
        return row_counts, capabilities

    def _expand_calendar(self, source: GTFSSource) -> list[ExpandedServiceDate]:
        calendar_rows = self._read_all(source, CALENDAR_FILE, CALENDAR_COLUMNS)
        exception_rows = self._read_all(source, CALENDAR_DATES_FILE, CALENDAR_DATES_COLUMNS)
        return expand_feed_calendar(calendar_rows, exception_rows)

    def _read_all(
        self,
        source: GTFSSource,
        filename: str,
        required: list[str],
        optional: list[str] | None = None,
    ) -> list[dict[str, str]]:
        if not source.has(filename):
            return []
        with source.open(filename) as f:
            reader = csv.reader(f)
            header_index = self._build_header_index(reader, required, optional or [], filename)
            # blank lines stay in the list so parse errors report source row numbers
            return [self._row_from_index(row, header_index) for row in reader]

    async def _delete_feed_rows(self, feed_id: str) -> None:
        for table_name in FEED_TABLES:
            await self.db.execute(f"DELETE FROM {table_name} WHERE feed_id = ?", (feed_id,))

    async def _insert_rows(
        self, table_name: str, columns: list[str], rows: list[tuple[Any, ...]]
    ) -> int:
        placeholders = ",".join(["?"] * len(columns))
        insert_sql = (
            f"INSERT OR IGNORE INTO {table_name} ({','.join(columns)}) VALUES ({placeholders})"
        )
        for start in range(0, len(rows), self.chunk_size):
            await self.db.executemany(insert_sql, rows[start : start + self.chunk_size])
        return len(rows)

    async def _load_table(
        self,
        feed_id: str,
        table_name: str,
        definition: TableDefinition,
        source: GTFSSource,
        agency_names: list[str],
    ) -> tuple[int, set[str]]:
        """Load a single CSV file into a table.

        Returns:
            Tuple of (rows inserted, optional columns present in the header).
        """
        logger.info(f"Loading {table_name} from {definition.filename}...")

        columns = definition.columns
        insert_columns = ["feed_id", *columns]
        placeholders = ",".join(["?"] * len(insert_columns))
        # duplicate natural keys in a source file keep the first row
        insert_sql = (
            f"INSERT OR IGNORE INTO {table_name} ({','.join(insert_columns)}) "
            f"VALUES ({placeholders})"
        )

        total_rows = 0
        skipped_rows = 0
        chunk: list[tuple[Any, ...]] = []

        with source.open(definition.filename) as f:
            reader = csv.reader(f)
            header_index = self._build_header_index(
                reader, definition.required, definition.optional, definition.filename
            )
            present = {col for col in definition.optional if col in header_index}
            for row_number, row in enumerate(reader, start=1):
                if not row:
                    continue
                row_dict = self._row_from_index(row, header_index)
                if not self._has_required_values(row_dict, definition.required):
                    skipped_rows += 1
                    continue
                values = {
                    col: self._convert_value(row_dict.get(col), definition.defaults.get(col))
                    for col in columns
                }
                for col in definition.integers:
                    values[col] = self._convert_integer(values[col], col, row_number, table_name)
                if table_name == "routes" and values["route_short_name"] is None:
                    values["route_short_name"] = values["route_long_name"]
                if table_name == "agency":
                    agency_names.append(values["agency_name"])
                chunk.append((feed_id, *(values[col] for col in columns)))

                if len(chunk) >= self.chunk_size:
                    await self.db.executemany(insert_sql, chunk)
                    total_rows += len(chunk)
                    chunk = []

            if chunk:
                await self.db.executemany(insert_sql, chunk)
                total_rows += len(chunk)

        logger.info(
            f"  Loaded {total_rows:,} rows into {table_name}"
            + (f" (skipped {skipped_rows:,} invalid)" if skipped_rows else "")
        )
        return total_rows, present

    async def _load_feed_info(
        self,
        feed_id: str,
        source: GTFSSource,
        agency_names: list[str],
        today: date,
    ) -> int:
        """Load feed_info.txt, normalizing its validity dates.

        feed_valid_from/feed_valid_to take precedence over feed_start_date/feed_end_date.
        """
        rows = self._read_all(source, FEED_INFO_FILE, [], FEED_INFO_COLUMNS)
        if not rows:
            return 0

        row = rows[0]
        start_raw = row.get("feed_valid_from") or row.get("feed_start_date")
        end_raw = row.get("feed_valid_to") or row.get("feed_end_date")
        start = parse_gtfs_date(start_raw, "feed_start_date", 1, "feed_info") if start_raw else None
        end = parse_gtfs_date(end_raw, "feed_end_date", 1, "feed_info") if end_raw else None
        if start and end and end < start:
            raise ParseError("feed_end_date", 1, end_raw, "feed_info")

        await self.db.execute(
            """
            INSERT INTO feed_info (
                feed_id, feed_publisher_name, feed_publisher_url, feed_lang,
                feed_start_date, feed_end_date, feed_version, agencies, date_added
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                feed_id,
                self._convert_value(row.get("feed_publisher_name")),
                self._convert_value(row.get("feed_publisher_url")),
                self._convert_value(row.get("feed_lang")),
                start.isoformat() if start else None,
                end.isoformat() if end else None,
                self._convert_value(row.get("feed_version")),
                ", ".join(name for name in agency_names if name),
                today.isoformat(),
            ),
        )
        return 1

    def _convert_value(self, value: str | None, default: Any = None) -> Any:
        """Convert CSV value to appropriate Python type."""
        if value is None or value.strip() == "":
            return default
        return value.strip()

    def _convert_integer(self, value: Any, field: str, row: int, table: str) -> int | None:
        """Parse an integer column; GTFS numbers are plain decimal digits."""
        if value is None or isinstance(value, int):
            return value
        try:
            return int(value)
        except ValueError as e:
            raise ParseError(field, row, value, table) from e

    def _has_required_values(self, row: dict[str, str], required: list[str]) -> bool:
        """Return True if all required columns have non-empty values."""
        for col in required:
            value = row.get(col)
            if value is None or value.strip() == "":
                return False
        return True

    def _build_header_index(
        self,
        reader: Any,
        required: list[str],
        optional: list[str],
        filename: str,
    ) -> dict[str, int]:
        """Build header index mapping for a CSV reader."""
        header = next(reader, None)
        if header is None:
            raise FeedError(f"{filename} is empty")
        expected = set(required) | set(optional)
        header_index: dict[str, int] = {}
        for idx, name in enumerate(header):
            cleaned = name.strip()
            if cleaned in expected and cleaned not in header_index:
                header_index[cleaned] = idx
        missing = [col for col in required if col not in header_index]
        if missing:
            raise FeedError(f"{filename} missing columns: {', '.join(missing)}")
        return header_index

    def _row_from_index(self, row: list[str], header_index: dict[str, int]) -> dict[str, str]:
        """Map a CSV row list to a dict by header index."""
        row_dict: dict[str, str] = {}
        for col, idx in header_index.items():
            row_dict[col] = row[idx] if idx < len(row) else ""
        return row_dict

    async def _verify_integrity(self, feed_id: str) -> None:
        """Verify the base tables of the feed have data."""
        logger.info("Verifying feed integrity...")

        for table_name in ("routes", "stops", "trips", "stop_times"):
            async with self.db.execute(
                f"SELECT COUNT(*) FROM {table_name} WHERE feed_id = ?", (feed_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None or row[0] == 0:
                raise FeedError(f"No {table_name} loaded - check GTFS data")

        logger.info("Feed integrity verified")


async def get_table_counts(db: aiosqlite.Connection, feed_id: str) -> dict[str, int]:
    """Get row counts for all tables of one feed.

    Args:
        db: Store connection.
        feed_id: Feed namespace.

    Returns:
        Dictionary mapping table names to row counts.
    """
    counts: dict[str, int] = {}
    for table_name in FEED_TABLES:
        async with db.execute(
            f"SELECT COUNT(*) FROM {table_name} WHERE feed_id = ?", (feed_id,)
        ) as cursor:
            row = await cursor.fetchone()
            counts[table_name] = row[0] if row else 0
    return counts
