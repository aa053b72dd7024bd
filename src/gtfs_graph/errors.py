"""Exception hierarchy for feed import and reconciliation."""


class GTFSGraphError(Exception):
    """Base class for all importer errors."""


class FeedError(GTFSGraphError):
    """Fatal feed problem detected before any mutation (bad feed id, missing tables)."""


class ParseError(GTFSGraphError):
    """Malformed value in a source row.

    Attributes:
        field: Name of the offending column.
        row: 1-based data row number (header excluded).
        value: The raw value that failed to parse.
        table: Source table name, when known.
    """

    def __init__(self, field: str, row: int, value: object, table: str | None = None):
        self.field = field
        self.row = row
        self.value = value
        self.table = table
        where = f"{table} row {row}" if table else f"row {row}"
        super().__init__(f"Invalid {field!r} in {where}: {value!r}")


class GeometryError(GTFSGraphError):
    """Geometry for a stop or line could not be built."""


class FeedLookupError(GTFSGraphError, LookupError):
    """A natural key referenced by the feed does not exist (e.g. stop_time -> missing stop)."""


class StoreError(GTFSGraphError):
    """Transactional failure in the underlying store."""


class FeedLockedError(StoreError):
    """Another import of the same feed currently holds the import lock."""

    def __init__(self, feed_id: str):
        self.feed_id = feed_id
        super().__init__(f"Feed {feed_id!r} is locked by another import")
