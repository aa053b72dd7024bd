"""Calendar expansion for GTFS service schedules.

GTFS describes when a service runs in two ways: a weekly recurrence pattern
(calendar.txt) and a sparse list of date overrides (calendar_dates.txt). This
module folds both into one flat list of (service_id, date) pairs on which the
service actually runs. Every output row carries exception_type=1 (added), so
consumers only ever ask "is there a row for this date".
"""

import logging
import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta

from gtfs_graph.errors import ParseError
from gtfs_graph.models.gtfs import (
    CalendarException,
    ExceptionType,
    ExpandedServiceDate,
    ServiceCalendar,
)

logger = logging.getLogger(__name__)

# calendar.txt day columns in mask order (0=Sunday, 6=Saturday)
DAY_COLUMNS = (
    "sunday",
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
)

# strptime alone accepts one-digit months and days, so the shape is checked first
DATE_FORMATS = (
    (re.compile(r"[0-9]{8}"), "%Y%m%d"),
    (re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}"), "%Y-%m-%d"),
)

RawRow = Mapping[str, str | None]


def gtfs_weekday(d: date) -> int:
    """Weekday index with a fixed Sunday=0 .. Saturday=6 convention."""
    return (d.weekday() + 1) % 7


def parse_gtfs_date(value: str | None, field: str, row: int, table: str | None = None) -> date:
    """Parse a GTFS date (YYYYMMDD, or YYYY-MM-DD as some producers emit).

    Raises:
        ParseError: If the value is empty or not a valid date.
    """
    raw = (value or "").strip()
    for pattern, fmt in DATE_FORMATS:
        if not pattern.fullmatch(raw):
            continue
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    raise ParseError(field, row, value, table)


def _is_blank(row: RawRow) -> bool:
    return not any((value or "").strip() for value in row.values())


def _parse_flag(value: str | None, field: str, row: int) -> bool:
    raw = (value or "").strip()
    if raw == "1":
        return True
    if raw == "0":
        return False
    raise ParseError(field, row, value, "calendar")


def _parse_service_id(value: str | None, row: int, table: str) -> str:
    service_id = (value or "").strip()
    if not service_id:
        raise ParseError("service_id", row, value, table)
    return service_id


def parse_calendar_rows(rows: Iterable[RawRow]) -> list[ServiceCalendar]:
    """Parse raw calendar.txt rows into ServiceCalendar models.

    Args:
        rows: Dict rows keyed by column name.

    Returns:
        Parsed calendars, in input order.

    Raises:
        ParseError: On the first malformed row.
    """
    calendars: list[ServiceCalendar] = []
    for row_number, row in enumerate(rows, start=1):
        if _is_blank(row):
            continue
        service_id = _parse_service_id(row.get("service_id"), row_number, "calendar")
        mask = tuple(_parse_flag(row.get(col), col, row_number) for col in DAY_COLUMNS)
        start = parse_gtfs_date(row.get("start_date"), "start_date", row_number, "calendar")
        end = parse_gtfs_date(row.get("end_date"), "end_date", row_number, "calendar")
        if end < start:
            raise ParseError("end_date", row_number, row.get("end_date"), "calendar")
        calendars.append(
            ServiceCalendar(service_id=service_id, mask=mask, start_date=start, end_date=end)
        )
    return calendars


def parse_exception_rows(rows: Iterable[RawRow]) -> list[CalendarException]:
    """Parse raw calendar_dates.txt rows into CalendarException models.

    Raises:
        ParseError: On the first malformed row.
    """
    exceptions: list[CalendarException] = []
    for row_number, row in enumerate(rows, start=1):
        if _is_blank(row):
            continue
        service_id = _parse_service_id(row.get("service_id"), row_number, "calendar_dates")
        day = parse_gtfs_date(row.get("date"), "date", row_number, "calendar_dates")
        raw_type = (row.get("exception_type") or "").strip()
        try:
            exception_type = ExceptionType(int(raw_type))
        except ValueError as e:
            raise ParseError(
                "exception_type", row_number, row.get("exception_type"), "calendar_dates"
            ) from e
        exceptions.append(
            CalendarException(service_id=service_id, date=day, exception_type=exception_type)
        )
    return exceptions


def _index_exceptions(
    exceptions: Iterable[CalendarException],
) -> dict[tuple[str, date], ExceptionType]:
    """Key exceptions by (service_id, date). A REMOVED entry beats an ADDED one."""
    index: dict[tuple[str, date], ExceptionType] = {}
    for exc in exceptions:
        key = (exc.service_id, exc.date)
        previous = index.get(key)
        if previous is not None and previous != exc.exception_type:
            logger.warning(
                f"Conflicting exceptions for service {exc.service_id} on {exc.date}; "
                "keeping 'removed'"
            )
            index[key] = ExceptionType.REMOVED
        elif previous is None:
            index[key] = exc.exception_type
    return index


def expand_calendar(
    calendars: Iterable[ServiceCalendar],
    exceptions: Iterable[CalendarException],
) -> list[ExpandedServiceDate]:
    """Expand recurrence patterns and exceptions into running dates.

    For each calendar row every date in [start_date, end_date] (both ends
    included) is checked: a recurring date runs unless an exception removes
    it, a non-recurring date runs only if an exception adds it. Added
    exceptions for services without a calendar row, or outside every calendar
    range of their service, run as well.

    Args:
        calendars: Parsed calendar.txt rows. Several rows may share a service_id.
        exceptions: Parsed calendar_dates.txt rows.

    Returns:
        Deduplicated running dates sorted by (service_id, date), all ADDED.
    """
    exception_index = _index_exceptions(exceptions)
    running: set[tuple[str, date]] = set()

    one_day = timedelta(days=1)
    for calendar in calendars:
        day = calendar.start_date
        while day <= calendar.end_date:
            recurs = calendar.mask[gtfs_weekday(day)]
            exception = exception_index.get((calendar.service_id, day))
            if recurs:
                runs = exception != ExceptionType.REMOVED
            else:
                runs = exception == ExceptionType.ADDED
            if runs:
                running.add((calendar.service_id, day))
            day += one_day

    for (service_id, day), exception_type in exception_index.items():
        if exception_type == ExceptionType.ADDED:
            running.add((service_id, day))

    return [
        ExpandedServiceDate(service_id=service_id, date=day)
        for service_id, day in sorted(running)
    ]


def expand_feed_calendar(
    calendar_rows: Iterable[RawRow],
    exception_rows: Iterable[RawRow],
) -> list[ExpandedServiceDate]:
    """Parse and expand one feed's raw calendar tables.

    Parsing completes for both tables before any date is produced, so a
    malformed row aborts the whole expansion with no partial output.

    Raises:
        ParseError: If any row is malformed.
    """
    calendars = parse_calendar_rows(calendar_rows)
    exceptions = parse_exception_rows(exception_rows)
    expanded = expand_calendar(calendars, exceptions)
    logger.info(
        f"Expanded {len(calendars)} calendar rows and {len(exceptions)} exceptions "
        f"into {len(expanded)} service dates"
    )
    return expanded
