"""Departure queries over a feed's loaded tables.

All queries read the expanded calendar_dates table, where every row means
"this service runs on this date", so no weekday logic is needed here.
"""

import logging
from collections.abc import Callable
from datetime import date, datetime, time, timedelta
from pathlib import Path

import aiosqlite

from gtfs_graph.data.database import get_db
from gtfs_graph.models.graph import Modality
from gtfs_graph.models.gtfs import ExceptionType
from gtfs_graph.models.responses import (
    Departure,
    DeparturesResponse,
    LineForStop,
    LineScheduleResponse,
    LinesForStopResponse,
    ScheduledStopTime,
    StopInfo,
)

logger = logging.getLogger(__name__)

# Window of stop_now: shortly gone to the coming hour
STOP_NOW_BEFORE = timedelta(minutes=5)
STOP_NOW_AFTER = timedelta(minutes=55)


def parse_gtfs_time(time_str: str) -> tuple[int, int, int]:
    """Parse a GTFS time string into hours, minutes, seconds.

    GTFS times can exceed 24:00:00 for trips that extend past midnight.
    For example, "25:30:00" means 1:30 AM the next day.

    Args:
        time_str: Time string in HH:MM:SS format (hours can exceed 24).

    Returns:
        Tuple of (hours, minutes, seconds).

    Raises:
        ValueError: If the time string is invalid.
    """
    parts = time_str.strip().split(":")
    if len(parts) != 3:
        raise ValueError(f"Invalid GTFS time format: {time_str}")

    try:
        hours = int(parts[0])
        minutes = int(parts[1])
        seconds = int(parts[2])
    except ValueError as e:
        raise ValueError(f"Invalid GTFS time format: {time_str}") from e

    return hours, minutes, seconds


def gtfs_time_to_seconds(time_str: str) -> int:
    """Convert a GTFS time string to seconds since midnight of the service day."""
    hours, minutes, seconds = parse_gtfs_time(time_str)
    return hours * 3600 + minutes * 60 + seconds


def format_gtfs_time(time_str: str) -> str:
    """Format a GTFS time string for human display.

    Converts 24-hour format to 12-hour with AM/PM.
    Times >= 24:00 are shown with "(+1)" suffix to indicate next day.
    """
    hours, minutes, _ = parse_gtfs_time(time_str)

    next_day = ""
    if hours >= 24:
        hours -= 24
        next_day = " (+1)"

    period = "AM"
    display_hour = hours
    if hours == 0:
        display_hour = 12
    elif hours == 12:
        period = "PM"
    elif hours > 12:
        display_hour = hours - 12
        period = "PM"

    return f"{display_hour}:{minutes:02d} {period}{next_day}"


def departure_datetime(service_date: date, time_str: str) -> datetime:
    """Absolute time of a GTFS departure on a service date."""
    midnight = datetime.combine(service_date, time())
    return midnight + timedelta(seconds=gtfs_time_to_seconds(time_str))


def departs_within(departure: datetime, window: timedelta, now: datetime) -> bool:
    """Whether a departure lies strictly between now and now + window.

    A negative window looks back: (now + window, now).
    """
    if window >= timedelta(0):
        return now < departure < now + window
    return now + window < departure < now


async def _get_stop_info(db: aiosqlite.Connection, feed_id: str, stop_id: str) -> StopInfo:
    sql = "SELECT stop_id, stop_name, stop_code FROM stops WHERE feed_id = ? AND stop_id = ?"
    async with db.execute(sql, (feed_id, stop_id)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise ValueError(f"Stop not found: {stop_id} (feed {feed_id})")
    return StopInfo(stop_id=row["stop_id"], stop_name=row["stop_name"], stop_code=row["stop_code"])


async def _departure_rows(
    db: aiosqlite.Connection, feed_id: str, stop_id: str, service_date: date
) -> list[aiosqlite.Row]:
    """Departures at a stop of every trip whose service runs on service_date."""
    sql = """
        SELECT st.trip_id, st.departure_time, t.route_id, t.direction_id, t.trip_headsign,
               r.route_short_name, r.route_type, r.agency_id
        FROM stop_times st
        JOIN trips t ON t.feed_id = st.feed_id AND t.trip_id = st.trip_id
        JOIN routes r ON r.feed_id = t.feed_id AND r.route_id = t.route_id
        JOIN calendar_dates cd ON cd.feed_id = t.feed_id AND cd.service_id = t.service_id
        WHERE st.feed_id = ?
          AND st.stop_id = ?
          AND cd.date = ?
          AND cd.exception_type = ?
          AND st.departure_time IS NOT NULL
          AND st.departure_time != ''
    """
    params = (feed_id, stop_id, service_date.isoformat(), int(ExceptionType.ADDED))
    async with db.execute(sql, params) as cursor:
        rows = await cursor.fetchall()

    valid = []
    for row in rows:
        try:
            parse_gtfs_time(row["departure_time"])
        except ValueError:
            logger.warning(
                f"Skipping trip {row['trip_id']} at stop {stop_id}: "
                f"invalid departure_time {row['departure_time']!r}"
            )
            continue
        valid.append(row)
    return valid


def _to_departure(row: aiosqlite.Row, minutes_until: int | None = None) -> Departure:
    departure_time = row["departure_time"]
    route_type = int(row["route_type"])
    return Departure(
        trip_id=row["trip_id"],
        route_id=row["route_id"],
        direction_id=row["direction_id"],
        route_short_name=row["route_short_name"],
        route_type=route_type,
        modality=Modality.from_route_type(route_type).label,
        trip_headsign=row["trip_headsign"],
        agency_id=row["agency_id"],
        departure_time=departure_time,
        departure_time_formatted=format_gtfs_time(departure_time),
        minutes_until=minutes_until,
    )


async def get_departures_from_stop(
    feed_id: str,
    stop_id: str,
    days: int = 0,
    today: date | None = None,
    db_path: Path | None = None,
) -> DeparturesResponse:
    """Get all departures from a stop on the day today + days.

    Departures are ordered by route, then departure time.

    Args:
        feed_id: Feed namespace.
        stop_id: Stop ID within the feed.
        days: Day offset from today (0 = today, 1 = tomorrow).
        today: Reference date (default: today).
        db_path: Optional database path override.

    Returns:
        DeparturesResponse for the whole service day.

    Raises:
        ValueError: If stop_id is not found.
    """
    service_date = (today or date.today()) + timedelta(days=days)

    async with get_db(db_path) as db:
        stop = await _get_stop_info(db, feed_id, stop_id)
        rows = await _departure_rows(db, feed_id, stop_id, service_date)

    rows.sort(key=lambda r: (r["route_id"], gtfs_time_to_seconds(r["departure_time"])))
    departures = [_to_departure(row) for row in rows]
    return DeparturesResponse(
        feed_id=feed_id,
        stop=stop,
        departures=departures,
        service_date=service_date.isoformat(),
        count=len(departures),
    )


async def _departures_between(
    feed_id: str,
    stop_id: str,
    start: datetime,
    end: datetime,
    now: datetime,
    db_path: Path | None,
    matches: Callable[[datetime], bool],
) -> DeparturesResponse:
    service_date = now.date()

    async with get_db(db_path) as db:
        stop = await _get_stop_info(db, feed_id, stop_id)
        rows = await _departure_rows(db, feed_id, stop_id, service_date)

    matched: list[tuple[datetime, Departure]] = []
    for row in rows:
        departs = departure_datetime(service_date, row["departure_time"])
        if not matches(departs):
            continue
        minutes_until = int((departs - now).total_seconds() // 60)
        matched.append((departs, _to_departure(row, minutes_until)))

    matched.sort(key=lambda item: (item[0], item[1].trip_id))
    departures = [departure for _, departure in matched]
    return DeparturesResponse(
        feed_id=feed_id,
        stop=stop,
        departures=departures,
        service_date=service_date.isoformat(),
        window_start=start.isoformat(),
        window_end=end.isoformat(),
        count=len(departures),
    )


async def get_departures_within(
    feed_id: str,
    stop_id: str,
    window: timedelta,
    now: datetime | None = None,
    db_path: Path | None = None,
) -> DeparturesResponse:
    """Get today's departures from a stop within a window from now.

    A positive window returns departures in (now, now + window), a negative
    one departures in (now + window, now). Only trips whose service runs
    today are considered.

    Raises:
        ValueError: If stop_id is not found.
    """
    now = now or datetime.now()
    if window >= timedelta(0):
        start, end = now, now + window
    else:
        start, end = now + window, now
    return await _departures_between(
        feed_id,
        stop_id,
        start,
        end,
        now,
        db_path,
        lambda departs: departs_within(departs, window, now),
    )


async def get_stop_now(
    feed_id: str,
    stop_id: str,
    now: datetime | None = None,
    db_path: Path | None = None,
) -> DeparturesResponse:
    """Get today's departures from 5 minutes ago up to 55 minutes ahead.

    Raises:
        ValueError: If stop_id is not found.
    """
    now = now or datetime.now()
    start, end = now - STOP_NOW_BEFORE, now + STOP_NOW_AFTER
    return await _departures_between(
        feed_id,
        stop_id,
        start,
        end,
        now,
        db_path,
        lambda departs: start <= departs <= end,
    )


async def get_lines_for_stop(
    feed_id: str, stop_id: str, db_path: Path | None = None
) -> LinesForStopResponse:
    """Get all routes with at least one trip calling at a stop.

    Raises:
        ValueError: If stop_id is not found.
    """
    sql = """
        SELECT route_id, route_short_name, agency_id, route_type
        FROM routes
        WHERE feed_id = ?
          AND route_id IN (
            SELECT t.route_id
            FROM trips t
            JOIN stop_times st ON st.feed_id = t.feed_id AND st.trip_id = t.trip_id
            WHERE t.feed_id = ? AND st.stop_id = ?
          )
        ORDER BY route_id
    """
    async with get_db(db_path) as db:
        stop = await _get_stop_info(db, feed_id, stop_id)
        async with db.execute(sql, (feed_id, feed_id, stop_id)) as cursor:
            rows = await cursor.fetchall()

    lines = [
        LineForStop(
            route_id=row["route_id"],
            route_short_name=row["route_short_name"],
            agency_id=row["agency_id"],
            route_type=int(row["route_type"]),
            modality=Modality.from_route_type(row["route_type"]).label,
        )
        for row in rows
    ]
    return LinesForStopResponse(feed_id=feed_id, stop=stop, lines=lines, count=len(lines))


async def get_line_schedule(
    feed_id: str,
    route_id: str,
    direction_id: int,
    days: int = 0,
    today: date | None = None,
    db_path: Path | None = None,
) -> LineScheduleResponse:
    """Get every stop time of a route direction on the day today + days.

    Stop times are grouped by trip (ordered by the trip's first departure)
    and ordered by stop_sequence within a trip.
    """
    service_date = (today or date.today()) + timedelta(days=days)
    sql = """
        SELECT st.trip_id, st.stop_id, st.stop_sequence, st.departure_time
        FROM stop_times st
        JOIN trips t ON t.feed_id = st.feed_id AND t.trip_id = st.trip_id
        JOIN calendar_dates cd ON cd.feed_id = t.feed_id AND cd.service_id = t.service_id
        WHERE st.feed_id = ?
          AND t.route_id = ?
          AND t.direction_id = ?
          AND cd.date = ?
          AND cd.exception_type = ?
        ORDER BY st.trip_id, st.stop_sequence
    """
    params = (
        feed_id,
        route_id,
        direction_id,
        service_date.isoformat(),
        int(ExceptionType.ADDED),
    )
    async with get_db(db_path) as db:
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()

    by_trip: dict[str, list[ScheduledStopTime]] = {}
    for row in rows:
        departure_time = row["departure_time"] or None
        if departure_time is not None:
            try:
                parse_gtfs_time(departure_time)
            except ValueError:
                logger.warning(
                    f"Invalid departure_time {departure_time!r} in trip {row['trip_id']}"
                )
                departure_time = None
        by_trip.setdefault(row["trip_id"], []).append(
            ScheduledStopTime(
                trip_id=row["trip_id"],
                stop_id=row["stop_id"],
                stop_sequence=int(row["stop_sequence"]),
                departure_time=departure_time,
            )
        )

    def first_departure(trip_id: str) -> tuple[int, str]:
        times = [s.departure_time for s in by_trip[trip_id] if s.departure_time]
        return (gtfs_time_to_seconds(times[0]) if times else 0, trip_id)

    stop_times = [st for trip_id in sorted(by_trip, key=first_departure) for st in by_trip[trip_id]]
    return LineScheduleResponse(
        feed_id=feed_id,
        route_id=route_id,
        direction_id=direction_id,
        service_date=service_date.isoformat(),
        stop_times=stop_times,
        trip_count=len(by_trip),
    )
