from datetime import timedelta

from gtfs_graph.app import mcp
from gtfs_graph.models.responses import (
    DeparturesResponse,
    LineScheduleResponse,
    LinesForStopResponse,
)
from gtfs_graph.services.departure_service import (
    get_departures_from_stop as _get_departures_from_stop,
)
from gtfs_graph.services.departure_service import (
    get_departures_within as _get_departures_within,
)
from gtfs_graph.services.departure_service import (
    get_line_schedule as _get_line_schedule,
)
from gtfs_graph.services.departure_service import (
    get_lines_for_stop as _get_lines_for_stop,
)
from gtfs_graph.services.departure_service import (
    get_stop_now as _get_stop_now,
)

# Keep window queries within one service day either way
MAX_WINDOW_MINUTES = 24 * 60


@mcp.tool()
async def get_departures_from_stop(
    feed_id: str,
    stop_id: str,
    days: int = 0,
) -> DeparturesResponse:
    """Get all scheduled departures from a stop for a whole service day.

    Examples:
        get_departures_from_stop(feed_id="ovapi", stop_id="3010")  # today
        get_departures_from_stop(feed_id="ovapi", stop_id="3010", days=1)  # tomorrow

    Args:
        feed_id: Identifier the feed was imported under.
        stop_id: Stop ID within the feed.
        days: Day offset from today (0 = today, 1 = tomorrow, ...).

    Returns:
        DeparturesResponse ordered by route, then departure time.
    """
    return await _get_departures_from_stop(feed_id=feed_id, stop_id=stop_id, days=days)


@mcp.tool()
async def get_departures_within(
    feed_id: str,
    stop_id: str,
    minutes: int = 60,
) -> DeparturesResponse:
    """Get today's departures from a stop within a number of minutes from now.

    A negative value looks back, e.g. minutes=-10 returns departures of the
    last ten minutes.

    Args:
        feed_id: Identifier the feed was imported under.
        stop_id: Stop ID within the feed.
        minutes: Window size in minutes (default 60, clamped to one day).

    Returns:
        DeparturesResponse ordered by departure time, with minutes_until set.
    """
    minutes = max(-MAX_WINDOW_MINUTES, min(MAX_WINDOW_MINUTES, minutes))
    return await _get_departures_within(
        feed_id=feed_id, stop_id=stop_id, window=timedelta(minutes=minutes)
    )


@mcp.tool()
async def get_stop_now(feed_id: str, stop_id: str) -> DeparturesResponse:
    """Get departures around now: from 5 minutes ago to 55 minutes ahead.

    Args:
        feed_id: Identifier the feed was imported under.
        stop_id: Stop ID within the feed.
    """
    return await _get_stop_now(feed_id=feed_id, stop_id=stop_id)


@mcp.tool()
async def get_lines_for_stop(feed_id: str, stop_id: str) -> LinesForStopResponse:
    """Get the lines (routes) that call at a stop.

    Args:
        feed_id: Identifier the feed was imported under.
        stop_id: Stop ID within the feed.
    """
    return await _get_lines_for_stop(feed_id=feed_id, stop_id=stop_id)


@mcp.tool()
async def get_line_schedule(
    feed_id: str,
    route_id: str,
    direction_id: int = 0,
    days: int = 0,
) -> LineScheduleResponse:
    """Get the full timetable of one direction of a line for a day.

    Args:
        feed_id: Identifier the feed was imported under.
        route_id: Route ID within the feed.
        direction_id: 0 or 1.
        days: Day offset from today (0 = today).

    Returns:
        LineScheduleResponse with stop times grouped by trip.
    """
    if direction_id not in (0, 1):
        raise ValueError(f"direction_id must be 0 or 1, got {direction_id}")
    return await _get_line_schedule(
        feed_id=feed_id, route_id=route_id, direction_id=direction_id, days=days
    )
