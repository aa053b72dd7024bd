"""Read-only lookups over one feed's loaded tables."""

from datetime import datetime, time

import aiosqlite

from gtfs_graph.models.gtfs import FeedValidity, Route, SequenceStop, Stop


class FeedQueries:
    """Query collaborator used by the reconciler.

    Every query is scoped to one feed id and parameterized.
    """

    def __init__(self, db: aiosqlite.Connection, feed_id: str):
        self.db = db
        self.feed_id = feed_id

    async def stops(self) -> list[Stop]:
        """All stops of the feed, ordered by name then id."""
        sql = """
            SELECT stop_id, stop_code, stop_name, stop_lat, stop_lon, location_type,
                   parent_station, wheelchair_boarding, platform_code
            FROM stops
            WHERE feed_id = ?
            ORDER BY stop_name, stop_id
        """
        async with self.db.execute(sql, (self.feed_id,)) as cursor:
            rows = await cursor.fetchall()
        return [Stop.model_validate(dict(row)) for row in rows]

    async def routes(self) -> list[Route]:
        """All routes of the feed, ordered by id."""
        sql = """
            SELECT route_id, agency_id, route_short_name, route_long_name, route_type,
                   route_url, route_color, route_text_color
            FROM routes
            WHERE feed_id = ?
            ORDER BY route_id
        """
        async with self.db.execute(sql, (self.feed_id,)) as cursor:
            rows = await cursor.fetchall()
        return [Route.model_validate(dict(row)) for row in rows]

    async def route_types_for_stop(self, stop_id: str) -> list[int]:
        """Distinct route types of routes serving a stop (trips -> stop_times)."""
        sql = """
            SELECT DISTINCT r.route_type
            FROM routes r
            WHERE r.feed_id = ?
              AND r.route_id IN (
                SELECT t.route_id
                FROM trips t
                JOIN stop_times st ON st.feed_id = t.feed_id AND st.trip_id = t.trip_id
                WHERE t.feed_id = ? AND st.stop_id = ?
              )
            ORDER BY r.route_type
        """
        async with self.db.execute(sql, (self.feed_id, self.feed_id, stop_id)) as cursor:
            rows = await cursor.fetchall()
        return [int(row["route_type"]) for row in rows]

    async def longest_trip(self, route_id: str, direction_id: int) -> str | None:
        """Trip with the most stop_times rows for a route and direction.

        Ties are broken by trip_id so the choice is stable across runs.
        """
        sql = """
            SELECT st.trip_id, COUNT(*) AS stop_count
            FROM stop_times st
            JOIN trips t ON t.feed_id = st.feed_id AND t.trip_id = st.trip_id
            WHERE t.feed_id = ? AND t.route_id = ? AND t.direction_id = ?
            GROUP BY st.trip_id
            ORDER BY stop_count DESC, st.trip_id
            LIMIT 1
        """
        async with self.db.execute(sql, (self.feed_id, route_id, direction_id)) as cursor:
            row = await cursor.fetchone()
        return row["trip_id"] if row else None

    async def stop_sequence(self, trip_id: str) -> list[SequenceStop]:
        """Ordered stops of a trip. Stops missing from the stops table have exists=False."""
        sql = """
            SELECT st.stop_id, st.stop_sequence, s.stop_name, s.stop_id IS NOT NULL AS present
            FROM stop_times st
            LEFT JOIN stops s ON s.feed_id = st.feed_id AND s.stop_id = st.stop_id
            WHERE st.feed_id = ? AND st.trip_id = ?
            ORDER BY st.stop_sequence
        """
        async with self.db.execute(sql, (self.feed_id, trip_id)) as cursor:
            rows = await cursor.fetchall()
        return [
            SequenceStop(
                stop_id=row["stop_id"],
                stop_sequence=int(row["stop_sequence"]),
                stop_name=row["stop_name"],
                exists=bool(row["present"]),
            )
            for row in rows
        ]

    async def shape_points_for_trip(self, trip_id: str) -> list[tuple[str, str]]:
        """Raw (lat, lon) shape points of a trip's shape, in sequence order.

        Empty when the trip has no shape or the shape has no points.
        """
        sql = """
            SELECT sh.shape_pt_lat, sh.shape_pt_lon
            FROM trips t
            JOIN shapes sh ON sh.feed_id = t.feed_id AND sh.shape_id = t.shape_id
            WHERE t.feed_id = ? AND t.trip_id = ?
            ORDER BY sh.shape_pt_sequence
        """
        async with self.db.execute(sql, (self.feed_id, trip_id)) as cursor:
            rows = await cursor.fetchall()
        return [(row["shape_pt_lat"], row["shape_pt_lon"]) for row in rows]

    async def agency_name(self, agency_id: str | None) -> str | None:
        """Name of an agency, or None if the feed does not define it."""
        sql = "SELECT agency_name FROM agency WHERE feed_id = ? AND agency_id = ?"
        async with self.db.execute(sql, (self.feed_id, agency_id or "")) as cursor:
            row = await cursor.fetchone()
        return row["agency_name"] if row else None

    async def validity(self) -> FeedValidity | None:
        """Validity window from feed_info: start date 00:00 to end date 23:59."""
        sql = "SELECT feed_start_date, feed_end_date FROM feed_info WHERE feed_id = ?"
        async with self.db.execute(sql, (self.feed_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None or not row["feed_start_date"] or not row["feed_end_date"]:
            return None
        start = datetime.combine(datetime.fromisoformat(row["feed_start_date"]).date(), time(0, 0))
        end = datetime.combine(datetime.fromisoformat(row["feed_end_date"]).date(), time(23, 59))
        return FeedValidity(start=start, end=end)
