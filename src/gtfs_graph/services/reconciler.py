"""Feed reconciler: brings the derived node graph in sync with a loaded feed.

Stops are reconciled first, then every route is materialized as two
directional Line nodes whose members are the stop nodes of the route's
longest trip. All writes go through GraphStore upserts keyed by synthetic
keys, so running the reconciler twice on the same snapshot changes nothing.
"""

import logging
from dataclasses import dataclass
from typing import Any

import aiosqlite
from shapely.geometry import LineString, Point

from gtfs_graph.data.cache import RunCache
from gtfs_graph.data.feed_queries import FeedQueries
from gtfs_graph.data.graph_store import GraphStore
from gtfs_graph.errors import FeedLookupError, GeometryError
from gtfs_graph.models.graph import Modality, NodeType, ReconcileResult, UpsertOutcome
from gtfs_graph.models.gtfs import FeedCapabilities, FeedValidity, Route, SequenceStop, Stop
from gtfs_graph.services.keys import line_key, stop_key

logger = logging.getLogger(__name__)

DIRECTIONS = (0, 1)

# Attributes always written to node data; everything else only when the
# feed's header carried the column.
STOP_BASE_ATTRIBUTES = ("stop_id", "stop_name")
STOP_OPTIONAL_ATTRIBUTES = (
    "stop_code",
    "location_type",
    "parent_station",
    "wheelchair_boarding",
    "platform_code",
)
ROUTE_BASE_ATTRIBUTES = ("route_id", "route_type", "agency_id")
ROUTE_OPTIONAL_ATTRIBUTES = (
    "route_short_name",
    "route_long_name",
    "route_url",
    "route_color",
    "route_text_color",
)


@dataclass(frozen=True)
class StopNodeRef:
    """What the line pass needs to know about an already reconciled stop."""

    node_id: int
    point: Point
    name: str | None


def parse_coordinate(value: Any, field: str, limit: float) -> float:
    """Parse one coordinate and check it lies within [-limit, limit].

    Raises:
        GeometryError: If the value is missing, not a number or out of range.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise GeometryError(f"Missing {field}")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise GeometryError(f"Unparseable {field}: {value!r}") from e
    if not -limit <= number <= limit:
        raise GeometryError(f"{field} out of range: {number}")
    return number


def build_point(lat: Any, lon: Any) -> Point:
    """Build a WGS84 point (x=lon, y=lat) from raw feed values."""
    return Point(parse_coordinate(lon, "lon", 180.0), parse_coordinate(lat, "lat", 90.0))


def line_name(agency_name: str, route: Route) -> str:
    """Display name of a line: '<agency> <modality> <short name>'."""
    modality = Modality.from_route_type(route.route_type)
    parts = [agency_name, modality.label, route.route_short_name or route.route_id]
    return " ".join(part for part in parts if part)


class FeedReconciler:
    """Reconciles Stop and Line nodes of one feed.

    Runs inside the caller's transaction. Per-entity geometry and lookup
    failures are counted as rejections; store errors propagate.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        feed_id: str,
        capabilities: FeedCapabilities | None = None,
    ):
        self.feed_id = feed_id
        self.capabilities = capabilities or FeedCapabilities()
        self.queries = FeedQueries(db, feed_id)
        self.store = GraphStore(db)
        self._stops: RunCache[str, StopNodeRef] = RunCache()
        self._agency_names: RunCache[str, str | None] = RunCache()

    async def reconcile(self) -> ReconcileResult:
        """Reconcile all stops, then all lines.

        Returns:
            Created/updated/unchanged/rejected counts.
        """
        result = ReconcileResult()
        self._stops.clear()
        self._agency_names.clear()

        await self.reconcile_stops(result)
        await self.reconcile_lines(result)

        logger.info(
            f"Reconciled feed {self.feed_id}: "
            f"stops {result.stops_created} created, {result.stops_updated} updated, "
            f"{result.stops_unchanged} unchanged, {result.stops_rejected} rejected; "
            f"lines {result.lines_created} created, {result.lines_updated} updated, "
            f"{result.lines_unchanged} unchanged, {result.lines_rejected} rejected, "
            f"{result.lines_skipped} skipped"
        )
        return result

    async def reconcile_stops(self, result: ReconcileResult) -> None:
        for stop in await self.queries.stops():
            try:
                point = build_point(stop.stop_lat, stop.stop_lon)
            except GeometryError as e:
                logger.warning(f"Rejected stop {stop.stop_id} of feed {self.feed_id}: {e}")
                result.stops_rejected += 1
                continue

            node_id, node_outcome = await self.store.upsert_node(
                stop_key(self.feed_id, stop.stop_id),
                self.feed_id,
                NodeType.STOP,
                stop.stop_name,
                point,
            )
            route_types = await self.queries.route_types_for_stop(stop.stop_id)
            data_outcome = await self.store.upsert_node_data(
                node_id,
                self._stop_attributes(stop),
                [int(Modality.from_route_type(rt)) for rt in route_types],
            )
            result.record_stop(_combine(node_outcome, data_outcome))
            self._stops.set(stop.stop_id, StopNodeRef(node_id, point, stop.stop_name))

    async def reconcile_lines(self, result: ReconcileResult) -> None:
        validity = await self.queries.validity()
        for route in await self.queries.routes():
            for direction in DIRECTIONS:
                try:
                    await self._reconcile_line(route, direction, validity, result)
                except (GeometryError, FeedLookupError) as e:
                    logger.warning(
                        f"Rejected route {route.route_id} direction {direction} "
                        f"of feed {self.feed_id}: {e}"
                    )
                    result.lines_rejected += 1

    async def _reconcile_line(
        self,
        route: Route,
        direction: int,
        validity: FeedValidity | None,
        result: ReconcileResult,
    ) -> None:
        trip_id = await self.queries.longest_trip(route.route_id, direction)
        if trip_id is None:
            logger.debug(f"Route {route.route_id} has no trips in direction {direction}")
            result.lines_skipped += 1
            return

        sequence = await self.queries.stop_sequence(trip_id)
        members = self._resolve_members(sequence, trip_id)
        if len(members) < 2:
            logger.warning(
                f"Rejected route {route.route_id} direction {direction} of feed "
                f"{self.feed_id}: {len(members)} resolvable stop(s) on trip {trip_id}"
            )
            result.lines_rejected += 1
            return

        geometry = await self._line_geometry(trip_id, members)
        agency_name = await self._agency_name(route.agency_id)

        node_id, node_outcome = await self.store.upsert_node(
            line_key(self.feed_id, route.route_id, direction),
            self.feed_id,
            NodeType.LINE,
            line_name(agency_name, route),
            geometry,
            [member.node_id for member in members],
        )
        attributes = self._route_attributes(route)
        attributes["direction_id"] = direction
        attributes["route_from"] = members[0].name
        attributes["route_to"] = members[-1].name
        data_outcome = await self.store.upsert_node_data(
            node_id,
            attributes,
            [int(Modality.from_route_type(route.route_type))],
            validity,
        )
        result.record_line(_combine(node_outcome, data_outcome))

    def _resolve_members(self, sequence: list[SequenceStop], trip_id: str) -> list[StopNodeRef]:
        """Map a trip's stop sequence to stop nodes.

        Raises:
            FeedLookupError: If a stop_time references a stop the feed does not define.
        """
        members: list[StopNodeRef] = []
        for entry in sequence:
            if not entry.exists:
                raise FeedLookupError(
                    f"Trip {trip_id} references unknown stop {entry.stop_id} "
                    f"at sequence {entry.stop_sequence}"
                )
            ref = self._stops.get(entry.stop_id)
            if ref is None:
                # stop geometry was rejected
                continue
            members.append(ref)
        return members

    async def _line_geometry(self, trip_id: str, members: list[StopNodeRef]) -> LineString:
        shape_points = await self.queries.shape_points_for_trip(trip_id)
        if len(shape_points) >= 2:
            return LineString([build_point(lat, lon) for lat, lon in shape_points])
        if shape_points:
            logger.debug(f"Shape of trip {trip_id} has a single point, using stops")
        return LineString([member.point for member in members])

    async def _agency_name(self, agency_id: str | None) -> str:
        name = await self._agency_names.get_or_load(agency_id or "", self.queries.agency_name)
        return name or agency_id or self.feed_id

    def _stop_attributes(self, stop: Stop) -> dict[str, Any]:
        attributes: dict[str, Any] = {key: getattr(stop, key) for key in STOP_BASE_ATTRIBUTES}
        for key in STOP_OPTIONAL_ATTRIBUTES:
            if self.capabilities.has("stops", key):
                attributes[key] = getattr(stop, key)
        return attributes

    def _route_attributes(self, route: Route) -> dict[str, Any]:
        attributes: dict[str, Any] = {key: getattr(route, key) for key in ROUTE_BASE_ATTRIBUTES}
        for key in ROUTE_OPTIONAL_ATTRIBUTES:
            if self.capabilities.has("routes", key):
                attributes[key] = getattr(route, key)
        return attributes


def _combine(node_outcome: UpsertOutcome, data_outcome: UpsertOutcome) -> UpsertOutcome:
    """Fold the node and node-data outcomes into one per-entity outcome."""
    if node_outcome is UpsertOutcome.CREATED:
        return UpsertOutcome.CREATED
    if node_outcome is UpsertOutcome.UNCHANGED and data_outcome is UpsertOutcome.UNCHANGED:
        return UpsertOutcome.UNCHANGED
    return UpsertOutcome.UPDATED
