"""Tests for the feed reconciler."""

from collections.abc import AsyncIterator
from datetime import date, datetime
from pathlib import Path

import aiosqlite
import pytest

from conftest import write_gtfs
from gtfs_graph.data.database import open_store, transaction
from gtfs_graph.data.graph_store import GraphStore
from gtfs_graph.data.gtfs_loader import GTFSLoader, open_gtfs_source
from gtfs_graph.errors import GeometryError
from gtfs_graph.models.graph import Modality, NodeType
from gtfs_graph.models.gtfs import Route
from gtfs_graph.services.keys import line_key, stop_key
from gtfs_graph.services.reconciler import FeedReconciler, build_point, line_name


async def load_feed(db: aiosqlite.Connection, feed_id: str, gtfs_dir: Path):
    with open_gtfs_source(gtfs_dir) as source:
        async with transaction(db):
            _, capabilities = await GTFSLoader(db).load(feed_id, source, today=date(2024, 1, 10))
    return capabilities


async def reconcile(db: aiosqlite.Connection, feed_id: str, capabilities):
    async with transaction(db):
        return await FeedReconciler(db, feed_id, capabilities).reconcile()


@pytest.fixture
async def db(db_path: Path) -> AsyncIterator[aiosqlite.Connection]:
    async with open_store(db_path) as connection:
        yield connection


class TestHelpers:
    def test_build_point_is_lon_lat(self):
        point = build_point("52.0", "4.5")
        assert (point.x, point.y) == (4.5, 52.0)

    @pytest.mark.parametrize(
        "lat,lon",
        [("abc", "4.0"), ("52.0", ""), (None, "4.0"), ("91", "4.0"), ("52.0", "-181")],
    )
    def test_build_point_rejects_bad_coordinates(self, lat, lon):
        with pytest.raises(GeometryError):
            build_point(lat, lon)

    def test_line_name(self):
        route = Route(route_id="R1", route_short_name="1", route_type=3)
        assert line_name("RET", route) == "RET bus 1"

    def test_line_name_unknown_modality(self):
        route = Route(route_id="R9", route_short_name="9", route_type=715)
        assert line_name("RET", route) == "RET unknown 9"


class TestFeedReconciler:
    """Tests for FeedReconciler on the sample feed."""

    async def test_first_run_counts(self, db: aiosqlite.Connection, sample_gtfs_dir: Path):
        capabilities = await load_feed(db, "ret", sample_gtfs_dir)
        result = await reconcile(db, "ret", capabilities)

        assert result.stops_created == 4
        assert result.stops_rejected == 0
        # R1 both directions, R2 direction 0
        assert result.lines_created == 3
        # R3 has a single-stop trip
        assert result.lines_rejected == 1
        # R2 and R3 have no trips in direction 1
        assert result.lines_skipped == 2

    async def test_second_run_converges(self, db: aiosqlite.Connection, sample_gtfs_dir: Path):
        """Reconciling the same snapshot twice creates and updates nothing."""
        capabilities = await load_feed(db, "ret", sample_gtfs_dir)
        await reconcile(db, "ret", capabilities)
        store = GraphStore(db)
        keys_before = [n.node_key for n in await store.list_nodes("ret")]

        result = await reconcile(db, "ret", capabilities)

        assert result.stops_created == 0
        assert result.stops_updated == 0
        assert result.stops_unchanged == 4
        assert result.lines_created == 0
        assert result.lines_updated == 0
        assert result.lines_unchanged == 3
        assert [n.node_key for n in await store.list_nodes("ret")] == keys_before

    async def test_update_converges_to_new_snapshot(
        self,
        db: aiosqlite.Connection,
        sample_gtfs_dir: Path,
        sample_tables: dict[str, str],
        tmp_path: Path,
    ):
        capabilities = await load_feed(db, "ret", sample_gtfs_dir)
        await reconcile(db, "ret", capabilities)

        sample_tables["stops.txt"] = sample_tables["stops.txt"].replace(
            "S1,1001,Central,", "S1,1001,Central Station,"
        )
        updated = write_gtfs(tmp_path / "gtfs2", sample_tables)
        capabilities = await load_feed(db, "ret", updated)
        result = await reconcile(db, "ret", capabilities)

        assert result.stops_created == 0
        assert result.stops_updated == 1
        # R1 lines start or end at S1, so route_from/route_to changed
        assert result.lines_updated == 2
        store = GraphStore(db)
        assert await store.count_nodes("ret", NodeType.STOP) == 4
        node = await store.get_node_by_key(stop_key("ret", "S1"))
        assert node is not None
        assert node.name == "Central Station"

    async def test_two_directional_lines(self, db: aiosqlite.Connection, sample_gtfs_dir: Path):
        capabilities = await load_feed(db, "ret", sample_gtfs_dir)
        await reconcile(db, "ret", capabilities)
        store = GraphStore(db)

        outbound = await store.get_node_by_key(line_key("ret", "R1", 0))
        inbound = await store.get_node_by_key(line_key("ret", "R1", 1))

        assert outbound is not None and inbound is not None
        assert outbound.id != inbound.id
        assert outbound.node_type == NodeType.LINE
        assert outbound.name == "RET bus 1"
        assert list(reversed(outbound.members)) == inbound.members

    async def test_longest_trip_is_representative(
        self, db: aiosqlite.Connection, sample_gtfs_dir: Path
    ):
        capabilities = await load_feed(db, "ret", sample_gtfs_dir)
        await reconcile(db, "ret", capabilities)
        store = GraphStore(db)

        line = await store.get_node_by_key(line_key("ret", "R1", 0))
        stops = [await store.get_node_by_key(stop_key("ret", s)) for s in ("S1", "S2", "S3")]

        assert line is not None
        assert line.members == [s.id for s in stops if s is not None]

    async def test_shape_geometry_preferred(self, db: aiosqlite.Connection, sample_gtfs_dir: Path):
        capabilities = await load_feed(db, "ret", sample_gtfs_dir)
        await reconcile(db, "ret", capabilities)
        store = GraphStore(db)

        with_shape = await store.get_node_by_key(line_key("ret", "R1", 0))
        without_shape = await store.get_node_by_key(line_key("ret", "R1", 1))

        assert with_shape is not None and without_shape is not None
        # four shape points vs three stops
        assert with_shape.geometry == (
            "LINESTRING (4 52, 4.008 52.005, 4.01 52.01, 4.02 52.02)"
        )
        assert without_shape.geometry == "LINESTRING (4.02 52.02, 4.01 52.01, 4 52)"

    async def test_stop_node_data(self, db: aiosqlite.Connection, sample_gtfs_dir: Path):
        capabilities = await load_feed(db, "ret", sample_gtfs_dir)
        await reconcile(db, "ret", capabilities)
        store = GraphStore(db)

        market = await store.get_node_by_key(stop_key("ret", "S2"))
        depot = await store.get_node_by_key(stop_key("ret", "S4"))
        assert market is not None and depot is not None
        market_data = await store.get_node_data(market.id)
        depot_data = await store.get_node_data(depot.id)

        assert market_data is not None and depot_data is not None
        assert market_data.modalities == [Modality.SUBWAY, Modality.BUS]
        assert depot_data.modalities == [Modality.TRAM, Modality.SUBWAY]
        assert market_data.attributes["stop_code"] == "1002"
        assert market_data.attributes["wheelchair_boarding"] == 1
        # not in the source header
        assert "platform_code" not in market_data.attributes
        assert market.geometry == "POINT (4.01 52.01)"

    async def test_line_node_data(self, db: aiosqlite.Connection, sample_gtfs_dir: Path):
        capabilities = await load_feed(db, "ret", sample_gtfs_dir)
        await reconcile(db, "ret", capabilities)
        store = GraphStore(db)

        line = await store.get_node_by_key(line_key("ret", "R1", 1))
        assert line is not None
        data = await store.get_node_data(line.id)

        assert data is not None
        assert data.modalities == [Modality.BUS]
        assert data.attributes["route_from"] == "Harbor"
        assert data.attributes["route_to"] == "Central"
        assert data.attributes["route_color"] == "FF0000"
        assert data.attributes["direction_id"] == 1
        assert data.validity_start == datetime(2024, 1, 1, 0, 0)
        assert data.validity_end == datetime(2024, 1, 31, 23, 59)


class TestRejections:
    """Per-entity failures are counted, not fatal."""

    async def test_bad_stop_coordinates(
        self, db: aiosqlite.Connection, sample_tables: dict[str, str], tmp_path: Path
    ):
        sample_tables["stops.txt"] = sample_tables["stops.txt"].replace(
            "S4,1004,Depot,52.03,4.03", "S4,1004,Depot,north,4.03"
        )
        gtfs_dir = write_gtfs(tmp_path / "gtfs", sample_tables)
        capabilities = await load_feed(db, "ret", gtfs_dir)

        result = await reconcile(db, "ret", capabilities)

        assert result.stops_created == 3
        assert result.stops_rejected == 1
        # R2 loses Depot and keeps a single stop
        assert result.lines_created == 2
        assert result.lines_rejected == 2

    async def test_single_stop_route_only_rejects_that_route(
        self, db: aiosqlite.Connection, sample_gtfs_dir: Path
    ):
        capabilities = await load_feed(db, "ret", sample_gtfs_dir)
        result = await reconcile(db, "ret", capabilities)
        store = GraphStore(db)

        assert result.lines_rejected == 1
        assert await store.find_node_by_key(line_key("ret", "R3", 0)) is None
        assert await store.find_node_by_key(line_key("ret", "R2", 0)) is not None

    async def test_missing_stop_rejects_route(
        self, db: aiosqlite.Connection, sample_tables: dict[str, str], tmp_path: Path
    ):
        sample_tables["stop_times.txt"] = sample_tables["stop_times.txt"].replace(
            "T3,08:25:00,08:25:00,S4,2", "T3,08:25:00,08:25:00,GHOST,2"
        )
        gtfs_dir = write_gtfs(tmp_path / "gtfs", sample_tables)
        capabilities = await load_feed(db, "ret", gtfs_dir)

        result = await reconcile(db, "ret", capabilities)

        assert result.lines_rejected == 2
        assert result.lines_created == 2
        assert await GraphStore(db).find_node_by_key(line_key("ret", "R2", 0)) is None

    async def test_bad_shape_point_rejects_route(
        self, db: aiosqlite.Connection, sample_tables: dict[str, str], tmp_path: Path
    ):
        sample_tables["shapes.txt"] = sample_tables["shapes.txt"].replace(
            "SH1,52.005,4.008,2", "SH1,52.005,east,2"
        )
        gtfs_dir = write_gtfs(tmp_path / "gtfs", sample_tables)
        capabilities = await load_feed(db, "ret", gtfs_dir)

        result = await reconcile(db, "ret", capabilities)
        store = GraphStore(db)

        assert result.lines_rejected == 2
        assert await store.find_node_by_key(line_key("ret", "R1", 0)) is None
        assert await store.find_node_by_key(line_key("ret", "R1", 1)) is not None

    async def test_unknown_agency_falls_back_to_id(
        self, db: aiosqlite.Connection, sample_tables: dict[str, str], tmp_path: Path
    ):
        sample_tables["routes.txt"] = sample_tables["routes.txt"].replace(
            "R2,RET,A,", "R2,GVB,A,"
        )
        gtfs_dir = write_gtfs(tmp_path / "gtfs", sample_tables)
        capabilities = await load_feed(db, "ret", gtfs_dir)
        await reconcile(db, "ret", capabilities)

        line = await GraphStore(db).get_node_by_key(line_key("ret", "R2", 0))
        assert line is not None
        assert line.name == "GVB subway A"
