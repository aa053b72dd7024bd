"""Tests for the node graph store."""

from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import aiosqlite
import pytest
from shapely.geometry import LineString, Point

from gtfs_graph.data.database import open_store
from gtfs_graph.data.graph_store import GraphStore, to_wkt
from gtfs_graph.errors import StoreError
from gtfs_graph.models.graph import NodeType, UpsertOutcome
from gtfs_graph.models.gtfs import FeedValidity


@pytest.fixture
async def db(db_path: Path) -> AsyncIterator[aiosqlite.Connection]:
    async with open_store(db_path) as connection:
        yield connection


class TestToWkt:
    def test_point_precision(self):
        assert to_wkt(Point(4.123456789, 52.1)) == "POINT (4.1234568 52.1)"

    def test_wkt_passthrough(self):
        assert to_wkt("POINT (1 2)") == "POINT (1 2)"


class TestGraphStore:
    """Tests for GraphStore upserts."""

    async def test_create_then_unchanged(self, db: aiosqlite.Connection) -> None:
        store = GraphStore(db)

        node_id, outcome = await store.upsert_node(
            "gtfs.stop.ret.s1.x", "ret", NodeType.STOP, "Central", Point(4.0, 52.0)
        )
        assert outcome == UpsertOutcome.CREATED

        same_id, outcome = await store.upsert_node(
            "gtfs.stop.ret.s1.x", "ret", NodeType.STOP, "Central", Point(4.0, 52.0)
        )
        assert same_id == node_id
        assert outcome == UpsertOutcome.UNCHANGED

    async def test_update_in_place(self, db: aiosqlite.Connection) -> None:
        store = GraphStore(db)
        node_id, _ = await store.upsert_node(
            "k", "ret", NodeType.STOP, "Central", Point(4.0, 52.0)
        )

        same_id, outcome = await store.upsert_node(
            "k", "ret", NodeType.STOP, "Central Station", Point(4.0, 52.0)
        )

        assert same_id == node_id
        assert outcome == UpsertOutcome.UPDATED
        node = await store.get_node(node_id)
        assert node is not None
        assert node.name == "Central Station"
        assert await store.count_nodes("ret") == 1

    async def test_find_node_by_key(self, db: aiosqlite.Connection) -> None:
        store = GraphStore(db)
        node_id, _ = await store.upsert_node("k", "ret", NodeType.STOP, "A", Point(0, 0))

        assert await store.find_node_by_key("k") == node_id
        assert await store.find_node_by_key("missing") is None

    async def test_line_members_round_trip(self, db: aiosqlite.Connection) -> None:
        store = GraphStore(db)
        a, _ = await store.upsert_node("a", "ret", NodeType.STOP, "A", Point(0, 0))
        b, _ = await store.upsert_node("b", "ret", NodeType.STOP, "B", Point(1, 1))

        line_id, _ = await store.upsert_node(
            "line", "ret", NodeType.LINE, "RET bus 1", LineString([(0, 0), (1, 1)]), [a, b]
        )

        line = await store.get_node_by_key("line")
        assert line is not None
        assert line.id == line_id
        assert line.members == [a, b]
        assert line.geometry == "LINESTRING (0 0, 1 1)"
        assert [n.node_key for n in await store.list_nodes("ret", NodeType.STOP)] == ["a", "b"]

    async def test_node_data_upsert(self, db: aiosqlite.Connection) -> None:
        store = GraphStore(db)
        node_id, _ = await store.upsert_node("k", "ret", NodeType.STOP, "A", Point(0, 0))
        validity = FeedValidity(start=datetime(2024, 1, 1), end=datetime(2024, 1, 31, 23, 59))

        first = await store.upsert_node_data(node_id, {"stop_id": "S1"}, [3, 1, 3], validity)
        second = await store.upsert_node_data(node_id, {"stop_id": "S1"}, [1, 3], validity)
        third = await store.upsert_node_data(node_id, {"stop_id": "S1"}, [1], validity)

        assert first == UpsertOutcome.CREATED
        assert second == UpsertOutcome.UNCHANGED
        assert third == UpsertOutcome.UPDATED

        data = await store.get_node_data(node_id)
        assert data is not None
        assert data.modalities == [1]
        assert data.validity_end == datetime(2024, 1, 31, 23, 59)

    async def test_delete_feed_nodes_cascades(self, db: aiosqlite.Connection) -> None:
        store = GraphStore(db)
        node_id, _ = await store.upsert_node("k", "ret", NodeType.STOP, "A", Point(0, 0))
        await store.upsert_node_data(node_id, {}, [])
        await store.upsert_node("other", "htm", NodeType.STOP, "B", Point(0, 0))

        deleted = await store.delete_feed_nodes("ret")

        assert deleted == 1
        assert await store.get_node_data(node_id) is None
        assert await store.count_nodes("htm") == 1

    async def test_insert_without_row_id_raises(self) -> None:
        db = MagicMock()
        db.execute = AsyncMock(return_value=MagicMock(lastrowid=None))
        store = GraphStore(db)

        with patch.object(store, "get_node_by_key", new=AsyncMock(return_value=None)):
            with pytest.raises(StoreError, match="no row id"):
                await store.upsert_node("k", "ret", NodeType.STOP, "A", Point(0, 0))
