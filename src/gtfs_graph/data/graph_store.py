"""Store for the derived node graph (nodes and node_data tables)."""

import json
import logging
from typing import Any

import aiosqlite
import shapely
from shapely.geometry.base import BaseGeometry

from gtfs_graph.errors import StoreError
from gtfs_graph.models.graph import GraphNode, NodeData, NodeType, UpsertOutcome
from gtfs_graph.models.gtfs import FeedValidity

logger = logging.getLogger(__name__)

# ~1 cm at the equator; keeps WKT stable across runs
WKT_PRECISION = 7


def to_wkt(geometry: BaseGeometry | str) -> str:
    """Serialize a geometry to WKT with fixed precision."""
    if isinstance(geometry, str):
        return geometry
    return shapely.to_wkt(geometry, rounding_precision=WKT_PRECISION)


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)


def _row_to_node(row: aiosqlite.Row) -> GraphNode:
    return GraphNode(
        id=row["id"],
        node_key=row["node_key"],
        feed_id=row["feed_id"],
        node_type=NodeType(row["node_type"]),
        name=row["name"],
        geometry=row["geom"],
        members=json.loads(row["members"]),
    )


class GraphStore:
    """Upsert interface over nodes and node_data.

    Nodes are addressed by their synthetic key. An upsert that would write the
    values already stored is skipped and reported as UNCHANGED.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def find_node_by_key(self, node_key: str) -> int | None:
        async with self.db.execute("SELECT id FROM nodes WHERE node_key = ?", (node_key,)) as cur:
            row = await cur.fetchone()
        return row["id"] if row else None

    async def get_node(self, node_id: int) -> GraphNode | None:
        sql = (
            "SELECT id, node_key, feed_id, node_type, name, geom, members "
            "FROM nodes WHERE id = ?"
        )
        async with self.db.execute(sql, (node_id,)) as cursor:
            row = await cursor.fetchone()
        return _row_to_node(row) if row else None

    async def get_node_by_key(self, node_key: str) -> GraphNode | None:
        sql = (
            "SELECT id, node_key, feed_id, node_type, name, geom, members "
            "FROM nodes WHERE node_key = ?"
        )
        async with self.db.execute(sql, (node_key,)) as cursor:
            row = await cursor.fetchone()
        return _row_to_node(row) if row else None

    async def list_nodes(
        self, feed_id: str, node_type: NodeType | None = None
    ) -> list[GraphNode]:
        sql = (
            "SELECT id, node_key, feed_id, node_type, name, geom, members "
            "FROM nodes WHERE feed_id = ?"
        )
        params: list[Any] = [feed_id]
        if node_type is not None:
            sql += " AND node_type = ?"
            params.append(int(node_type))
        sql += " ORDER BY node_key"
        async with self.db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_node(row) for row in rows]

    async def count_nodes(self, feed_id: str, node_type: NodeType | None = None) -> int:
        sql = "SELECT COUNT(*) FROM nodes WHERE feed_id = ?"
        params: list[Any] = [feed_id]
        if node_type is not None:
            sql += " AND node_type = ?"
            params.append(int(node_type))
        async with self.db.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def upsert_node(
        self,
        node_key: str,
        feed_id: str,
        node_type: NodeType,
        name: str | None,
        geometry: BaseGeometry | str,
        members: list[int] | None = None,
    ) -> tuple[int, UpsertOutcome]:
        """Insert a node, or update the node already stored under node_key.

        Returns:
            Tuple of (node id, outcome).
        """
        geom = to_wkt(geometry)
        members_json = _dumps(members or [])

        existing = await self.get_node_by_key(node_key)
        if existing is None:
            cursor = await self.db.execute(
                """
                INSERT INTO nodes (node_key, feed_id, node_type, name, geom, members)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (node_key, feed_id, int(node_type), name, geom, members_json),
            )
            node_id = cursor.lastrowid
            if node_id is None:
                raise StoreError(f"Insert of node {node_key} returned no row id")
            return node_id, UpsertOutcome.CREATED

        if (
            existing.name == name
            and existing.geometry == geom
            and existing.members == (members or [])
            and existing.node_type == node_type
        ):
            return existing.id, UpsertOutcome.UNCHANGED

        await self.db.execute(
            "UPDATE nodes SET node_type = ?, name = ?, geom = ?, members = ? WHERE id = ?",
            (int(node_type), name, geom, members_json, existing.id),
        )
        return existing.id, UpsertOutcome.UPDATED

    async def get_node_data(self, node_id: int) -> NodeData | None:
        sql = """
            SELECT node_id, attributes, modalities, validity_start, validity_end
            FROM node_data WHERE node_id = ?
        """
        async with self.db.execute(sql, (node_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return NodeData(
            node_id=row["node_id"],
            attributes=json.loads(row["attributes"]),
            modalities=json.loads(row["modalities"]),
            validity_start=row["validity_start"],
            validity_end=row["validity_end"],
        )

    async def upsert_node_data(
        self,
        node_id: int,
        attributes: dict[str, Any],
        modalities: list[int],
        validity: FeedValidity | None = None,
    ) -> UpsertOutcome:
        """Insert or update the data record attached to a node."""
        values = (
            _dumps(attributes),
            _dumps(sorted(set(modalities))),
            validity.start.isoformat() if validity else None,
            validity.end.isoformat() if validity else None,
        )

        sql = """
            SELECT attributes, modalities, validity_start, validity_end
            FROM node_data WHERE node_id = ?
        """
        async with self.db.execute(sql, (node_id,)) as cursor:
            row = await cursor.fetchone()

        if row is None:
            await self.db.execute(
                """
                INSERT INTO node_data
                    (node_id, attributes, modalities, validity_start, validity_end)
                VALUES (?, ?, ?, ?, ?)
                """,
                (node_id, *values),
            )
            return UpsertOutcome.CREATED

        if tuple(row) == values:
            return UpsertOutcome.UNCHANGED

        await self.db.execute(
            """
            UPDATE node_data
            SET attributes = ?, modalities = ?, validity_start = ?, validity_end = ?
            WHERE node_id = ?
            """,
            (*values, node_id),
        )
        return UpsertOutcome.UPDATED

    async def delete_feed_nodes(self, feed_id: str) -> int:
        """Delete all nodes (and, by cascade, node data) of a feed."""
        cursor = await self.db.execute("DELETE FROM nodes WHERE feed_id = ?", (feed_id,))
        logger.info(f"Deleted {cursor.rowcount} nodes of feed {feed_id}")
        return cursor.rowcount
