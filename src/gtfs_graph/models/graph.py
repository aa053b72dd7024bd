"""Models for the derived geographic node graph."""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, Field


class NodeType(IntEnum):
    """Node type codes used in the nodes table."""

    STOP = 2
    LINE = 3


class Modality(IntEnum):
    """GTFS route_type codes for transport modes."""

    TRAM = 0
    SUBWAY = 1
    RAIL = 2
    BUS = 3
    FERRY = 4
    CABLE_CAR = 5
    GONDOLA = 6
    FUNICULAR = 7
    UNKNOWN = 200

    @classmethod
    def from_route_type(cls, route_type: int | str | None) -> "Modality":
        try:
            return cls(int(route_type))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return cls.UNKNOWN

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", " ")


class UpsertOutcome(str, Enum):
    """What an upsert did to the store."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class GraphNode(BaseModel):
    """A stored Stop or Line node."""

    id: int
    node_key: str
    feed_id: str
    node_type: NodeType
    name: str | None = None
    geometry: str = Field(description="WKT geometry (POINT or LINESTRING)")
    members: list[int] = Field(default_factory=list, description="Member stop node ids")


class NodeData(BaseModel):
    """Attributes attached to a node."""

    node_id: int
    attributes: dict[str, Any]
    modalities: list[int]
    validity_start: datetime | None = None
    validity_end: datetime | None = None


class ReconcileResult(BaseModel):
    """Counts produced by one reconciliation run."""

    stops_created: int = 0
    stops_updated: int = 0
    stops_unchanged: int = 0
    stops_rejected: int = 0
    lines_created: int = 0
    lines_updated: int = 0
    lines_unchanged: int = 0
    lines_rejected: int = 0
    lines_skipped: int = Field(default=0, description="Route directions without any trips")

    def record_stop(self, outcome: UpsertOutcome) -> None:
        field = f"stops_{outcome.value}"
        setattr(self, field, getattr(self, field) + 1)

    def record_line(self, outcome: UpsertOutcome) -> None:
        field = f"lines_{outcome.value}"
        setattr(self, field, getattr(self, field) + 1)


class ImportResult(BaseModel):
    """Summary of one feed import."""

    feed_id: str
    row_counts: dict[str, int]
    cleanup_counts: dict[str, int]
    reconcile: ReconcileResult
    imported_at: datetime
