"""Pydantic models for GTFS entities."""

from datetime import date, datetime
from enum import IntEnum

from pydantic import BaseModel, ConfigDict, Field


class ExceptionType(IntEnum):
    """calendar_dates exception_type values."""

    ADDED = 1
    REMOVED = 2


class ServiceCalendar(BaseModel):
    """Weekly recurrence pattern for one service (one calendar.txt row)."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    mask: tuple[bool, bool, bool, bool, bool, bool, bool] = Field(
        description="Day-of-week flags, Sunday first"
    )
    start_date: date
    end_date: date  # inclusive


class CalendarException(BaseModel):
    """Date-specific override of a service (one calendar_dates.txt row)."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    date: date
    exception_type: ExceptionType


class ExpandedServiceDate(BaseModel):
    """A date on which a service actually runs."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    date: date
    exception_type: ExceptionType = ExceptionType.ADDED


class Route(BaseModel):
    """GTFS route entity."""

    route_id: str
    agency_id: str | None = None
    route_short_name: str | None = None
    route_long_name: str | None = None
    route_type: int  # 0=tram .. 7=funicular
    route_url: str | None = None
    route_color: str | None = None
    route_text_color: str | None = None


class Stop(BaseModel):
    """GTFS stop entity."""

    stop_id: str
    stop_code: str | None = None
    stop_name: str | None = None
    stop_lat: float | str | None = None  # kept raw until geometry is built
    stop_lon: float | str | None = None
    location_type: int | None = None  # 0=stop, 1=station, 2=entrance
    parent_station: str | None = None
    wheelchair_boarding: int | None = None
    platform_code: str | None = None


class SequenceStop(BaseModel):
    """One stop of a trip's ordered stop sequence."""

    stop_id: str
    stop_sequence: int
    stop_name: str | None = None
    exists: bool = True


class FeedValidity(BaseModel):
    """Validity window of a feed taken from feed_info.txt."""

    start: datetime
    end: datetime


class FeedCapabilities(BaseModel):
    """Optional columns present per table, computed once when a feed is loaded."""

    columns: dict[str, set[str]] = Field(default_factory=dict)

    def has(self, table: str, column: str) -> bool:
        return column in self.columns.get(table, set())


class Feed(BaseModel):
    """A feed namespace in the store."""

    feed_id: str
    uri: str | None = None
    last_imported: datetime | None = None
    capabilities: FeedCapabilities = Field(default_factory=FeedCapabilities)
