from pydantic import BaseModel, Field


class StopInfo(BaseModel):
    stop_id: str
    stop_name: str | None = None
    stop_code: str | None = None


class Departure(BaseModel):
    trip_id: str
    route_id: str
    direction_id: int | None = Field(default=None, description="0 or 1")
    route_short_name: str | None = Field(default=None, description="Line number or name")
    route_type: int = Field(description="GTFS route_type (0=tram .. 7=funicular)")
    modality: str = Field(description="Transport mode name (e.g. 'bus', 'subway')")
    trip_headsign: str | None = Field(default=None, description="Destination displayed on vehicle")
    agency_id: str | None = None
    departure_time: str = Field(description="Scheduled departure in HH:MM:SS format")
    departure_time_formatted: str = Field(description="Human-readable time (e.g., '1:30 AM (+1)')")
    minutes_until: int | None = Field(
        default=None,
        description="Minutes from the query time (negative for departures already gone)",
    )


class DeparturesResponse(BaseModel):
    feed_id: str
    stop: StopInfo
    departures: list[Departure]
    service_date: str = Field(description="Service date in YYYY-MM-DD format")
    window_start: str | None = Field(
        default=None, description="Start of the time window (ISO timestamp), if any"
    )
    window_end: str | None = Field(
        default=None, description="End of the time window (ISO timestamp), if any"
    )
    count: int = Field(description="Number of departures returned")


class LineForStop(BaseModel):
    route_id: str
    route_short_name: str | None = None
    agency_id: str | None = None
    route_type: int
    modality: str


class LinesForStopResponse(BaseModel):
    feed_id: str
    stop: StopInfo
    lines: list[LineForStop]
    count: int = Field(description="Number of lines serving the stop")


class ScheduledStopTime(BaseModel):
    trip_id: str
    stop_id: str
    stop_sequence: int
    departure_time: str | None = Field(default=None, description="HH:MM:SS, may exceed 24:00")


class LineScheduleResponse(BaseModel):
    feed_id: str
    route_id: str
    direction_id: int
    service_date: str = Field(description="Service date in YYYY-MM-DD format")
    stop_times: list[ScheduledStopTime]
    trip_count: int = Field(description="Number of distinct trips running that day")
