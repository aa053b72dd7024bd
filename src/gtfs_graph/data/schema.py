"""SQLite schema for feed tables and the derived node graph.

Every GTFS table is keyed by feed_id first: natural keys like stop_id are only
unique within one feed.
"""

SCHEMA_SQL = """
-- feed registry
CREATE TABLE IF NOT EXISTS feeds (
    feed_id TEXT PRIMARY KEY,
    uri TEXT,
    last_imported TEXT,
    capabilities TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS import_locks (
    feed_id TEXT PRIMARY KEY,
    acquired_at TEXT NOT NULL,
    owner TEXT
);

-- agency
CREATE TABLE IF NOT EXISTS agency (
    feed_id TEXT NOT NULL,
    agency_id TEXT NOT NULL,
    agency_name TEXT,
    agency_url TEXT,
    agency_timezone TEXT,
    agency_lang TEXT,
    PRIMARY KEY (feed_id, agency_id)
);

-- routes
CREATE TABLE IF NOT EXISTS routes (
    feed_id TEXT NOT NULL,
    route_id TEXT NOT NULL,
    agency_id TEXT,
    route_short_name TEXT,
    route_long_name TEXT,
    route_type INTEGER NOT NULL,
    route_url TEXT,
    route_color TEXT,
    route_text_color TEXT,
    PRIMARY KEY (feed_id, route_id)
);

-- stops (coordinates keep REAL affinity; unparseable values stay as TEXT)
CREATE TABLE IF NOT EXISTS stops (
    feed_id TEXT NOT NULL,
    stop_id TEXT NOT NULL,
    stop_code TEXT,
    stop_name TEXT,
    stop_lat REAL,
    stop_lon REAL,
    location_type INTEGER,
    parent_station TEXT,
    wheelchair_boarding INTEGER,
    platform_code TEXT,
    PRIMARY KEY (feed_id, stop_id)
);

-- calendar_dates (expanded: one exception_type=1 row per running date)
CREATE TABLE IF NOT EXISTS calendar_dates (
    feed_id TEXT NOT NULL,
    service_id TEXT NOT NULL,
    date TEXT NOT NULL,
    exception_type INTEGER NOT NULL,
    PRIMARY KEY (feed_id, service_id, date)
);

-- trips
CREATE TABLE IF NOT EXISTS trips (
    feed_id TEXT NOT NULL,
    trip_id TEXT NOT NULL,
    route_id TEXT NOT NULL,
    service_id TEXT NOT NULL,
    trip_headsign TEXT,
    direction_id INTEGER,
    shape_id TEXT,
    wheelchair_accessible INTEGER,
    bikes_allowed INTEGER,
    PRIMARY KEY (feed_id, trip_id)
);

-- stop_times
CREATE TABLE IF NOT EXISTS stop_times (
    feed_id TEXT NOT NULL,
    trip_id TEXT NOT NULL,
    arrival_time TEXT,
    departure_time TEXT,
    stop_id TEXT NOT NULL,
    stop_sequence INTEGER NOT NULL,
    stop_headsign TEXT,
    pickup_type INTEGER,
    drop_off_type INTEGER,
    PRIMARY KEY (feed_id, trip_id, stop_sequence)
);

-- shapes (coordinates kept as text, parsed when line geometry is built)
CREATE TABLE IF NOT EXISTS shapes (
    feed_id TEXT NOT NULL,
    shape_id TEXT NOT NULL,
    shape_pt_lat TEXT,
    shape_pt_lon TEXT,
    shape_pt_sequence INTEGER NOT NULL,
    PRIMARY KEY (feed_id, shape_id, shape_pt_sequence)
);

-- feed_info (dates normalized to YYYY-MM-DD)
CREATE TABLE IF NOT EXISTS feed_info (
    feed_id TEXT PRIMARY KEY,
    feed_publisher_name TEXT,
    feed_publisher_url TEXT,
    feed_lang TEXT,
    feed_start_date TEXT,
    feed_end_date TEXT,
    feed_version TEXT,
    agencies TEXT,
    date_added TEXT
);

-- derived graph
CREATE TABLE IF NOT EXISTS nodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    node_key TEXT NOT NULL UNIQUE,
    feed_id TEXT NOT NULL,
    node_type INTEGER NOT NULL,
    name TEXT,
    geom TEXT NOT NULL,
    members TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS node_data (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    node_id INTEGER NOT NULL UNIQUE REFERENCES nodes(id) ON DELETE CASCADE,
    attributes TEXT NOT NULL,
    modalities TEXT NOT NULL,
    validity_start TEXT,
    validity_end TEXT
);
"""

INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_calendar_dates_date ON calendar_dates(feed_id, date);
CREATE INDEX IF NOT EXISTS idx_trips_route ON trips(feed_id, route_id, direction_id);
CREATE INDEX IF NOT EXISTS idx_trips_service ON trips(feed_id, service_id);
CREATE INDEX IF NOT EXISTS idx_stop_times_stop ON stop_times(feed_id, stop_id);
CREATE INDEX IF NOT EXISTS idx_stop_times_departure ON stop_times(feed_id, departure_time);
CREATE INDEX IF NOT EXISTS idx_nodes_feed ON nodes(feed_id, node_type);
"""

# Tables holding per-feed GTFS rows, in dependency-free deletion order.
FEED_TABLES = (
    "stop_times",
    "trips",
    "calendar_dates",
    "shapes",
    "stops",
    "routes",
    "agency",
    "feed_info",
)
