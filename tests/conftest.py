import zipfile
from datetime import datetime
from pathlib import Path

import pytest

from gtfs_graph.data.config import ImportConfig

# Import time used by pipeline tests: a Wednesday inside the sample calendar
IMPORT_NOW = datetime(2024, 1, 10, 8, 0, 0)

SAMPLE_TABLES: dict[str, str] = {
    "agency.txt": (
        "agency_id,agency_name,agency_url,agency_timezone\n"
        "RET,RET,https://www.ret.nl,Europe/Amsterdam\n"
    ),
    "routes.txt": (
        "route_id,agency_id,route_short_name,route_long_name,route_type,route_color\n"
        "R1,RET,1,Central - Harbor,3,FF0000\n"
        "R2,RET,A,Market - Depot,1,00FF00\n"
        "R3,RET,X,Depot shuttle,0,0000FF\n"
    ),
    "stops.txt": (
        "stop_id,stop_code,stop_name,stop_lat,stop_lon,location_type,wheelchair_boarding\n"
        "S1,1001,Central,52.0,4.0,0,1\n"
        "S2,1002,Market,52.01,4.01,0,1\n"
        "S3,1003,Harbor,52.02,4.02,0,0\n"
        "S4,1004,Depot,52.03,4.03,0,1\n"
    ),
    "calendar.txt": (
        "service_id,monday,tuesday,wednesday,thursday,friday,saturday,sunday,start_date,end_date\n"
        "WK,1,1,1,1,1,0,0,20240101,20240131\n"
        "SUN,0,0,0,0,0,0,1,20240101,20240131\n"
    ),
    "calendar_dates.txt": (
        "service_id,date,exception_type\n"
        "WK,20240115,2\n"
        "HOL,20240120,1\n"
    ),
    "trips.txt": (
        "route_id,service_id,trip_id,trip_headsign,direction_id,shape_id\n"
        "R1,WK,T1,Harbor,0,SH1\n"
        "R1,WK,T5,Market,0,\n"
        "R1,WK,T2,Central,1,\n"
        "R2,WK,T3,Depot,0,\n"
        "R3,SUN,T4,Depot,0,\n"
    ),
    "stop_times.txt": (
        "trip_id,arrival_time,departure_time,stop_id,stop_sequence\n"
        "T1,08:00:00,08:00:00,S1,1\n"
        "T1,08:10:00,08:10:00,S2,2\n"
        "T1,08:20:00,08:20:00,S3,3\n"
        "T5,09:00:00,09:00:00,S1,1\n"
        "T5,09:10:00,09:10:00,S2,2\n"
        "T2,08:30:00,08:30:00,S3,1\n"
        "T2,08:40:00,08:40:00,S2,2\n"
        "T2,25:50:00,25:50:00,S1,3\n"
        "T3,08:15:00,08:15:00,S2,1\n"
        "T3,08:25:00,08:25:00,S4,2\n"
        "T4,10:00:00,10:00:00,S4,1\n"
    ),
    "shapes.txt": (
        "shape_id,shape_pt_lat,shape_pt_lon,shape_pt_sequence\n"
        "SH1,52.0,4.0,1\n"
        "SH1,52.005,4.008,2\n"
        "SH1,52.01,4.01,3\n"
        "SH1,52.02,4.02,4\n"
    ),
    "feed_info.txt": (
        "feed_publisher_name,feed_publisher_url,feed_lang,feed_start_date,feed_end_date\n"
        "RET,https://www.ret.nl,nl,20240101,20240131\n"
    ),
}


def write_gtfs(target: Path, tables: dict[str, str]) -> Path:
    """Write GTFS tables (filename -> CSV text) into a directory."""
    target.mkdir(parents=True, exist_ok=True)
    for filename, content in tables.items():
        (target / filename).write_text(content, encoding="utf-8")
    return target


@pytest.fixture
def sample_tables() -> dict[str, str]:
    """A copy of the sample tables that tests may modify."""
    return dict(SAMPLE_TABLES)


@pytest.fixture
def sample_gtfs_dir(tmp_path: Path, sample_tables: dict[str, str]) -> Path:
    """Create a sample GTFS directory with minimal valid data."""
    return write_gtfs(tmp_path / "gtfs", sample_tables)


@pytest.fixture
def sample_gtfs_zip(sample_gtfs_dir: Path, tmp_path: Path) -> Path:
    """Create a sample GTFS ZIP file from the directory."""
    zip_path = tmp_path / "gtfs.zip"
    with zipfile.ZipFile(zip_path, "w") as zf:
        for file_path in sample_gtfs_dir.iterdir():
            zf.write(file_path, file_path.name)
    return zip_path


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "store" / "gtfs_graph.db"


@pytest.fixture
def config(db_path: Path) -> ImportConfig:
    """Import config pointing at a temporary store."""
    return ImportConfig(GTFS_GRAPH_DB_PATH=db_path, chunk_size=2)
