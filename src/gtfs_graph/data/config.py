from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ImportConfig(BaseSettings):
    """Configuration for feed import, cleanup and download.

    Automatically loads from environment variables and .env file.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    db_path: Path = Field(default=Path("data/gtfs_graph.db"), alias="GTFS_GRAPH_DB_PATH")
    cleanup_retention_days: int = Field(default=2, alias="GTFS_GRAPH_RETENTION_DAYS")
    lock_stale_after_seconds: int = Field(default=6 * 3600, alias="GTFS_GRAPH_LOCK_TIMEOUT")

    # bulk loading
    chunk_size: int = 10000

    # feed downloads
    http_timeout_seconds: float = Field(default=60.0, alias="GTFS_GRAPH_HTTP_TIMEOUT")
    user_agent: str = "gtfs-graph"


@lru_cache
def get_import_config() -> ImportConfig:
    """Get import configuration (cached singleton).

    Returns:
        ImportConfig with values from .env file or environment variables.
    """
    return ImportConfig()
