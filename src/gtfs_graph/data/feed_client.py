import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from pathlib import Path

import httpx

from gtfs_graph.data.config import ImportConfig

logger = logging.getLogger(__name__)


class FeedClient:
    """Async HTTP client for checking and downloading GTFS archives.

    Usage:
        async with FeedClient(config) as client:
            modified = await client.get_last_modified(uri)
            await client.download(uri, dest)
    """

    def __init__(self, config: ImportConfig):
        """Initialize the client.

        Args:
            config: Import configuration with HTTP timeout and user agent.
        """
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "FeedClient":
        """Enter async context - create HTTP client."""
        headers = {"User-Agent": self._config.user_agent}
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=self._config.http_timeout_seconds,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context - close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Client not initialized - use 'async with'")
        return self._client

    async def get_last_modified(self, uri: str) -> datetime | None:
        """Get the Last-Modified time of a remote feed.

        Args:
            uri: Feed URL.

        Returns:
            Timezone-aware modification time, or None if the server does not
            send a usable Last-Modified header.

        Raises:
            RuntimeError: If client not initialized.
            httpx.HTTPError: If the HTTP request fails.
        """
        client = self._require_client()
        response = await client.head(uri)
        response.raise_for_status()

        header = response.headers.get("last-modified")
        if not header:
            return None
        try:
            modified = parsedate_to_datetime(header)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unparseable Last-Modified {header!r} from {uri}")
            return None
        if modified.tzinfo is None:
            modified = modified.replace(tzinfo=UTC)
        return modified

    async def download(self, uri: str, dest: Path) -> int:
        """Stream a remote feed to a local file.

        Args:
            uri: Feed URL.
            dest: Destination file, overwritten if present.

        Returns:
            Number of bytes written.

        Raises:
            RuntimeError: If client not initialized.
            httpx.HTTPError: If the HTTP request fails.
        """
        client = self._require_client()
        dest.parent.mkdir(parents=True, exist_ok=True)

        written = 0
        async with client.stream("GET", uri) as response:
            response.raise_for_status()
            with open(dest, "wb") as f:
                async for chunk in response.aiter_bytes():
                    f.write(chunk)
                    written += len(chunk)

        logger.info(f"Downloaded {uri} ({written} bytes) to {dest}")
        return written


def is_newer(remote: datetime | None, last_imported: datetime | None) -> bool:
    """Whether a remote feed should be downloaded.

    A feed never imported, or one whose server sends no Last-Modified, is
    always considered newer. Naive last_imported values are local time.
    """
    if last_imported is None or remote is None:
        return True
    if last_imported.tzinfo is None:
        last_imported = last_imported.astimezone()
    return remote > last_imported
