"""Tests for the GTFS feed HTTP client."""

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from gtfs_graph.data.config import ImportConfig
from gtfs_graph.data.feed_client import FeedClient, is_newer


@pytest.fixture
def config(tmp_path: Path) -> ImportConfig:
    """Create a test config."""
    return ImportConfig(GTFS_GRAPH_DB_PATH=tmp_path / "gtfs_graph.db", http_timeout_seconds=5)


def head_response(headers: dict[str, str]) -> MagicMock:
    response = MagicMock()
    response.headers = headers
    return response


@pytest.mark.asyncio
async def test_get_last_modified_parses_header(config: ImportConfig):
    """Last-Modified is parsed into an aware datetime."""
    response = head_response({"last-modified": "Wed, 10 Jan 2024 08:00:00 GMT"})

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.head = AsyncMock(return_value=response)
        mock_client_class.return_value = mock_client

        async with FeedClient(config) as client:
            modified = await client.get_last_modified("https://example.com/ret.zip")

    assert modified == datetime(2024, 1, 10, 8, 0, tzinfo=UTC)
    mock_client.head.assert_called_once_with("https://example.com/ret.zip")
    response.raise_for_status.assert_called_once()


@pytest.mark.asyncio
async def test_get_last_modified_missing_header(config: ImportConfig):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.head = AsyncMock(return_value=head_response({}))
        mock_client_class.return_value = mock_client

        async with FeedClient(config) as client:
            assert await client.get_last_modified("https://example.com/ret.zip") is None


@pytest.mark.asyncio
async def test_get_last_modified_unparseable_header(config: ImportConfig):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.head = AsyncMock(return_value=head_response({"last-modified": "yesterday"}))
        mock_client_class.return_value = mock_client

        async with FeedClient(config) as client:
            assert await client.get_last_modified("https://example.com/ret.zip") is None


@pytest.mark.asyncio
async def test_download_streams_to_file(config: ImportConfig, tmp_path: Path):
    """Download writes every chunk and reports the byte count."""

    async def chunks():
        yield b"PK\x03\x04"
        yield b"rest-of-archive"

    response = MagicMock()
    response.aiter_bytes = lambda: chunks()
    stream = MagicMock()
    stream.__aenter__ = AsyncMock(return_value=response)
    stream.__aexit__ = AsyncMock(return_value=None)

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.stream = MagicMock(return_value=stream)
        mock_client_class.return_value = mock_client

        dest = tmp_path / "downloads" / "ret.zip"
        async with FeedClient(config) as client:
            written = await client.download("https://example.com/ret.zip", dest)

    assert written == 19
    assert dest.read_bytes() == b"PK\x03\x04rest-of-archive"
    mock_client.stream.assert_called_once_with("GET", "https://example.com/ret.zip")


@pytest.mark.asyncio
async def test_client_closed_on_exit(config: ImportConfig):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client_class.return_value = mock_client

        async with FeedClient(config):
            pass

    mock_client.aclose.assert_awaited_once()
    _, kwargs = mock_client_class.call_args
    assert kwargs["timeout"] == 5
    assert kwargs["follow_redirects"] is True
    assert "User-Agent" in kwargs["headers"]


@pytest.mark.asyncio
async def test_client_requires_context(config: ImportConfig):
    """Using the client outside 'async with' should raise."""
    client = FeedClient(config)

    with pytest.raises(RuntimeError, match="not initialized"):
        await client.get_last_modified("https://example.com/ret.zip")


class TestIsNewer:
    imported = datetime(2024, 1, 10, 8, 0, tzinfo=UTC)

    def test_never_imported(self):
        assert is_newer(self.imported, None)

    def test_no_last_modified(self):
        assert is_newer(None, self.imported)

    def test_newer_and_older(self):
        assert is_newer(self.imported + timedelta(minutes=1), self.imported)
        assert not is_newer(self.imported - timedelta(days=1), self.imported)
        assert not is_newer(self.imported, self.imported)

    def test_compares_across_timezones(self):
        cet = timezone(timedelta(hours=1))
        # 08:30 CET is 07:30 UTC
        assert not is_newer(datetime(2024, 1, 10, 8, 30, tzinfo=cet), self.imported)

    def test_naive_last_imported_is_local_time(self):
        naive = datetime(2024, 1, 10, 8, 0)
        assert is_newer(naive.astimezone() + timedelta(seconds=1), naive)
        assert not is_newer(naive.astimezone() - timedelta(seconds=1), naive)
