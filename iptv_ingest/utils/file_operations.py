"""
File operation utilities

Reading local playlists and downloading remote playlists and guides.
"""
import logging
import tempfile
import uuid
from pathlib import Path

import aiofiles
import httpx

from iptv_ingest.config import settings
from iptv_ingest.utils.http_retry import RetryPolicy, request_with_retry
from iptv_ingest.utils.logging_helpers import sanitize_url


logger = logging.getLogger(__name__)


def build_http_client(user_agent: str | None = None, timeout: float | None = None) -> httpx.AsyncClient:
    """Create an async client with the configured timeout and user agent"""
    return httpx.AsyncClient(
        timeout=timeout or settings.http_timeout_sec,
        headers={"User-Agent": user_agent or settings.user_agent},
        follow_redirects=True,
    )


async def read_local_file(path: str | Path) -> bytes:
    """
    Read a local playlist or guide file

    Raises:
        FileNotFoundError: If the file does not exist
        OSError: If the file can't be read
    """
    async with aiofiles.open(path, 'rb') as f:
        data = await f.read()
    logger.info(f"Read {len(data) / 1024:.1f} KB from {path}")
    return data


async def download_bytes(
    url: str,
    client: httpx.AsyncClient | None = None,
    policy: RetryPolicy | None = None,
) -> bytes:
    """
    Download a small document (a playlist) into memory with retry logic

    Raises:
        TransientNetworkError: If download fails after all retries
        httpx.HTTPStatusError: On a 4xx answer
    """
    owns_client = client is None
    client = client or build_http_client()
    try:
        logger.info(f"Downloading {sanitize_url(url)}...")
        response = await request_with_retry(client, "GET", url, policy=policy)
        response.raise_for_status()
        logger.info(f"Downloaded {len(response.content) / 1024:.1f} KB from {sanitize_url(url)}")
        return response.content
    finally:
        if owns_client:
            await client.aclose()


async def download_file(
    url: str,
    client: httpx.AsyncClient | None = None,
    policy: RetryPolicy | None = None,
    params: dict | None = None,
) -> Path:
    """
    Stream a large document (an XMLTV guide) to a temporary file with retry logic

    Retries on transient network errors and 5xx answers.
    Does NOT retry on 4xx HTTP errors (client errors).

    Returns:
        Path to downloaded temporary file

    Raises:
        TransientNetworkError: If download fails after all retries
        httpx.HTTPStatusError: On a 4xx answer
    """
    owns_client = client is None
    client = client or build_http_client()
    temp_file = Path(tempfile.gettempdir()) / f"iptv_guide_{uuid.uuid4().hex}.xml"
    try:
        logger.info(f"Downloading file from {sanitize_url(url)}...")
        response = await request_with_retry(client, "GET", url, params=params, policy=policy, stream=True)
        try:
            response.raise_for_status()
            size = 0
            async with aiofiles.open(temp_file, 'wb') as f:
                async for chunk in response.aiter_bytes():
                    size += len(chunk)
                    await f.write(chunk)
        finally:
            await response.aclose()
        logger.info(f"Downloaded {size / (1024 * 1024):.2f} MB to {temp_file}")
        return temp_file
    except BaseException:
        cleanup_temp_file(temp_file)
        raise
    finally:
        if owns_client:
            await client.aclose()


def cleanup_temp_file(file_path: Path) -> bool:
    """
    Safely delete a temporary file

    Args:
        file_path: Path to file to delete

    Returns:
        True if deleted successfully, False otherwise
    """
    if not file_path or not file_path.exists():
        return False

    try:
        file_path.unlink()
        logger.debug(f"Cleaned up temporary file: {file_path}")
        return True
    except (OSError, PermissionError) as e:
        logger.warning(f"Failed to delete temporary file {file_path}: {e}")
        return False
