"""
File operation utilities

This module handles spooling downloads to temporary files, transparent gzip
decoding and cleanup of temporary files.
"""
import asyncio
import logging
import os
import tempfile
import time
import zlib
from pathlib import Path

import aiofiles
import httpx

from iptv_service.utils.logging_helpers import sanitize_url_for_logging


logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


class GzipStreamDecoder:
    """
    Decompresses a byte stream when it is gzip.

    Detection uses the magic bytes, or a .gz URL suffix when the body does not
    already look like markup. Plain streams pass through untouched.
    """

    def __init__(self, url: str = ""):
        self._gz_suffix = url.split("?", 1)[0].lower().endswith(".gz")
        self._head = b""
        self._decided = False
        self._inflater = None

    @property
    def is_gzip(self) -> bool:
        return self._inflater is not None

    def feed(self, chunk: bytes) -> bytes:
        if self._decided:
            return self._inflate(chunk)
        self._head += chunk
        if len(self._head) < 2:
            return b""
        self._decide()
        data, self._head = self._head, b""
        return self._inflate(data)

    def flush(self) -> bytes:
        if not self._decided:
            self._decide()
            data, self._head = self._head, b""
            out = self._inflate(data)
        else:
            out = b""
        if self._inflater is not None:
            out += self._inflater.flush()
        return out

    def _decide(self) -> None:
        self._decided = True
        looks_gzip = self._head[:2] == GZIP_MAGIC
        if not looks_gzip and self._gz_suffix:
            looks_gzip = not self._head.lstrip()[:1] == b"<"
        if looks_gzip:
            self._inflater = zlib.decompressobj(16 + zlib.MAX_WBITS)

    def _inflate(self, data: bytes) -> bytes:
        if not data:
            return b""
        if self._inflater is None:
            return data
        try:
            return self._inflater.decompress(data)
        except zlib.error as exc:
            raise ValueError(f"Corrupt gzip stream: {exc}") from exc


def create_temp_path(temp_dir: Path | str | None, prefix: str, suffix: str) -> Path:
    directory = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())
    directory.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=directory)
    os.close(fd)
    return Path(name)


async def download_to_temp_file(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    temp_dir: Path | str | None = None,
    prefix: str = "epg_",
    suffix: str = ".xml",
    timeout: float | None = None,
    max_retries: int = 2,
    backoff_factor: float = 2.0,
    decode_gzip: bool = True,
) -> Path:
    """
    Stream a URL to a temporary file with exponential backoff retry logic

    Retries on transient network errors (timeouts, connection errors) and 5xx.
    Does NOT retry on 4xx HTTP errors (client errors).

    Args:
        client: Shared HTTP client
        url: URL to download from
        headers: Extra request headers
        temp_dir: Directory for the temporary file (system temp when None)
        prefix: Temporary file name prefix
        suffix: Temporary file name suffix
        timeout: HTTP timeout in seconds (client default when None)
        max_retries: Maximum number of attempts
        backoff_factor: Exponential backoff multiplier (wait = backoff_factor ^ attempt)
        decode_gzip: Write decompressed content when the body is gzip

    Returns:
        Path to downloaded temporary file

    Raises:
        httpx.HTTPError: If download fails after all retries
    """
    safe_url = sanitize_url_for_logging(url)
    logger.info(f"Spooling {safe_url} to disk...")

    last_error: Exception | None = None

    for attempt in range(max_retries):
        temp_file = create_temp_path(temp_dir, prefix, suffix)
        try:
            written = 0
            decoder = GzipStreamDecoder(url) if decode_gzip else None
            async with client.stream(
                "GET",
                url,
                headers=headers,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            ) as response:
                response.raise_for_status()
                async with aiofiles.open(temp_file, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        data = decoder.feed(chunk) if decoder else chunk
                        if data:
                            await f.write(data)
                            written += len(data)
                    if decoder:
                        tail = decoder.flush()
                        if tail:
                            await f.write(tail)
                            written += len(tail)

            logger.info(f"Spooled {written / (1024 * 1024):.2f} MB to {temp_file}")
            return temp_file

        except (httpx.TimeoutException, httpx.ConnectError) as e:
            cleanup_temp_file(temp_file)
            last_error = e
            if attempt < max_retries - 1:
                wait_time = backoff_factor ** attempt
                logger.warning(
                    f"Download attempt {attempt + 1}/{max_retries} failed (transient error): {type(e).__name__}. "
                    f"Retrying in {wait_time:.1f}s..."
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Download failed after {max_retries} attempts (transient error)")

        except httpx.HTTPStatusError as e:
            cleanup_temp_file(temp_file)
            if 400 <= e.response.status_code < 500:
                logger.error(f"HTTP {e.response.status_code} (client error) for {safe_url}")
                raise

            last_error = e
            if attempt < max_retries - 1:
                wait_time = backoff_factor ** attempt
                logger.warning(
                    f"Download attempt {attempt + 1}/{max_retries} failed "
                    f"(HTTP {e.response.status_code} server error). "
                    f"Retrying in {wait_time:.1f}s..."
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Download failed after {max_retries} attempts (HTTP {e.response.status_code})")

        except BaseException:
            cleanup_temp_file(temp_file)
            raise

    if last_error:
        raise last_error

    raise RuntimeError(f"Failed to download {safe_url} after {max_retries} attempts")


def cleanup_temp_file(file_path: Path | None) -> bool:
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


def cleanup_stale_temp_files(
    temp_dir: Path | str | None,
    prefix: str = "epg_",
    max_age_seconds: float = 60.0,
) -> int:
    """
    Remove leftover temporary files from interrupted downloads.

    Returns:
        Number of files deleted
    """
    directory = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())
    if not directory.is_dir():
        return 0

    cutoff = time.time() - max_age_seconds
    removed = 0
    for path in directory.glob(f"{prefix}*"):
        try:
            if path.is_file() and path.stat().st_mtime < cutoff and cleanup_temp_file(path):
                removed += 1
        except OSError:
            continue
    if removed:
        logger.info("Removed %s stale temporary file(s) from %s", removed, directory)
    return removed
