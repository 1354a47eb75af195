"""
Guide Downloader Service

Downloads one XMLTV candidate and parses it into per-channel guides.

Fallback chain:
    1. stream the body through gzip detection and the escape sanitizer into
       the pull parser;
    2. on a parse failure, re-download to a temporary file and pull-parse it
       as-is;
    3. if that fails too, SAX-parse the same file through the sanitizer.
Temporary files are removed whatever the outcome.
"""
import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

import httpx

from iptv_service.errors import GuideParseError, TransportError
from iptv_service.services.iptv_types import Channel, ChannelGuide
from iptv_service.services.provider_client import BROWSER_USER_AGENT, PLAYER_USER_AGENT
from iptv_service.services.xmltv_parser_service import (
    EscapeSanitizer,
    PullGuideParser,
    SaxGuideParser,
    XmlGuideParser,
)
from iptv_service.utils.file_operations import (
    GzipStreamDecoder,
    cleanup_stale_temp_files,
    cleanup_temp_file,
    download_to_temp_file,
)
from iptv_service.utils.logging_helpers import sanitize_url_for_logging
from iptv_service.utils.timezone import utc_now


logger = logging.getLogger(__name__)

XMLTV_SNIFF_BYTES = 2048
AUTH_RETRY_STATUSES = frozenset({401, 403, 511})
TEMP_PREFIX = "epg_"
STALE_TEMP_AGE_SEC = 60.0
_FEED_BATCH_BYTES = 256 * 1024


def looks_like_xmltv(head: bytes) -> bool:
    sample = head[:XMLTV_SNIFF_BYTES].lower()
    return b"<?xml" in sample or b"<tv" in sample


class GuideDownloader:
    """Fetches and parses XMLTV documents for a channel list."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        temp_dir: Path | str | None = None,
        primary_parser: PullGuideParser | None = None,
        fallback_parser: XmlGuideParser | None = None,
        parse_timeout_seconds: int | None = None,
    ):
        self._http = http_client
        self._temp_dir = Path(temp_dir) if temp_dir else None
        self._primary = primary_parser or PullGuideParser()
        self._fallback = fallback_parser or SaxGuideParser()
        self._parse_timeout = parse_timeout_seconds if parse_timeout_seconds and parse_timeout_seconds > 0 else None

    @property
    def temp_dir(self) -> Path | None:
        return self._temp_dir

    async def fetch_guide(
        self,
        url: str,
        channels: Sequence[Channel],
        now: datetime | None = None,
    ) -> dict[str, ChannelGuide]:
        """
        Download and parse a guide URL.

        Args:
            url: XMLTV (optionally gzip) URL
            channels: Playlist channels to match programmes against
            now: Reference time for now/next selection

        Returns:
            Guides keyed by channel id; empty when nothing matched

        Raises:
            TransportError: If the guide could not be downloaded
            GuideParseError: If every parser failed
        """
        now = now or utc_now()
        safe_url = sanitize_url_for_logging(url)
        try:
            guides = await self._stream_parse(url, channels, now)
            logger.info("Streamed guide from %s: %s channels with data", safe_url, len(guides))
            return guides
        except GuideParseError as exc:
            logger.warning("Streaming parse failed for %s (%s); retrying from a spooled copy", safe_url, exc)

        return await self._parse_spooled(url, channels, now)

    async def _stream_parse(self, url: str, channels: Sequence[Channel], now: datetime) -> dict[str, ChannelGuide]:
        user_agents = (PLAYER_USER_AGENT, BROWSER_USER_AGENT)
        for index, user_agent in enumerate(user_agents):
            try:
                async with self._http.stream("GET", url, headers={"User-Agent": user_agent}) as response:
                    if response.status_code in AUTH_RETRY_STATUSES and index < len(user_agents) - 1:
                        logger.info(
                            "Guide server answered HTTP %s, retrying with a browser user agent",
                            response.status_code,
                        )
                        continue
                    return await self._consume(response, url, channels, now)
            except httpx.HTTPError as exc:
                raise TransportError(f"{type(exc).__name__} downloading guide") from exc
        raise TransportError("Guide request rejected")

    async def _consume(
        self,
        response: httpx.Response,
        url: str,
        channels: Sequence[Channel],
        now: datetime,
    ) -> dict[str, ChannelGuide]:
        loop = asyncio.get_running_loop()
        session = self._primary.open_session(channels, now)
        decoder = GzipStreamDecoder(url)
        sanitizer = EscapeSanitizer()
        head = b""
        verified = response.is_success
        pending: list[bytes] = []
        pending_size = 0

        async def flush_pending() -> None:
            nonlocal pending, pending_size
            if not pending:
                return
            data = b"".join(pending)
            pending, pending_size = [], 0
            await loop.run_in_executor(None, lambda: session.feed(sanitizer.feed(data)))

        try:
            async for chunk in response.aiter_bytes():
                data = decoder.feed(chunk)
                if not data:
                    continue
                if not verified:
                    head += data
                    if len(head) < XMLTV_SNIFF_BYTES:
                        continue
                    self._ensure_guide_body(response.status_code, head)
                    verified = True
                    data, head = head, b""
                pending.append(data)
                pending_size += len(data)
                if pending_size >= _FEED_BATCH_BYTES:
                    await flush_pending()

            tail = decoder.flush()
            if not verified:
                head += tail
                self._ensure_guide_body(response.status_code, head)
                tail = head
            if tail:
                pending.append(tail)
            await flush_pending()
        except ValueError as exc:
            raise GuideParseError(str(exc)) from exc

        await loop.run_in_executor(None, session.feed, sanitizer.flush())
        return await loop.run_in_executor(None, session.close)

    @staticmethod
    def _ensure_guide_body(status_code: int, head: bytes) -> None:
        if looks_like_xmltv(head):
            return
        preview = head[:160].decode("utf-8", errors="replace").strip()
        raise TransportError(f"EPG request failed (HTTP {status_code}). {preview}", status_code)

    async def _parse_spooled(self, url: str, channels: Sequence[Channel], now: datetime) -> dict[str, ChannelGuide]:
        safe_url = sanitize_url_for_logging(url)
        temp_file: Path | None = None
        try:
            temp_file = await self._spool(url)
            try:
                return await self._parse_file(self._primary, temp_file, channels, now, sanitize=False)
            except GuideParseError as exc:
                logger.warning(
                    "Primary parser failed on spooled copy of %s (%s); using %s parser",
                    safe_url,
                    exc,
                    self._fallback.name,
                )
            return await self._parse_file(self._fallback, temp_file, channels, now, sanitize=True)
        finally:
            if temp_file:
                cleanup_temp_file(temp_file)
            cleanup_stale_temp_files(self._temp_dir, TEMP_PREFIX, STALE_TEMP_AGE_SEC)

    async def _spool(self, url: str) -> Path:
        user_agents = (PLAYER_USER_AGENT, BROWSER_USER_AGENT)
        for index, user_agent in enumerate(user_agents):
            try:
                return await download_to_temp_file(
                    self._http,
                    url,
                    headers={"User-Agent": user_agent},
                    temp_dir=self._temp_dir,
                    prefix=TEMP_PREFIX,
                    suffix=".xml",
                )
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status in AUTH_RETRY_STATUSES and index < len(user_agents) - 1:
                    continue
                raise TransportError(f"EPG request failed (HTTP {status})", status) from exc
            except httpx.HTTPError as exc:
                raise TransportError(f"{type(exc).__name__} downloading guide") from exc
            except ValueError as exc:
                raise GuideParseError(str(exc)) from exc
        raise TransportError("Guide request rejected")

    async def _parse_file(
        self,
        parser: XmlGuideParser,
        file_path: Path,
        channels: Sequence[Channel],
        now: datetime,
        *,
        sanitize: bool,
    ) -> dict[str, ChannelGuide]:
        """
        Parse a spooled file in the thread pool with timeout protection.

        Raises:
            GuideParseError: If parsing fails or times out
        """
        loop = asyncio.get_running_loop()
        logger.debug("Offloading %s parse of %s to thread pool executor", parser.name, file_path)
        parse_task = loop.run_in_executor(
            None,
            lambda: parser.parse_file(file_path, channels, now, sanitize=sanitize),
        )
        try:
            if self._parse_timeout:
                return await asyncio.wait_for(parse_task, timeout=self._parse_timeout)
            return await parse_task
        except asyncio.TimeoutError as exc:
            logger.error("%s parse timed out after %ss for %s", parser.name, self._parse_timeout, file_path)
            raise GuideParseError("XML parsing timed out - file may be too large or malformed") from exc
