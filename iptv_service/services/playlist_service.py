"""
Playlist Acquisition Service

Downloads and parses a provider's channel list. Xtream accounts are read from
the structured live-stream API first; everything else (and Xtream accounts
whose API returns nothing) goes through the extended M3U parser.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

import httpx

from iptv_service.errors import PlaylistError, TransportError
from iptv_service.services.credentials import resolve_provider_credentials
from iptv_service.services.iptv_types import (
    UNCATEGORIZED,
    Channel,
    LoadProgress,
    ProgressCallback,
    ProviderCredentials,
)
from iptv_service.services.provider_client import PLAYER_USER_AGENT, XtreamClient
from iptv_service.utils.logging_helpers import sanitize_url_for_logging


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
PROGRESS_EVERY_CHANNELS = 10_000
_M3U_SNIFF_BYTES = 1024


@dataclass(slots=True)
class PlaylistResult:
    channels: list[Channel]
    guide_url: str | None = None


def looks_like_m3u(head: bytes) -> bool:
    return b"#EXTM3U" in head[:_M3U_SNIFF_BYTES].upper()


def extract_attr(metadata: str, attr: str) -> str | None:
    """
    Read a key=value attribute from an #EXTINF or #EXTM3U line.

    Matching is case-insensitive. Values may be double-quoted, single-quoted
    or bare (ending at whitespace or a comma). Stray backslash-escaped quotes
    around the value are stripped.

    Returns:
        The attribute value, or None when missing or blank
    """
    key = f"{attr.lower()}="
    lowered = metadata.lower()
    start = lowered.find(key)
    if start < 0:
        return None

    idx = start + len(key)
    length = len(metadata)
    while idx < length and metadata[idx].isspace():
        idx += 1
    if idx >= length:
        return None

    quote = metadata[idx]
    if quote in ('"', "'"):
        idx += 1
        value_start = idx
        while idx < length:
            if metadata[idx] == quote and metadata[idx - 1] != "\\":
                break
            idx += 1
        raw = metadata[value_start:idx]
    else:
        value_start = idx
        while idx < length and not metadata[idx].isspace() and metadata[idx] != ",":
            idx += 1
        raw = metadata[value_start:idx]

    cleaned = raw.strip()
    for junk in ('\\"', "\\'", '"', "'"):
        while cleaned.startswith(junk):
            cleaned = cleaned[len(junk):]
        while cleaned.endswith(junk):
            cleaned = cleaned[: -len(junk)]
    cleaned = cleaned.strip()
    return cleaned or None


def extract_channel_name(metadata: str) -> str:
    """Display name: text after the first comma that is not inside quotes."""
    quote: str | None = None
    split_at = -1
    for idx, char in enumerate(metadata):
        if quote:
            if char == quote and metadata[idx - 1] != "\\":
                quote = None
        elif char in ('"', "'") and idx > 0 and metadata[idx - 1] == "=":
            quote = char
        elif char == ",":
            split_at = idx
            break
    if split_at < 0:
        split_at = metadata.rfind(",")
    if split_at < 0:
        return "Unknown Channel"
    name = metadata[split_at + 1:].strip()
    return name or "Unknown Channel"


def build_channel_id(stream_url: str, epg_id: str | None) -> str:
    normalized_epg = (epg_id or "").strip().lower()
    if normalized_epg:
        return f"epg:{normalized_epg}"
    return f"url:{stream_url.strip()}"


def parse_m3u_lines(
    lines: Iterable[str],
    on_progress: ProgressCallback | None = None,
) -> PlaylistResult:
    """
    Parse extended M3U text into de-duplicated channels.

    Args:
        lines: Playlist lines (any line endings already stripped or not)
        on_progress: Optional progress callback

    Returns:
        PlaylistResult with channels in document order and the header guide URL
    """
    channels: dict[str, Channel] = {}
    pending_metadata: str | None = None
    guide_url: str | None = None
    parsed = 0

    for raw_line in lines:
        line = raw_line.strip()
        if not line:
            continue

        upper = line[:8].upper()
        if upper.startswith("#EXTM3U"):
            header_url = extract_attr(line, "url-tvg") or extract_attr(line, "x-tvg-url")
            if header_url and guide_url is None:
                # Some headers list several comma separated guides; the first is used
                first = header_url.split(",")[0].strip()
                if first.lower().startswith(("http://", "https://")):
                    guide_url = first
            continue
        if upper.startswith("#EXTINF"):
            pending_metadata = line
            continue
        if line.startswith("#"):
            continue

        metadata = pending_metadata or ""
        pending_metadata = None
        epg_id = extract_attr(metadata, "tvg-id")
        channel = Channel(
            id=build_channel_id(line, epg_id),
            name=extract_channel_name(metadata) if metadata else "Unknown Channel",
            stream_url=line,
            group=extract_attr(metadata, "group-title") or UNCATEGORIZED,
            logo_url=extract_attr(metadata, "tvg-logo"),
            epg_id=epg_id,
            raw_title=metadata,
        )
        channels.setdefault(channel.id, channel)
        parsed += 1
        if on_progress and parsed % PROGRESS_EVERY_CHANNELS == 0:
            on_progress(LoadProgress(f"Parsed {parsed} channels", 85))

    return PlaylistResult(channels=list(channels.values()), guide_url=guide_url)


def build_provider_channels(
    credentials: ProviderCredentials,
    categories: dict[str, str],
    streams: Iterable,
) -> list[Channel]:
    """
    Turn get_live_streams items into channels, de-duplicated by stream id.

    Streams without an id or a name are skipped.
    """
    channels: dict[str, Channel] = {}
    for stream in streams:
        name = (stream.name or "").strip()
        if stream.stream_id is None or not name:
            continue
        channel = Channel(
            id=f"xtream:{stream.stream_id}",
            name=name,
            stream_url=credentials.live_stream_url(stream.stream_id),
            group=categories.get(stream.category_id or "", "") or UNCATEGORIZED,
            logo_url=stream.stream_icon,
            epg_id=stream.epg_channel_id,
            raw_title=name,
            provider_stream_id=stream.stream_id,
        )
        channels.setdefault(channel.id, channel)
    return list(channels.values())


class PlaylistService:
    """Fetches playlists with bounded retries and progress reporting."""

    def __init__(self, http_client: httpx.AsyncClient, *, retry_delay_cap: float = 2.0):
        self._http = http_client
        self._retry_delay_cap = retry_delay_cap

    async def fetch_channels(
        self,
        url: str,
        on_progress: ProgressCallback | None = None,
    ) -> PlaylistResult:
        """
        Load channels for a normalized playlist URL.

        Raises:
            PlaylistError: When every attempt failed or returned no channels
        """
        credentials = resolve_provider_credentials(url)
        if credentials is not None:
            provider_channels = await self._fetch_provider_channels(credentials, on_progress)
            if provider_channels:
                return PlaylistResult(channels=provider_channels)
            logger.info("Provider live API returned no channels, falling back to M3U")

        last_error: Exception | None = None
        for attempt in range(MAX_ATTEMPTS):
            try:
                result = await self._download_and_parse(url, on_progress)
                if result.channels:
                    return result
                last_error = PlaylistError("Playlist loaded but contains no channels.")
            except (TransportError, httpx.HTTPError) as exc:
                last_error = exc

            if attempt < MAX_ATTEMPTS - 1:
                wait_time = min(1.0 * (attempt + 1), self._retry_delay_cap)
                logger.warning(
                    "Playlist attempt %s/%s failed: %s. Retrying in %.1fs...",
                    attempt + 1,
                    MAX_ATTEMPTS,
                    last_error,
                    wait_time,
                )
                await asyncio.sleep(wait_time)

        logger.error("Playlist failed after %s attempts: %s", MAX_ATTEMPTS, last_error)
        if isinstance(last_error, PlaylistError):
            raise last_error
        raise PlaylistError(
            str(last_error) or type(last_error).__name__,
            getattr(last_error, "status_code", None),
        ) from last_error

    async def _fetch_provider_channels(
        self,
        credentials: ProviderCredentials,
        on_progress: ProgressCallback | None,
    ) -> list[Channel]:
        client = XtreamClient(self._http, credentials)
        if on_progress:
            on_progress(LoadProgress("Loading provider channels", 10))
        try:
            categories = await client.get_live_categories()
            streams = await client.get_live_streams()
        except TransportError as exc:
            logger.warning("Provider live API failed: %s", exc)
            return []

        category_names = {
            category.category_id: category.category_name
            for category in categories
            if category.category_id and category.category_name
        }
        if on_progress:
            on_progress(LoadProgress("Parsing channels", 78))
        channels = build_provider_channels(credentials, category_names, streams)
        logger.info("Provider live API returned %s channels", len(channels))
        return channels

    async def _download_and_parse(
        self,
        url: str,
        on_progress: ProgressCallback | None,
    ) -> PlaylistResult:
        safe_url = sanitize_url_for_logging(url)
        logger.info("Downloading playlist from %s", safe_url)
        if on_progress:
            on_progress(LoadProgress("Downloading playlist", 5))

        chunks: list[bytes] = []
        try:
            async with self._http.stream("GET", url, headers={"User-Agent": PLAYER_USER_AGENT}) as response:
                total = _content_length(response)
                downloaded = 0
                async for chunk in response.aiter_bytes():
                    chunks.append(chunk)
                    downloaded += len(chunk)
                    if on_progress:
                        on_progress(LoadProgress("Downloading playlist", _download_percent(downloaded, total)))
                status_code = response.status_code
                ok = response.is_success
                encoding = response.encoding or "utf-8"
        except httpx.HTTPError as exc:
            raise TransportError(f"{type(exc).__name__} downloading playlist") from exc

        body = b"".join(chunks)
        if not ok and not looks_like_m3u(body):
            preview = body[:160].decode("utf-8", errors="replace").strip()
            raise TransportError(f"M3U request failed (HTTP {status_code}). {preview}", status_code)

        if on_progress:
            on_progress(LoadProgress("Parsing channels", 78))
        text = body.decode(encoding, errors="replace")
        result = parse_m3u_lines(text.splitlines(), on_progress)
        if on_progress:
            on_progress(LoadProgress("Finalizing channels", 95))
        logger.info("Parsed %s channels from %s", len(result.channels), safe_url)
        return result


def _content_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("Content-Length")
    try:
        value = int(raw) if raw else None
    except ValueError:
        return None
    return value if value and value > 0 else None


def _download_percent(downloaded: int, total: int | None) -> int:
    if not total:
        return 15
    return max(8, min(74, downloaded * 70 // total))
