"""
Short Guide Service

Fetches now/next listings from the provider's get_short_epg endpoint for a
bounded, priority-ordered subset of channels. Requests fan out over a
semaphore; anything still running when the wait ceiling expires is cancelled
and abandoned.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx

from iptv_service.errors import TransportError
from iptv_service.services.channel_matcher import normalize_channel_key
from iptv_service.services.iptv_types import (
    Channel,
    ChannelGuide,
    LoadProgress,
    Program,
    ProgressCallback,
    ProviderCredentials,
)
from iptv_service.services.provider_client import ShortEpgListing, XtreamClient
from iptv_service.utils.timezone import from_epoch_seconds, parse_provider_time, utc_now


logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(minutes=15)
SHORT_UPCOMING_CAP = 5
MIN_SAMPLE_FOR_OUTAGE = 20


def decode_listing_text(value: str | None) -> str | None:
    """Decode base64 guide text, falling back to the raw value."""
    if not value:
        return value
    compact = "".join(value.split())
    try:
        return base64.b64decode(compact, validate=True).decode("utf-8").strip()
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return value.strip()


def prioritize_channels(
    channels: Sequence[Channel],
    favorite_channels: Iterable[str],
    favorite_groups: Iterable[str],
    cap: int,
) -> list[Channel]:
    """Favorite channels first, then channels in favorite groups, then the rest; one per stream id."""
    favorite_channel_ids = set(favorite_channels)
    favorite_group_names = set(favorite_groups)
    provider_channels = [c for c in channels if c.provider_stream_id is not None]

    ordered = (
        [c for c in provider_channels if c.id in favorite_channel_ids]
        + [c for c in provider_channels if c.id not in favorite_channel_ids and c.group in favorite_group_names]
        + [
            c for c in provider_channels
            if c.id not in favorite_channel_ids and c.group not in favorite_group_names
        ]
    )
    seen: set[int] = set()
    selected: list[Channel] = []
    for channel in ordered:
        if channel.provider_stream_id in seen:
            continue
        seen.add(channel.provider_stream_id)
        selected.append(channel)
        if len(selected) >= cap:
            break
    return selected


def _listing_times(listing: ShortEpgListing) -> tuple[datetime | None, datetime | None]:
    start = from_epoch_seconds(listing.start_timestamp) or parse_provider_time(listing.start)
    end = from_epoch_seconds(listing.stop_timestamp) or parse_provider_time(listing.end)
    return start, end


def build_guides_from_listings(
    listings: Iterable[ShortEpgListing],
    channels: Sequence[Channel],
    now: datetime,
) -> dict[str, ChannelGuide]:
    """
    Assemble ChannelGuides from short guide listings.

    A listing goes to every channel it matches: channel_id/epg_id against
    playlist epg ids, stream_id (or a numeric epg_id) against provider stream
    ids. Variants sharing one epg id all receive the listing.
    """
    by_epg_id: dict[str, list[str]] = {}
    by_stream_id: dict[int, list[str]] = {}
    for channel in channels:
        if channel.epg_id:
            by_epg_id.setdefault(normalize_channel_key(channel.epg_id), []).append(channel.id)
        if channel.provider_stream_id is not None:
            by_stream_id.setdefault(channel.provider_stream_id, []).append(channel.id)

    cutoff = now - RECENT_WINDOW
    programs: dict[str, list[Program]] = {}
    for listing in listings:
        start, end = _listing_times(listing)
        if start is None or end is None or end <= start or end < cutoff:
            continue

        targets: set[str] = set()
        if listing.channel_id:
            targets.update(by_epg_id.get(normalize_channel_key(listing.channel_id), ()))
        if listing.epg_id:
            if listing.epg_id.isdigit():
                targets.update(by_stream_id.get(int(listing.epg_id), ()))
            targets.update(by_epg_id.get(normalize_channel_key(listing.epg_id), ()))
        if listing.stream_id is not None:
            targets.update(by_stream_id.get(listing.stream_id, ()))
        if not targets:
            continue

        program = Program(
            title=decode_listing_text(listing.title) or "No Title",
            start=start,
            end=end,
            description=decode_listing_text(listing.description) or None,
        )
        for channel_id in targets:
            programs.setdefault(channel_id, []).append(program)

    guides: dict[str, ChannelGuide] = {}
    for channel_id, entries in programs.items():
        entries.sort(key=lambda p: p.start)
        recent: list[Program] = []
        live: Program | None = None
        future: list[Program] = []
        for program in entries:
            if program.end <= now:
                if program.end >= cutoff:
                    recent.append(program)
            elif program.is_live(now):
                if live is None or program.start >= live.start:
                    live = program
            else:
                future.append(program)
        guides[channel_id] = ChannelGuide(
            now=live,
            next=future[0] if future else None,
            later=future[1] if len(future) > 1 else None,
            upcoming=tuple(future[:SHORT_UPCOMING_CAP]),
            recent=tuple(recent),
        )
    return guides


@dataclass(slots=True)
class _FanOutStats:
    fetched: int = 0
    errors: int = 0


class ShortEpgFetcher:
    """Fans out get_short_epg requests with a global wait ceiling."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        concurrency: int = 40,
        channel_cap: int = 500,
        wait_ceiling_seconds: float = 30.0,
        listings_per_channel: int = 5,
    ):
        self._http = http_client
        self._concurrency = max(1, concurrency)
        self._channel_cap = channel_cap
        self._wait_ceiling = wait_ceiling_seconds
        self._limit = listings_per_channel

    async def fetch(
        self,
        credentials: ProviderCredentials,
        channels: Sequence[Channel],
        *,
        favorite_channels: Iterable[str] = (),
        favorite_groups: Iterable[str] = (),
        on_progress: ProgressCallback | None = None,
        now: datetime | None = None,
    ) -> dict[str, ChannelGuide] | None:
        """
        Fetch short guides for prioritized provider channels.

        Returns:
            Guides keyed by channel id, or None when the pass produced nothing
            or looks like a provider outage
        """
        targets = prioritize_channels(channels, favorite_channels, favorite_groups, self._channel_cap)
        if not targets:
            return None

        if on_progress:
            on_progress(LoadProgress(f"Loading quick guide for {len(targets)} channels", 80))

        client = XtreamClient(self._http, credentials)
        semaphore = asyncio.Semaphore(self._concurrency)
        stats = _FanOutStats()
        listings: list[ShortEpgListing] = []

        async def fetch_one(channel: Channel) -> None:
            async with semaphore:
                try:
                    items = await client.get_short_epg(channel.provider_stream_id, self._limit)
                except TransportError:
                    stats.errors += 1
                    return
                finally:
                    stats.fetched += 1
                for item in items:
                    if item.stream_id is None:
                        item = item.model_copy(update={"stream_id": channel.provider_stream_id})
                    listings.append(item)

        tasks = [asyncio.create_task(fetch_one(channel)) for channel in targets]
        _, pending = await asyncio.wait(tasks, timeout=self._wait_ceiling)
        if pending:
            logger.warning(
                "Short guide wait ceiling of %ss reached; abandoning %s request(s)",
                self._wait_ceiling,
                len(pending),
            )
            for task in pending:
                task.cancel()

        logger.info(
            "Short guide: %s requested, %s completed, %s errors, %s listings",
            len(targets),
            stats.fetched,
            stats.errors,
            len(listings),
        )
        if stats.fetched > MIN_SAMPLE_FOR_OUTAGE and stats.errors > stats.fetched / 2:
            logger.warning("Short guide discarded: %s of %s requests failed", stats.errors, stats.fetched)
            return None
        if not listings:
            return None

        guides = build_guides_from_listings(listings, channels, now or utc_now())
        return guides or None
