"""
EPG Acquisition Coordinator

Runs the short guide fan-out and the full XMLTV download concurrently under one
deadline, publishes short results early and merges both into the store.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Literal, Sequence

from iptv_service.errors import GuideParseError, IptvError, TransportError
from iptv_service.services.cache_store import CacheStore
from iptv_service.services.guide_downloader_service import GuideDownloader
from iptv_service.services.iptv_types import (
    Channel,
    ChannelGuide,
    LoadProgress,
    ProgressCallback,
    ProviderCredentials,
)
from iptv_service.services.short_epg_service import ShortEpgFetcher
from iptv_service.utils.data_merging import (
    count_channels_with_data,
    has_any_program_data,
    merge_guides,
    overlay_guides,
)
from iptv_service.utils.logging_helpers import (
    log_candidate_attempt,
    log_guide_summary,
    log_section_end,
    log_section_start,
    sanitize_url_for_logging,
)
from iptv_service.utils.timezone import utc_now


logger = logging.getLogger(__name__)

GUIDE_TIMEOUT_MESSAGE = "EPG loading timed out"

PartialGuideCallback = Callable[[dict[str, ChannelGuide]], None]


@dataclass(slots=True)
class GuideRequest:
    channels: Sequence[Channel]
    candidates: Sequence[str]
    credentials: ProviderCredentials | None = None
    favorite_channels: tuple[str, ...] = ()
    favorite_groups: tuple[str, ...] = ()


@dataclass(slots=True)
class GuideResult:
    """Outcome of one acquisition; an empty guide is a value, not an error."""
    guides: dict[str, ChannelGuide] = field(default_factory=dict)
    resolved: bool = False
    source: Literal["short", "full", "merged"] | None = None
    error: str | None = None
    timed_out: bool = False
    guide_url: str | None = None


@dataclass(slots=True)
class _FullOutcome:
    guides: dict[str, ChannelGuide] = field(default_factory=dict)
    url: str | None = None
    error: str | None = None


@dataclass(slots=True)
class _PartialState:
    guides: dict[str, ChannelGuide] | None = None


class GuideCoordinator:
    """Acquires guide data from the short API and XMLTV candidates."""

    def __init__(
        self,
        downloader: GuideDownloader,
        short_fetcher: ShortEpgFetcher,
        *,
        deadline_seconds: float = 90.0,
        candidate_timeout_seconds: float = 60.0,
        max_candidates: int = 2,
    ):
        self._downloader = downloader
        self._short = short_fetcher
        self._deadline = deadline_seconds
        self._candidate_timeout = candidate_timeout_seconds
        self._max_candidates = max(1, max_candidates)

    async def acquire(
        self,
        request: GuideRequest,
        store: CacheStore,
        *,
        on_progress: ProgressCallback | None = None,
        on_partial: PartialGuideCallback | None = None,
    ) -> GuideResult:
        """
        Acquire guides for the request's channels.

        Partial short guide data is written into ``store.guides`` as soon as it
        arrives; the final merged map is written on success.

        Args:
            request: Channels, candidate URLs and provider credentials
            store: CacheStore owning the channels being guided
            on_progress: Progress reporter
            on_partial: Called with the store's guide map after the short guide lands

        Returns:
            GuideResult describing what was acquired
        """
        log_section_start(logger, "Guide acquisition")
        partial = _PartialState()
        try:
            return await asyncio.wait_for(
                self._acquire(request, store, partial, on_progress, on_partial),
                timeout=self._deadline,
            )
        except asyncio.TimeoutError:
            logger.warning("Guide acquisition exceeded the %ss deadline", self._deadline)
            if partial.guides is not None:
                return GuideResult(
                    guides=partial.guides,
                    resolved=True,
                    source="short",
                    error=GUIDE_TIMEOUT_MESSAGE,
                    timed_out=True,
                )
            return GuideResult(resolved=False, error=GUIDE_TIMEOUT_MESSAGE, timed_out=True)
        finally:
            log_section_end(logger, "Guide acquisition")

    async def _acquire(
        self,
        request: GuideRequest,
        store: CacheStore,
        partial: _PartialState,
        on_progress: ProgressCallback | None,
        on_partial: PartialGuideCallback | None,
    ) -> GuideResult:
        now = utc_now()
        short_task: asyncio.Task | None = None
        if request.credentials and any(c.provider_stream_id is not None for c in request.channels):
            short_task = asyncio.create_task(
                self._short.fetch(
                    request.credentials,
                    request.channels,
                    favorite_channels=request.favorite_channels,
                    favorite_groups=request.favorite_groups,
                    on_progress=on_progress,
                    now=now,
                )
            )
        full_task = asyncio.create_task(self._fetch_full(request, on_progress, now))

        try:
            short_guides = await self._await_short(short_task)
            if has_any_program_data(short_guides):
                store.guides = overlay_guides(store.guides, short_guides)
                store.guide_loaded_at = utc_now()
                partial.guides = dict(store.guides)
                logger.info("Short guide published for %s channels", count_channels_with_data(short_guides))
                if on_partial:
                    on_partial(dict(partial.guides))
            full = await full_task
        finally:
            for task in (short_task, full_task):
                if task is not None and not task.done():
                    task.cancel()

        short_ok = has_any_program_data(short_guides)
        full_ok = has_any_program_data(full.guides)
        if full_ok:
            store.preferred_guide_url = full.url

        if full_ok and short_ok:
            guides, source = merge_guides(full.guides, short_guides), "merged"
        elif full_ok:
            guides, source = full.guides, "full"
        elif short_ok:
            guides, source = dict(short_guides), "short"
        else:
            logger.warning("No guide data from any source: %s", full.error or "nothing matched")
            return GuideResult(resolved=False, error=full.error)

        store.guides = guides
        store.guide_loaded_at = utc_now()
        log_guide_summary(logger, source, count_channels_with_data(guides), len(request.channels))
        return GuideResult(guides=guides, resolved=True, source=source, guide_url=full.url)

    @staticmethod
    async def _await_short(task: asyncio.Task | None) -> dict[str, ChannelGuide] | None:
        if task is None:
            return None
        try:
            return await task
        except IptvError as exc:
            logger.warning("Short guide failed: %s", exc)
            return None

    async def _fetch_full(
        self,
        request: GuideRequest,
        on_progress: ProgressCallback | None,
        now: datetime,
    ) -> _FullOutcome:
        candidates = list(request.candidates)[: self._max_candidates]
        if not candidates:
            return _FullOutcome()

        outcome = _FullOutcome()
        for idx, url in enumerate(candidates, start=1):
            log_candidate_attempt(logger, idx, len(candidates), url)
            if on_progress:
                on_progress(LoadProgress(f"Loading guide ({idx}/{len(candidates)})", 85))
            try:
                guides = await asyncio.wait_for(
                    self._downloader.fetch_guide(url, request.channels, now),
                    timeout=self._candidate_timeout,
                )
            except asyncio.TimeoutError:
                outcome.error = f"Guide download timed out after {self._candidate_timeout:g}s"
                logger.warning("%s: %s", outcome.error, sanitize_url_for_logging(url))
                continue
            except (TransportError, GuideParseError) as exc:
                outcome.error = str(exc)
                logger.warning("Guide candidate %s failed: %s", sanitize_url_for_logging(url), exc)
                continue

            if has_any_program_data(guides):
                return _FullOutcome(guides=guides, url=url)
            logger.info("Guide candidate %s matched no channels", sanitize_url_for_logging(url))
        return outcome
