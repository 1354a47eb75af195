"""
IPTV Repository

Facade over playlist loading, guide acquisition, snapshot caching and
on-demand stream lookup for the active profile.

Snapshot loads are serialized by one lock. Guide-only refreshes use a second
lock that is try-acquired, so an overlapping refresh is skipped instead of
queued. Every load checks cache ownership first: a different profile or a
changed configuration swaps the in-memory store and drops the provider
catalog and resolver memory tiers.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from iptv_service.errors import PlaylistError
from iptv_service.services.cache_store import CacheStore, SnapshotDiskCache, build_config_signature
from iptv_service.services.credentials import resolve_guide_candidates, resolve_provider_credentials
from iptv_service.services.epg_coordinator import GUIDE_TIMEOUT_MESSAGE, GuideCoordinator, GuideRequest
from iptv_service.services.guide_downloader_service import TEMP_PREFIX
from iptv_service.services.iptv_types import (
    UNCATEGORIZED,
    CacheOwnership,
    Channel,
    ChannelGuide,
    IptvConfig,
    LoadProgress,
    ProgressCallback,
    ProviderCredentials,
    Snapshot,
    StreamSource,
)
from iptv_service.services.playlist_service import PlaylistService
from iptv_service.services.profile_store import ProfileStore
from iptv_service.services.provider_catalog import ProviderCatalog
from iptv_service.services.series_resolver import SeriesResolver
from iptv_service.services.vod_service import VOD_FETCH_TIMEOUT, VodSourceFinder
from iptv_service.utils.file_operations import cleanup_stale_temp_files
from iptv_service.utils.text_matching import parse_year
from iptv_service.utils.timezone import utc_now


logger = logging.getLogger(__name__)

PLAYLIST_TTL = timedelta(hours=24)
SNAPSHOT_STALE_AFTER = timedelta(hours=24)
GUIDE_REFRESH_AFTER = timedelta(minutes=15)
GUIDE_EMPTY_RETRY = timedelta(seconds=30)
STALE_TEMP_SWEEP_SECONDS = 180.0
WARNING_DETAIL_CHARS = 120

SnapshotCallback = Callable[[Snapshot], None]


def _report(on_progress: ProgressCallback | None, message: str, percent: int | None = None) -> None:
    if on_progress:
        on_progress(LoadProgress(message, percent))


def group_channels(channels: list[Channel] | tuple[Channel, ...]) -> dict[str, tuple[Channel, ...]]:
    """Group channels by group title (blank -> Uncategorized), keys sorted case-insensitively."""
    groups: dict[str, list[Channel]] = defaultdict(list)
    for channel in channels:
        groups[(channel.group or "").strip() or UNCATEGORIZED].append(channel)
    return {name: tuple(groups[name]) for name in sorted(groups, key=str.lower)}


def guide_warning(error: str | None) -> str:
    if error:
        return f"EPG unavailable right now ({error[:WARNING_DETAIL_CHARS]})."
    return "EPG unavailable for this source right now."


class IptvRepository:
    """Loads and caches snapshots for the active profile."""

    def __init__(
        self,
        profiles: ProfileStore,
        playlists: PlaylistService,
        coordinator: GuideCoordinator,
        disk_cache: SnapshotDiskCache,
        catalog: ProviderCatalog,
        resolver: SeriesResolver,
        *,
        temp_dir: Path | str | None = None,
        playlist_ttl: timedelta = PLAYLIST_TTL,
        guide_refresh_after: timedelta = GUIDE_REFRESH_AFTER,
        guide_empty_retry: timedelta = GUIDE_EMPTY_RETRY,
    ):
        self._profiles = profiles
        self._playlists = playlists
        self._coordinator = coordinator
        self._disk = disk_cache
        self._catalog = catalog
        self._resolver = resolver
        self._vod = VodSourceFinder(catalog, resolver)
        self._temp_dir = temp_dir
        self._playlist_ttl = playlist_ttl
        self._guide_refresh_after = guide_refresh_after
        self._guide_empty_retry = guide_empty_retry

        self._load_lock = asyncio.Lock()
        self._guide_lock = asyncio.Lock()
        self._store: CacheStore | None = None
        self._disk_synced = False

        profiles.add_listener(self._on_config_changed)

    @property
    def profiles(self) -> ProfileStore:
        return self._profiles

    @property
    def is_loading(self) -> bool:
        return self._load_lock.locked()

    @property
    def is_refreshing_guide(self) -> bool:
        return self._guide_lock.locked()

    # Snapshots

    async def load_snapshot(
        self,
        force_playlist: bool = False,
        force_guide: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> Snapshot:
        """
        Load channels and guide for the active profile.

        Memory is used first, then the disk snapshot, then the network.

        Args:
            force_playlist: Re-download the playlist even when cached
            force_guide: Re-acquire the guide even when cached
            on_progress: Progress reporter

        Returns:
            Snapshot, with a warning when guide sources exist but yielded nothing
            or the guide deadline passed

        Raises:
            PlaylistError: If the playlist failed and no cached channels exist
        """
        async with self._load_lock:
            cleanup_stale_temp_files(self._temp_dir, TEMP_PREFIX, STALE_TEMP_SWEEP_SECONDS)
            _report(on_progress, "Starting IPTV load...", 2)

            config = await self._profiles.get_config()
            store = self._ensure_owner(config)
            if not config.playlist_url:
                return self._empty_snapshot(config)

            if not store.has_channels:
                await self._hydrate(store)

            await self._load_channels(store, config, force_playlist, on_progress)

            candidates = resolve_guide_candidates(
                config.playlist_url,
                config.guide_url,
                store.discovered_guide_url,
                store.preferred_guide_url,
            )
            credentials = self._guide_credentials(config)
            guide_updated = False
            guide_error: str | None = None
            guide_timed_out = False

            if not candidates and credentials is None:
                store.guides = {}
                _report(on_progress, "No EPG URL configured", 90)
            elif not force_guide and self._can_reuse_guide(store):
                _report(on_progress, "Using cached guide", 90)
            else:
                result = await self._coordinator.acquire(
                    GuideRequest(
                        channels=tuple(store.channels),
                        candidates=tuple(candidates),
                        credentials=credentials,
                        favorite_channels=config.favorite_channels,
                        favorite_groups=config.favorite_groups,
                    ),
                    store,
                    on_progress=on_progress,
                )
                guide_updated = True
                guide_error = result.error
                guide_timed_out = result.timed_out
                if not result.resolved:
                    # Timestamp the empty guide so the retry throttle applies
                    store.guides = {}
                    store.guide_loaded_at = utc_now()

            warning = None
            if guide_timed_out:
                warning = GUIDE_TIMEOUT_MESSAGE
            elif candidates and not store.has_guide_data:
                warning = guide_warning(guide_error)
            if warning:
                logger.warning(warning)

            snapshot = self._build_snapshot(store, config, store.guides, warning)
            if force_playlist or force_guide or guide_updated or not self._disk_synced:
                self._disk_synced = await self._disk.write(store)
            _report(on_progress, f"Loaded {len(snapshot.channels)} channels", 100)
            return snapshot

    async def warmup_from_cache_only(self) -> Snapshot | None:
        """Populate memory from the disk snapshot without touching the network."""
        async with self._load_lock:
            config = await self._profiles.get_config()
            store = self._ensure_owner(config)
            if not config.playlist_url:
                return None
            if not store.has_channels and not await self._hydrate(store):
                return None
            return self._build_snapshot(store, config, store.guides)

    async def get_cached_snapshot(self) -> Snapshot | None:
        """
        Snapshot from memory or disk; never performs network calls.

        Returns:
            Empty snapshot for a blank configuration, None when nothing is cached
        """
        async with self._load_lock:
            config = await self._profiles.get_config()
            store = self._ensure_owner(config)
            if not config.playlist_url:
                return self._empty_snapshot(config)
            if not store.has_channels and not await self._hydrate(store):
                return None
            return self._build_snapshot(store, config, store.guides)

    def is_snapshot_stale(self, snapshot: Snapshot, now: datetime | None = None) -> bool:
        return (now or utc_now()) - snapshot.loaded_at > SNAPSHOT_STALE_AFTER

    def is_guide_stale_for_background_refresh(self, now: datetime | None = None) -> bool:
        store = self._store
        if store is None or store.guide_loaded_at is None:
            return True
        return store.guide_age(now) > self._guide_refresh_after

    async def refresh_guide_only(
        self,
        on_progress: ProgressCallback | None = None,
        on_guide_snapshot: SnapshotCallback | None = None,
    ) -> Snapshot | None:
        """
        Re-acquire the guide for the cached channels without the load lock.

        Args:
            on_progress: Progress reporter
            on_guide_snapshot: Receives an interim snapshot once the short guide lands

        Returns:
            Updated snapshot, or None when another refresh is running, nothing
            is cached or no new guide data was obtained
        """
        if self._guide_lock.locked():
            logger.info("Guide refresh already in progress, skipping")
            return None

        async with self._guide_lock:
            config = await self._profiles.get_config()
            store = self._store
            if not config.playlist_url or store is None or not store.has_channels:
                return None
            if store.owner != self._owner_for(config):
                logger.info("Cached channels belong to another configuration, skipping guide refresh")
                return None

            candidates = resolve_guide_candidates(
                config.playlist_url,
                config.guide_url,
                store.discovered_guide_url,
                store.preferred_guide_url,
            )
            credentials = self._guide_credentials(config)
            if not candidates and credentials is None:
                logger.info("No guide sources configured, skipping guide refresh")
                return None

            guide_age = store.guide_age()
            logger.info(
                "Refreshing guide for %s channels (cached guide age: %s)",
                len(store.channels),
                f"{guide_age.total_seconds():.0f}s" if guide_age is not None else "none",
            )

            def publish_partial(guides: dict[str, ChannelGuide]) -> None:
                if on_guide_snapshot:
                    on_guide_snapshot(self._build_snapshot(store, config, guides))

            result = await self._coordinator.acquire(
                GuideRequest(
                    channels=tuple(store.channels),
                    candidates=tuple(candidates),
                    credentials=credentials,
                    favorite_channels=config.favorite_channels,
                    favorite_groups=config.favorite_groups,
                ),
                store,
                on_progress=on_progress,
                on_partial=publish_partial,
            )
            if not result.resolved:
                logger.info("Guide refresh produced no new data")
                return None

            if store is self._store:
                self._disk_synced = await self._disk.write(store)
            else:
                await self._disk.write(store)
            return self._build_snapshot(store, config, result.guides)

    def invalidate_cache(self) -> None:
        """Forget every in-memory cache; disk snapshots are left alone."""
        self._store = None
        self._disk_synced = False
        self._catalog.invalidate()
        self._resolver.invalidate()
        logger.info("IPTV caches invalidated")

    def switch_profile(self, profile_id: str) -> bool:
        changed = self._profiles.switch_profile(profile_id)
        if changed:
            self.invalidate_cache()
        return changed

    # On-demand streams

    async def find_episode_source(
        self,
        title: str,
        season: int,
        episode: int,
        *,
        imdb_id: str | None = None,
        tmdb_id: str | int | None = None,
        allow_network: bool = True,
    ) -> StreamSource | None:
        account = await self._vod_account()
        if account is None:
            return None
        provider_key, credentials = account
        return await self._vod.find_episode_source(
            provider_key,
            credentials,
            title,
            season,
            episode,
            imdb_id=imdb_id,
            tmdb_id=tmdb_id,
            allow_network=allow_network,
        )

    async def find_movie_source(
        self,
        title: str,
        *,
        year: int | None = None,
        imdb_id: str | None = None,
        tmdb_id: str | int | None = None,
        allow_network: bool = True,
    ) -> StreamSource | None:
        account = await self._vod_account()
        if account is None:
            return None
        _, credentials = account
        return await self._vod.find_movie_source(
            credentials,
            title,
            year=year,
            imdb_id=imdb_id,
            tmdb_id=tmdb_id,
            allow_network=allow_network,
        )

    async def prefetch_episode_resolution(
        self,
        title: str,
        season: int,
        episode: int,
        *,
        imdb_id: str | None = None,
        tmdb_id: str | int | None = None,
    ) -> None:
        """Resolve an episode ahead of playback so the later lookup is a cache hit."""
        account = await self._vod_account()
        if account is None:
            return
        provider_key, credentials = account
        await self._resolver.resolve_episode(
            provider_key,
            credentials,
            title,
            season,
            episode,
            tmdb_id=tmdb_id,
            imdb_id=imdb_id,
            year=parse_year(title),
        )

    async def prefetch_series_info_for_show(
        self,
        title: str,
        *,
        imdb_id: str | None = None,
        tmdb_id: str | int | None = None,
    ) -> None:
        account = await self._vod_account()
        if account is None:
            return
        provider_key, credentials = account
        await self._resolver.prefetch_series_info(
            provider_key,
            credentials,
            title,
            tmdb_id=tmdb_id,
            imdb_id=imdb_id,
            year=parse_year(title),
        )

    async def warm_provider_caches(self) -> bool:
        """
        Load the VOD list and series catalog for the active account.

        Returns:
            True when the active configuration has provider credentials
        """
        account = await self._vod_account()
        if account is None:
            return False
        provider_key, credentials = account
        await asyncio.gather(
            self._catalog.get_vod_streams(credentials, timeout=VOD_FETCH_TIMEOUT),
            self._resolver.warm_catalog(provider_key, credentials),
        )
        return True

    # Internals

    def _owner_for(self, config: IptvConfig) -> CacheOwnership:
        return CacheOwnership(
            profile_id=self._profiles.active_profile_id,
            config_signature=build_config_signature(config.playlist_url, config.guide_url),
        )

    def _ensure_owner(self, config: IptvConfig) -> CacheStore:
        owner = self._owner_for(config)
        if self._store is not None and self._store.owner == owner:
            return self._store
        if self._store is not None:
            logger.info("Cache owner changed (profile %s), dropping in-memory caches", owner.profile_id)
            self._catalog.invalidate()
            self._resolver.invalidate()
        self._store = CacheStore(owner=owner)
        self._disk_synced = False
        return self._store

    async def _hydrate(self, store: CacheStore) -> bool:
        loaded = await self._disk.read(store.owner)
        if loaded is None:
            return False
        store.channels = loaded.channels
        store.guides = loaded.guides
        store.playlist_loaded_at = loaded.playlist_loaded_at
        store.guide_loaded_at = loaded.guide_loaded_at
        store.discovered_guide_url = loaded.discovered_guide_url
        store.preferred_guide_url = loaded.preferred_guide_url
        if store is self._store:
            self._disk_synced = True
        logger.info("Hydrated %s channels from disk for profile %s", len(store.channels), store.owner.profile_id)
        return True

    async def _load_channels(
        self,
        store: CacheStore,
        config: IptvConfig,
        force_playlist: bool,
        on_progress: ProgressCallback | None,
    ) -> None:
        if store.has_channels and not force_playlist:
            fresh = store.is_playlist_fresh(self._playlist_ttl)
            _report(
                on_progress,
                f"Using cached playlist ({len(store.channels)} channels{'' if fresh else ', stale'})",
                80,
            )
            return

        try:
            result = await self._playlists.fetch_channels(config.playlist_url, on_progress)
        except PlaylistError as exc:
            if not store.has_channels:
                raise
            logger.warning("Playlist reload failed, keeping %s cached channels: %s", len(store.channels), exc)
            return

        store.channels = result.channels
        store.playlist_loaded_at = utc_now()
        store.discovered_guide_url = result.guide_url

    def _can_reuse_guide(self, store: CacheStore) -> bool:
        if store.has_guide_data:
            return True
        age = store.guide_age()
        return age is not None and age < self._guide_empty_retry

    @staticmethod
    def _guide_credentials(config: IptvConfig) -> ProviderCredentials | None:
        return resolve_provider_credentials(config.guide_url) or resolve_provider_credentials(config.playlist_url)

    async def _vod_account(self) -> tuple[str, ProviderCredentials] | None:
        config = await self._profiles.get_config()
        self._ensure_owner(config)
        credentials = resolve_provider_credentials(config.playlist_url)
        if credentials is None:
            return None
        return f"{self._profiles.active_profile_id}|{credentials.cache_key}", credentials

    @staticmethod
    def _build_snapshot(
        store: CacheStore,
        config: IptvConfig,
        guides: dict[str, ChannelGuide],
        warning: str | None = None,
    ) -> Snapshot:
        channels = tuple(store.channels)
        return Snapshot(
            channels=channels,
            grouped=group_channels(channels),
            guide=dict(guides),
            favorite_groups=config.favorite_groups,
            favorite_channels=config.favorite_channels,
            loaded_at=store.playlist_loaded_at or utc_now(),
            warning=warning,
        )

    @staticmethod
    def _empty_snapshot(config: IptvConfig) -> Snapshot:
        return Snapshot(
            channels=(),
            grouped={},
            guide={},
            favorite_groups=config.favorite_groups,
            favorite_channels=config.favorite_channels,
            loaded_at=utc_now(),
        )

    async def _on_config_changed(self, profile_id: str) -> None:
        if profile_id == self._profiles.active_profile_id:
            self.invalidate_cache()
