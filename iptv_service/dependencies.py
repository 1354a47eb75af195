"""
Dependency Wiring

Builds the shared HTTP client, the repository and the refresh scheduler once
per process and hands them to routers through FastAPI dependencies. Tests can
swap the repository with set_repository() and drop everything with
reset_dependencies().
"""
import logging
from datetime import timedelta
from pathlib import Path

import httpx

from iptv_service.config import CustomSettings, settings
from iptv_service.services.cache_store import SnapshotDiskCache
from iptv_service.services.epg_coordinator import GuideCoordinator
from iptv_service.services.guide_downloader_service import GuideDownloader
from iptv_service.services.iptv_repository import IptvRepository
from iptv_service.services.playlist_service import PlaylistService
from iptv_service.services.profile_store import ProfileStore
from iptv_service.services.provider_catalog import ProviderCatalog
from iptv_service.services.resolver_store import ResolverStore
from iptv_service.services.scheduler_service import GuideRefreshScheduler
from iptv_service.services.series_resolver import STORE_LIMITS, SeriesResolver
from iptv_service.services.short_epg_service import ShortEpgFetcher
from iptv_service.utils.secure_storage import ConfigCipher


logger = logging.getLogger(__name__)

# Process-wide singletons, created lazily
_http_client: httpx.AsyncClient | None = None
_repository: IptvRepository | None = None
_scheduler: GuideRefreshScheduler | None = None


def create_http_client(config: CustomSettings = settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.http_timeout_sec, connect=min(15.0, config.http_timeout_sec)),
        follow_redirects=True,
        limits=httpx.Limits(max_connections=config.short_epg_concurrency + 10),
    )


def build_repository(http_client: httpx.AsyncClient, config: CustomSettings = settings) -> IptvRepository:
    """
    Wire an IptvRepository from settings.

    Args:
        http_client: Shared client used by every upstream call
        config: Settings to take limits, timeouts and paths from

    Returns:
        A repository bound to the configured data directory
    """
    temp_dir = Path(config.data_dir) / "tmp"
    temp_dir.mkdir(parents=True, exist_ok=True)

    disk_cache = SnapshotDiskCache(config.cache_dir, config.max_snapshot_cache_bytes)
    cipher = ConfigCipher.from_key_file(config.secret_key_path)
    profiles = ProfileStore(cipher, disk_cache=disk_cache, default_profile_id=config.default_profile_id)

    downloader = GuideDownloader(
        http_client,
        temp_dir=temp_dir,
        parse_timeout_seconds=config.guide_parse_timeout_sec,
    )
    short_fetcher = ShortEpgFetcher(
        http_client,
        concurrency=config.short_epg_concurrency,
        channel_cap=config.short_epg_channel_cap,
        wait_ceiling_seconds=config.short_epg_wait_sec,
    )
    coordinator = GuideCoordinator(
        downloader,
        short_fetcher,
        deadline_seconds=config.guide_deadline_sec,
        candidate_timeout_seconds=config.guide_candidate_timeout_sec,
        max_candidates=config.guide_max_candidates,
    )
    catalog = ProviderCatalog(http_client)
    resolver = SeriesResolver(catalog, ResolverStore(max_entries=STORE_LIMITS))

    return IptvRepository(
        profiles,
        PlaylistService(http_client),
        coordinator,
        disk_cache,
        catalog,
        resolver,
        temp_dir=temp_dir,
        playlist_ttl=timedelta(hours=config.playlist_ttl_hours),
        guide_refresh_after=timedelta(minutes=config.guide_refresh_after_min),
        guide_empty_retry=timedelta(seconds=config.guide_empty_retry_sec),
    )


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = create_http_client()
    return _http_client


def get_repository() -> IptvRepository:
    """
    Get or create the process-wide repository.

    Returns:
        The shared IptvRepository
    """
    global _repository
    if _repository is None:
        _repository = build_repository(get_http_client())
        logger.info("IPTV repository created")
    return _repository


def set_repository(repository: IptvRepository) -> None:
    global _repository
    _repository = repository


def get_scheduler() -> GuideRefreshScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = GuideRefreshScheduler(get_repository)
    return _scheduler


async def close_dependencies() -> None:
    """Close the shared HTTP client on shutdown"""
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
        logger.debug("HTTP client closed")
    _http_client = None


def reset_dependencies() -> None:
    """
    Forget every singleton (mainly for testing).

    WARNING: the HTTP client is not closed; call close_dependencies() first.
    """
    global _http_client, _repository, _scheduler
    _http_client = None
    _repository = None
    _scheduler = None
