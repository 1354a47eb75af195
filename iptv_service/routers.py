from typing import Annotated
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from iptv_service.dependencies import get_repository, get_scheduler
from iptv_service.schemas import (
    ConfigRequest,
    ConfigResponse,
    FavoritesResponse,
    GuideRefreshResponse,
    ProfileResponse,
    SnapshotResponse,
    StreamSourceResponse,
    ToggleRequest,
)
from iptv_service.services.iptv_repository import IptvRepository
from iptv_service.services.iptv_types import IptvConfig
from iptv_service.services.profile_store import ProfileState, validate_profile_id
from iptv_service.services.scheduler_service import GuideRefreshScheduler
from iptv_service.utils.logging_helpers import sanitize_url_for_logging


logger = logging.getLogger(__name__)

main_router = APIRouter()

Repository = Annotated[IptvRepository, Depends(get_repository)]
Scheduler = Annotated[GuideRefreshScheduler, Depends(get_scheduler)]


def _config_response(profile_id: str, config: IptvConfig) -> ConfigResponse:
    """Config view with provider credentials masked"""
    return ConfigResponse(
        profile_id=profile_id,
        configured=bool(config.playlist_url),
        playlist_url=sanitize_url_for_logging(config.playlist_url),
        guide_url=sanitize_url_for_logging(config.guide_url),
        favorite_groups=list(config.favorite_groups),
        favorite_channels=list(config.favorite_channels),
    )


def _checked_profile_id(profile_id: str) -> str:
    try:
        return validate_profile_id(profile_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


@main_router.get("/")
async def root(scheduler: Scheduler) -> dict:
    """Root endpoint with service information"""
    next_run = scheduler.get_next_run_time()

    return {
        "service": "IPTV Guide Service",
        "version": "0.1.0",
        "next_scheduled_refresh": next_run.isoformat() if next_run else None,
        "endpoints": {
            "snapshot": "/snapshot - Channels and guide for the active profile",
            "refresh": "/guide/refresh - Refresh the guide only (POST)",
            "config": "/config - Read, save or clear the playlist configuration",
            "vod": "/vod/episode, /vod/movie - On-demand stream lookup",
            "health": "/health - Health check",
        },
    }


@main_router.get("/health")
async def health_check(scheduler: Scheduler, repository: Repository) -> dict:
    """Health check endpoint"""
    next_run = scheduler.get_next_run_time()
    return {
        "status": "ok",
        "scheduler_running": scheduler.running,
        "next_refresh": next_run.isoformat() if next_run else None,
        "active_profile": repository.profiles.active_profile_id,
        "loading": repository.is_loading,
        "refreshing_guide": repository.is_refreshing_guide,
    }


@main_router.get("/snapshot", response_model=SnapshotResponse)
async def get_snapshot(
    repository: Repository,
    force_playlist: bool = False,
    force_guide: bool = False,
) -> SnapshotResponse:
    """
    Load channels and guide for the active profile

    Cached data is reused unless a reload is forced. Playlist failures with
    nothing cached surface as 502.
    """
    snapshot = await repository.load_snapshot(force_playlist=force_playlist, force_guide=force_guide)
    return SnapshotResponse.from_snapshot(snapshot)


@main_router.get("/snapshot/cached", response_model=SnapshotResponse)
async def get_cached_snapshot(repository: Repository) -> SnapshotResponse:
    """Snapshot from memory or disk only; never touches the network"""
    snapshot = await repository.get_cached_snapshot()
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No cached snapshot")
    return SnapshotResponse.from_snapshot(snapshot)


@main_router.post("/guide/refresh", response_model=GuideRefreshResponse)
async def refresh_guide(repository: Repository, response: Response) -> GuideRefreshResponse:
    """Refresh the guide for the cached channels"""
    logger.info("Manual guide refresh triggered via API")
    if repository.is_refreshing_guide:
        response.status_code = status.HTTP_202_ACCEPTED
        return GuideRefreshResponse(status="skipped", message="Guide refresh already in progress")

    snapshot = await repository.refresh_guide_only()
    if snapshot is None:
        response.status_code = status.HTTP_202_ACCEPTED
        return GuideRefreshResponse(status="skipped", message="No cached channels or no new guide data")
    return GuideRefreshResponse(status="refreshed", snapshot=SnapshotResponse.from_snapshot(snapshot))


@main_router.get("/config", response_model=ConfigResponse)
async def get_config(repository: Repository) -> ConfigResponse:
    profiles = repository.profiles
    config = await profiles.get_config()
    return _config_response(profiles.active_profile_id, config)


@main_router.put("/config", response_model=ConfigResponse)
async def save_config(request: ConfigRequest, repository: Repository) -> ConfigResponse:
    profiles = repository.profiles
    config = await profiles.save_config(request.playlist_url, request.guide_url)
    return _config_response(profiles.active_profile_id, config)


@main_router.delete("/config", status_code=204)
async def clear_config(repository: Repository) -> Response:
    await repository.profiles.clear_config()
    return Response(status_code=204)


@main_router.post("/favorites/groups/toggle", response_model=FavoritesResponse)
async def toggle_favorite_group(request: ToggleRequest, repository: Repository) -> FavoritesResponse:
    groups = await repository.profiles.toggle_favorite_group(request.value)
    return FavoritesResponse(favorites=list(groups))


@main_router.post("/favorites/channels/toggle", response_model=FavoritesResponse)
async def toggle_favorite_channel(request: ToggleRequest, repository: Repository) -> FavoritesResponse:
    channels = await repository.profiles.toggle_favorite_channel(request.value)
    return FavoritesResponse(favorites=list(channels))


@main_router.post("/profiles/{profile_id}/activate", response_model=ProfileResponse)
async def activate_profile(profile_id: str, repository: Repository) -> ProfileResponse:
    profile_id = _checked_profile_id(profile_id)
    changed = repository.switch_profile(profile_id)
    return ProfileResponse(profile_id=profile_id, changed=changed)


@main_router.get("/profiles/{profile_id}/state", response_model=ProfileState)
async def export_profile_state(profile_id: str, repository: Repository) -> ProfileState:
    """Export a profile's configuration for cloud sync"""
    return await repository.profiles.export_profile_state(_checked_profile_id(profile_id))


@main_router.put("/profiles/{profile_id}/state", response_model=ConfigResponse)
async def import_profile_state(profile_id: str, state: ProfileState, repository: Repository) -> ConfigResponse:
    """Replace a profile's configuration with state pulled from cloud sync"""
    profile_id = _checked_profile_id(profile_id)
    config = await repository.profiles.import_profile_state(state, profile_id)
    return _config_response(profile_id, config)


@main_router.get("/vod/episode", response_model=StreamSourceResponse)
async def find_episode(
    repository: Repository,
    title: Annotated[str, Query(min_length=1)],
    season: Annotated[int, Query(ge=0)],
    episode: Annotated[int, Query(ge=0)],
    imdb_id: str | None = None,
    tmdb_id: str | None = None,
    allow_network: bool = True,
) -> StreamSourceResponse:
    """Find a provider stream for a show episode"""
    source = await repository.find_episode_source(
        title,
        season,
        episode,
        imdb_id=imdb_id,
        tmdb_id=tmdb_id,
        allow_network=allow_network,
    )
    if source is None:
        raise HTTPException(status_code=404, detail="No matching episode stream")
    return StreamSourceResponse.from_source(source)


@main_router.get("/vod/movie", response_model=StreamSourceResponse)
async def find_movie(
    repository: Repository,
    title: Annotated[str, Query(min_length=1)],
    year: int | None = None,
    imdb_id: str | None = None,
    tmdb_id: str | None = None,
    allow_network: bool = True,
) -> StreamSourceResponse:
    """Find a provider stream for a movie"""
    source = await repository.find_movie_source(
        title,
        year=year,
        imdb_id=imdb_id,
        tmdb_id=tmdb_id,
        allow_network=allow_network,
    )
    if source is None:
        raise HTTPException(status_code=404, detail="No matching movie stream")
    return StreamSourceResponse.from_source(source)
