"""
VOD Source Finder

Turns a movie or episode request into a playable provider stream. Movies are
matched against the VOD list by id, then by fuzzy name and year. Episodes go
through the series resolver first and fall back to episode-named items in the
VOD list.
"""
import logging

from iptv_service.services.iptv_types import ProviderCredentials, StreamSource
from iptv_service.services.provider_catalog import ProviderCatalog
from iptv_service.services.provider_client import VodStream
from iptv_service.services.series_resolver import SeriesResolver
from iptv_service.utils.text_matching import (
    extract_episode_only,
    extract_season_episode,
    infer_quality,
    loose_series_title_score,
    normalize_imdb_id,
    normalize_lookup_text,
    normalize_tmdb_id,
    parse_year,
    score_name_match,
)


logger = logging.getLogger(__name__)

VOD_LABEL = "IPTV VOD"
SERIES_LABEL = "IPTV Series VOD"
EPISODE_LABEL = "IPTV Episode VOD"
VOD_FETCH_TIMEOUT = 8.0


def _year_adjust(requested: int | None, provider: int | None) -> int:
    if requested is None or provider is None:
        return 0
    delta = abs(provider - requested)
    if delta == 0:
        return 20
    if delta == 1:
        return 8
    return -25


def best_movie_match(
    items: list[VodStream],
    title: str,
    year: int | None,
    imdb: str | None,
    tmdb: str | None,
) -> VodStream | None:
    """Pick the VOD item for a movie: tmdb id, imdb id, then fuzzy name with year adjustment."""
    playable = [item for item in items if item.stream_id is not None]
    if tmdb:
        for item in playable:
            if normalize_tmdb_id(item.tmdb) == tmdb:
                return item
    if imdb:
        for item in playable:
            if normalize_imdb_id(item.imdb) == imdb:
                return item

    normalized_title = normalize_lookup_text(title)
    if not normalized_title:
        return None
    requested_year = year if year is not None else parse_year(title)

    best: VodStream | None = None
    best_score = 0
    for item in playable:
        name = (item.name or "").strip()
        if not name:
            continue
        score = score_name_match(name, normalized_title)
        if score <= 0:
            continue
        score += _year_adjust(requested_year, parse_year(item.year or name))
        if best is None or score > best_score:
            best, best_score = item, score
    return best


def best_episode_item(
    items: list[VodStream],
    title: str,
    season: int,
    episode: int,
    imdb: str | None,
    tmdb: str | None,
) -> VodStream | None:
    """
    Find an episode among VOD items named like "Show S02E05" or "Show - 5".

    Episode-only names need an id match once the requested season is past 1.
    """
    normalized_title = normalize_lookup_text(title)
    best: VodStream | None = None
    best_score = 0
    for item in items:
        if item.stream_id is None:
            continue
        name = (item.name or "").strip()
        if not name:
            continue
        parsed = extract_season_episode(name)
        episode_only = extract_episode_only(name) if parsed is None else None
        exact = parsed == (season, episode)
        if not exact and episode_only != episode:
            continue

        imdb_score = 10_000 if imdb and normalize_imdb_id(item.imdb) == imdb else 0
        tmdb_score = 9_500 if tmdb and normalize_tmdb_id(item.tmdb) == tmdb else 0
        title_score = 0
        if normalized_title:
            title_score = max(
                score_name_match(name, normalized_title),
                loose_series_title_score(name, normalized_title),
            )
        if not exact and season > 1 and not imdb_score and not tmdb_score:
            continue
        if not imdb_score and not tmdb_score and title_score <= 0:
            continue

        total = imdb_score + tmdb_score + title_score
        if best is None or total > best_score:
            best, best_score = item, total
    return best


class VodSourceFinder:
    """Looks up movie and episode streams for one provider account."""

    def __init__(self, catalog: ProviderCatalog, resolver: SeriesResolver):
        self._catalog = catalog
        self._resolver = resolver

    async def find_movie_source(
        self,
        credentials: ProviderCredentials,
        title: str,
        *,
        year: int | None = None,
        imdb_id: str | None = None,
        tmdb_id: str | int | None = None,
        allow_network: bool = True,
    ) -> StreamSource | None:
        items = await self._catalog.get_vod_streams(
            credentials, timeout=VOD_FETCH_TIMEOUT, allow_network=allow_network
        )
        if not items:
            return None

        tmdb = normalize_tmdb_id(tmdb_id)
        imdb = normalize_imdb_id(imdb_id)
        match = best_movie_match(items, title, year, imdb, tmdb)
        if match is None:
            logger.info("No VOD match for movie %r", title)
            return None

        name = (match.name or "").strip()
        return StreamSource(
            title=name or title or tmdb or imdb or "",
            label=VOD_LABEL,
            quality=infer_quality(name),
            url=credentials.movie_stream_url(match.stream_id, match.container_extension),
        )

    async def find_episode_source(
        self,
        provider_key: str,
        credentials: ProviderCredentials,
        title: str,
        season: int,
        episode: int,
        *,
        imdb_id: str | None = None,
        tmdb_id: str | int | None = None,
        allow_network: bool = True,
    ) -> StreamSource | None:
        """
        Resolve an episode stream.

        Returns:
            Series stream from the resolver, else an episode-named VOD item,
            else None
        """
        tmdb = normalize_tmdb_id(tmdb_id)
        imdb = normalize_imdb_id(imdb_id)
        if not normalize_lookup_text(title) and not tmdb and not imdb:
            return None

        resolved = await self._resolver.resolve_episode(
            provider_key,
            credentials,
            title,
            season,
            episode,
            tmdb_id=tmdb,
            imdb_id=imdb,
            year=parse_year(title),
            allow_network=allow_network,
        )
        if resolved is not None:
            return StreamSource(
                title=f"{title} S{season}E{episode}",
                label=SERIES_LABEL,
                quality=infer_quality(title),
                url=credentials.series_stream_url(resolved.stream_id, resolved.container_extension),
            )

        items = await self._catalog.get_vod_streams(
            credentials, timeout=VOD_FETCH_TIMEOUT, allow_network=allow_network
        )
        match = best_episode_item(items, title, season, episode, imdb, tmdb)
        if match is None:
            return None
        name = (match.name or "").strip()
        return StreamSource(
            title=name or f"{title} S{season}E{episode}",
            label=EPISODE_LABEL,
            quality=infer_quality(name),
            url=credentials.movie_stream_url(match.stream_id, match.container_extension),
        )
