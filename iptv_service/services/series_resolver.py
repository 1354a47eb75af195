"""
Series Resolver

Maps a show title (plus optional TMDB/IMDB ids and year) and a season/episode
pair to a concrete episode stream on the provider.

Lookup tiers, cheapest first:
    1. resolved-episode cache (memory LRU, then persisted, 24h);
    2. series bindings learned from earlier resolutions;
    3. catalog index (memory, persisted, network) scored into candidates,
       whose episode lists are probed for an exact episode match.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass

from iptv_service.services.iptv_types import (
    CatalogEntry,
    CatalogIndex,
    ProviderCredentials,
    ResolvedEpisode,
    SeriesEpisode,
)
from iptv_service.services.provider_catalog import ProviderCatalog
from iptv_service.services.resolver_store import (
    KIND_BINDING,
    KIND_CATALOG,
    KIND_RESOLVED,
    KIND_SERIES_INFO,
    ResolverStore,
)
from iptv_service.utils.lru_cache import LruCache
from iptv_service.utils.single_flight import SingleFlight
from iptv_service.utils.text_matching import (
    extract_title_tokens,
    normalize_imdb_id,
    normalize_lookup_text,
    normalize_tmdb_id,
    parse_year,
    to_canonical_title_key,
)


logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60
CATALOG_TTL_SECONDS = DAY_SECONDS
RESOLVED_TTL_SECONDS = DAY_SECONDS
SERIES_INFO_TTL_SECONDS = DAY_SECONDS
RESOLVED_CAPACITY = 512
BINDING_CAPACITY = 2048
SERIES_INFO_CAPACITY = 50
CATALOG_FETCH_TIMEOUT = 8.0
SERIES_INFO_FETCH_TIMEOUT = 5.0

BINDING_CONFIDENCE = 0.995
METHOD_BINDING = "series_binding"
METHOD_TMDB = "tmdb_id"
METHOD_IMDB = "imdb_id"
METHOD_CANONICAL = "title_canonical"
METHOD_TOKENS = "title_tokens"
SINGLE_PROBE_METHODS = frozenset({METHOD_TMDB, METHOD_IMDB, METHOD_CANONICAL})

STORE_LIMITS = {
    KIND_RESOLVED: RESOLVED_CAPACITY,
    KIND_BINDING: BINDING_CAPACITY,
    KIND_CATALOG: 16,
    KIND_SERIES_INFO: 1000,
}


@dataclass(slots=True, frozen=True)
class SeriesCandidate:
    entry: CatalogEntry
    confidence: float
    method: str
    base_score: int


@dataclass(slots=True, frozen=True)
class EpisodeHit:
    episode: SeriesEpisode
    score: int


# Index building and scoring


def build_catalog_entry(series_id: int, name: str, tmdb: str | None, imdb: str | None) -> CatalogEntry | None:
    name = (name or "").strip()
    if not name:
        return None
    normalized = normalize_lookup_text(name)
    return CatalogEntry(
        series_id=series_id,
        name=name,
        normalized_name=normalized,
        canonical_title_key=to_canonical_title_key(normalized),
        title_tokens=extract_title_tokens(normalized),
        tmdb=normalize_tmdb_id(tmdb),
        imdb=normalize_imdb_id(imdb),
        year=parse_year(name),
    )


def build_catalog_index(created_at: float, entries: Iterable[CatalogEntry]) -> CatalogIndex:
    """Group entries by tmdb id, imdb id, canonical title and title token."""
    entries = tuple(entries)
    by_tmdb: dict[str, list[CatalogEntry]] = defaultdict(list)
    by_imdb: dict[str, list[CatalogEntry]] = defaultdict(list)
    by_title: dict[str, list[CatalogEntry]] = defaultdict(list)
    by_token: dict[str, dict[int, CatalogEntry]] = defaultdict(dict)

    for entry in entries:
        if entry.tmdb:
            by_tmdb[entry.tmdb].append(entry)
        if entry.imdb:
            by_imdb[entry.imdb].append(entry)
        if entry.canonical_title_key:
            by_title[entry.canonical_title_key].append(entry)
        for token in entry.title_tokens:
            by_token[token].setdefault(entry.series_id, entry)

    return CatalogIndex(
        created_at=created_at,
        entries=entries,
        by_tmdb={k: tuple(v) for k, v in by_tmdb.items()},
        by_imdb={k: tuple(v) for k, v in by_imdb.items()},
        by_canonical_title={k: tuple(v) for k, v in by_title.items()},
        by_token={k: tuple(v.values()) for k, v in by_token.items()},
    )


def _year_delta(requested: int | None, entry_year: int | None) -> int:
    if requested is None or entry_year is None:
        return 0
    return abs(requested - entry_year)


def build_candidates(
    catalog: CatalogIndex,
    normalized_show: str,
    tmdb: str | None,
    imdb: str | None,
    year: int | None,
) -> list[SeriesCandidate]:
    """
    Score catalog entries against a request.

    Returns:
        Candidates sorted by confidence, then base score, both descending
    """
    out: dict[int, SeriesCandidate] = {}

    if tmdb:
        for entry in catalog.by_tmdb.get(tmdb, ()):
            out[entry.series_id] = SeriesCandidate(entry, 0.98, METHOD_TMDB, 20_000)
    if imdb:
        for entry in catalog.by_imdb.get(imdb, ()):
            previous = out.get(entry.series_id)
            if previous is None or previous.confidence < 0.99:
                out[entry.series_id] = SeriesCandidate(entry, 0.99, METHOD_IMDB, 21_000)

    if normalized_show:
        canonical = to_canonical_title_key(normalized_show)
        if canonical:
            for entry in catalog.by_canonical_title.get(canonical, ()):
                delta = _year_delta(year, entry.year)
                if delta > 1:
                    continue
                total, confidence = (18_000, 0.93) if delta == 0 else (17_500, 0.90)
                existing = out.get(entry.series_id)
                if existing is None or total > existing.base_score:
                    out[entry.series_id] = SeriesCandidate(entry, confidence, METHOD_CANONICAL, total)

        query_tokens = extract_title_tokens(normalized_show)
        if query_tokens:
            pool: dict[int, CatalogEntry] = {}
            for token in query_tokens:
                for entry in catalog.by_token.get(token, ()):
                    pool[entry.series_id] = entry

            for entry in pool.values():
                overlap = len(entry.title_tokens & query_tokens)
                if overlap <= 0:
                    continue
                coverage = overlap / len(query_tokens)
                if len(query_tokens) == 1:
                    accepted = coverage >= 1.0
                else:
                    accepted = overlap >= 2 or coverage >= 0.6
                if not accepted:
                    continue
                delta = _year_delta(year, entry.year)
                if delta > 1:
                    continue
                year_score = 120 if delta == 0 else 70
                total = int(coverage * 1000) + overlap * 180 + year_score
                if coverage >= 1.0 and overlap >= 2:
                    confidence = 0.86
                elif coverage >= 0.8:
                    confidence = 0.82
                else:
                    confidence = 0.76
                existing = out.get(entry.series_id)
                if existing is None or total > existing.base_score:
                    out[entry.series_id] = SeriesCandidate(entry, confidence, METHOD_TOKENS, total)

    return sorted(out.values(), key=lambda c: (c.confidence, c.base_score), reverse=True)


def match_episode(episodes: list[SeriesEpisode], season: int, episode: int) -> EpisodeHit | None:
    """
    Find the requested episode in a series' episode list.

    An exact season/episode pair scores 1000. If the requested season exists
    but lacks the episode, there is no match. Providers that flatten
    everything into season 0/1 match on episode number alone, and only when
    exactly one episode carries it (score 640).
    """
    if not episodes:
        return None
    for item in episodes:
        if item.season == season and item.episode == episode:
            return EpisodeHit(item, 1000)
    if any(item.season == season for item in episodes):
        return None
    same_episode = [item for item in episodes if item.episode == episode]
    if all(item.season <= 1 for item in episodes) and len(same_episode) == 1:
        return EpisodeHit(same_episode[0], 640)
    return None


def build_resolved_key(
    provider_key: str,
    tmdb: str | None,
    imdb: str | None,
    normalized_title: str,
    season: int,
    episode: int,
) -> str:
    return "|".join([provider_key, tmdb or "", imdb or "", normalized_title, str(season), str(episode)])


def build_binding_keys(provider_key: str, tmdb: str | None, imdb: str | None, normalized_show: str) -> list[str]:
    keys = []
    if tmdb:
        keys.append(f"{provider_key}|tmdb:{tmdb}")
    if imdb:
        keys.append(f"{provider_key}|imdb:{imdb}")
    canonical = to_canonical_title_key(normalized_show)
    if canonical:
        keys.append(f"{provider_key}|title:{canonical}")
    return list(dict.fromkeys(keys))


# Persistence codecs


def _entry_to_payload(entry: CatalogEntry) -> dict:
    return {
        "series_id": entry.series_id,
        "name": entry.name,
        "tmdb": entry.tmdb,
        "imdb": entry.imdb,
    }


def _entry_from_payload(data: dict) -> CatalogEntry | None:
    # Derived fields are rebuilt so normalization changes apply to old payloads.
    try:
        return build_catalog_entry(int(data["series_id"]), data.get("name") or "", data.get("tmdb"), data.get("imdb"))
    except (KeyError, TypeError, ValueError):
        return None


def _episode_to_payload(item: SeriesEpisode) -> dict:
    return {
        "id": item.id,
        "season": item.season,
        "episode": item.episode,
        "title": item.title,
        "container_extension": item.container_extension,
    }


def _episode_from_payload(data: dict) -> SeriesEpisode | None:
    try:
        return SeriesEpisode(
            id=int(data["id"]),
            season=int(data["season"]),
            episode=int(data["episode"]),
            title=str(data.get("title") or ""),
            container_extension=data.get("container_extension"),
        )
    except (KeyError, TypeError, ValueError):
        return None


def _resolved_to_payload(resolved: ResolvedEpisode) -> dict:
    return {
        "stream_id": resolved.stream_id,
        "series_id": resolved.series_id,
        "confidence": resolved.confidence,
        "method": resolved.method,
        "resolved_at": resolved.resolved_at,
        "container_extension": resolved.container_extension,
    }


def _resolved_from_payload(data: dict) -> ResolvedEpisode | None:
    try:
        return ResolvedEpisode(
            stream_id=int(data["stream_id"]),
            series_id=int(data["series_id"]),
            confidence=float(data["confidence"]),
            method=str(data["method"]),
            resolved_at=float(data["resolved_at"]),
            container_extension=data.get("container_extension"),
        )
    except (KeyError, TypeError, ValueError):
        return None


class SeriesResolver:
    """Resolves show/season/episode requests to provider episode streams."""

    def __init__(
        self,
        catalog: ProviderCatalog,
        store: ResolverStore,
        *,
        clock=time.time,
    ):
        self._catalog = catalog
        self._store = store
        self._clock = clock
        self._resolved: LruCache[ResolvedEpisode] = LruCache(RESOLVED_CAPACITY, RESOLVED_TTL_SECONDS, clock=clock)
        self._bindings: LruCache[int] = LruCache(BINDING_CAPACITY, touch_on_read=False, clock=clock)
        self._series_info: LruCache[list[SeriesEpisode]] = LruCache(SERIES_INFO_CAPACITY, clock=clock)
        self._catalogs: dict[str, CatalogIndex] = {}
        self._series_flights: SingleFlight = SingleFlight()

    async def resolve_episode(
        self,
        provider_key: str,
        credentials: ProviderCredentials,
        show_title: str,
        season: int,
        episode: int,
        *,
        tmdb_id: str | int | None = None,
        imdb_id: str | None = None,
        year: int | None = None,
        allow_network: bool = True,
    ) -> ResolvedEpisode | None:
        """
        Resolve one episode.

        Returns:
            ResolvedEpisode, or None when nothing matched (never raises for a miss)
        """
        normalized_show = normalize_lookup_text(show_title)
        tmdb = normalize_tmdb_id(tmdb_id)
        imdb = normalize_imdb_id(imdb_id)
        if not normalized_show and not tmdb and not imdb:
            return None

        cache_key = build_resolved_key(provider_key, tmdb, imdb, normalized_show, season, episode)
        cached = await self._read_resolved(cache_key)
        if cached is not None:
            logger.debug("Resolved cache hit for %s S%sE%s", show_title, season, episode)
            return cached

        binding_keys = build_binding_keys(provider_key, tmdb, imdb, normalized_show)
        bound_series = await self._read_binding(binding_keys)
        if bound_series is not None:
            episodes = await self._load_series_info(provider_key, credentials, bound_series, allow_network)
            hit = match_episode(episodes, season, episode)
            if hit is not None:
                resolved = ResolvedEpisode(
                    stream_id=hit.episode.id,
                    series_id=bound_series,
                    confidence=BINDING_CONFIDENCE,
                    method=METHOD_BINDING,
                    resolved_at=self._clock(),
                    container_extension=hit.episode.container_extension,
                )
                await self._remember(cache_key, binding_keys, resolved)
                return resolved
            logger.debug("Series binding %s has no S%sE%s", bound_series, season, episode)

        index = await self._load_catalog(provider_key, credentials, allow_network=allow_network)
        if not index.entries:
            return None

        candidates = build_candidates(index, normalized_show, tmdb, imdb, year)
        if not candidates:
            logger.info("No catalog candidates for %r", show_title)
            return None

        probe = candidates[:1] if candidates[0].method in SINGLE_PROBE_METHODS else candidates[:2]
        episode_lists = await asyncio.gather(*(
            self._load_series_info(provider_key, credentials, c.entry.series_id, allow_network) for c in probe
        ))
        hits = []
        for candidate, episodes in zip(probe, episode_lists):
            hit = match_episode(episodes, season, episode)
            if hit is not None:
                hits.append((candidate, hit))
        if not hits:
            logger.info("No episode S%sE%s among %s probed series for %r", season, episode, len(probe), show_title)
            return None

        candidate, hit = max(hits, key=lambda pair: pair[0].confidence * 1000 + pair[1].score)
        resolved = ResolvedEpisode(
            stream_id=hit.episode.id,
            series_id=candidate.entry.series_id,
            confidence=candidate.confidence,
            method=candidate.method,
            resolved_at=self._clock(),
            container_extension=hit.episode.container_extension,
        )
        await self._remember(cache_key, binding_keys, resolved)
        logger.info(
            "Resolved %r S%sE%s -> series %s stream %s (%s, %.3f)",
            show_title,
            season,
            episode,
            resolved.series_id,
            resolved.stream_id,
            resolved.method,
            resolved.confidence,
        )
        return resolved

    async def prefetch_series_info(
        self,
        provider_key: str,
        credentials: ProviderCredentials,
        show_title: str,
        *,
        tmdb_id: str | int | None = None,
        imdb_id: str | None = None,
        year: int | None = None,
    ) -> None:
        """Warm episode lists for the best candidates of a show."""
        normalized_show = normalize_lookup_text(show_title)
        tmdb = normalize_tmdb_id(tmdb_id)
        imdb = normalize_imdb_id(imdb_id)
        if not normalized_show and not tmdb and not imdb:
            return

        index = await self._load_catalog(provider_key, credentials, allow_network=True)
        if not index.entries:
            return
        candidates = build_candidates(index, normalized_show, tmdb, imdb, year)
        if not candidates:
            return
        probe = candidates[:1] if candidates[0].confidence >= 0.9 else candidates[:2]
        await asyncio.gather(*(
            self._load_series_info(provider_key, credentials, c.entry.series_id, True) for c in probe
        ))

    async def warm_catalog(self, provider_key: str, credentials: ProviderCredentials) -> CatalogIndex:
        return await self._load_catalog(provider_key, credentials, allow_network=True)

    async def refresh_catalog(self, provider_key: str, credentials: ProviderCredentials) -> CatalogIndex:
        return await self._load_catalog(provider_key, credentials, allow_network=True, force_refresh=True)

    def invalidate(self) -> None:
        """Drop every memory tier; persisted tiers are keyed by provider and stay valid."""
        self._resolved.clear()
        self._bindings.clear()
        self._series_info.clear()
        self._catalogs.clear()

    # Tiers

    async def _read_resolved(self, key: str) -> ResolvedEpisode | None:
        hit = self._resolved.get(key)
        if hit is not None:
            return hit
        stored = await self._store.get(KIND_RESOLVED, key)
        if stored is None:
            return None
        resolved = _resolved_from_payload(stored[0])
        if resolved is None or self._clock() - resolved.resolved_at > RESOLVED_TTL_SECONDS:
            return None
        self._resolved.put(key, resolved, stored_at=resolved.resolved_at)
        return resolved

    async def _read_binding(self, keys: list[str]) -> int | None:
        for key in keys:
            series_id = self._bindings.get(key)
            if series_id is not None:
                return series_id
        for key in keys:
            stored = await self._store.get(KIND_BINDING, key)
            if stored is None:
                continue
            try:
                series_id = int(stored[0]["series_id"])
            except (KeyError, TypeError, ValueError):
                continue
            self._bindings.put(key, series_id)
            return series_id
        return None

    async def _remember(self, cache_key: str, binding_keys: list[str], resolved: ResolvedEpisode) -> None:
        self._resolved.put(cache_key, resolved, stored_at=resolved.resolved_at)
        await self._store.put(KIND_RESOLVED, cache_key, _resolved_to_payload(resolved), resolved.resolved_at)
        for key in binding_keys:
            self._bindings.put(key, resolved.series_id)
            await self._store.put(KIND_BINDING, key, {"series_id": resolved.series_id})

    async def _load_catalog(
        self,
        provider_key: str,
        credentials: ProviderCredentials,
        *,
        allow_network: bool,
        force_refresh: bool = False,
    ) -> CatalogIndex:
        now = self._clock()
        in_memory = self._catalogs.get(provider_key)
        if not force_refresh and in_memory is not None and now - in_memory.created_at < CATALOG_TTL_SECONDS:
            return in_memory

        stale: CatalogIndex | None = None
        if not force_refresh:
            stored = await self._store.get(KIND_CATALOG, provider_key)
            if stored is not None:
                persisted = self._decode_catalog(stored[0])
                if persisted is not None and persisted.entries:
                    if now - persisted.created_at < CATALOG_TTL_SECONDS:
                        self._catalogs[provider_key] = persisted
                        return persisted
                    stale = persisted

        if not allow_network:
            if in_memory is not None:
                return in_memory
            if stale is not None:
                self._catalogs[provider_key] = stale
                return stale
            return CatalogIndex(created_at=now)

        try:
            items = await asyncio.wait_for(
                self._catalog.get_series(credentials, timeout=CATALOG_FETCH_TIMEOUT),
                timeout=CATALOG_FETCH_TIMEOUT,
            )
        except asyncio.TimeoutError:
            logger.warning("Series catalog fetch exceeded %ss", CATALOG_FETCH_TIMEOUT)
            items = []

        entries = [
            entry for entry in (
                build_catalog_entry(item.series_id, item.name or "", item.tmdb, item.imdb)
                for item in items if item.series_id is not None
            )
            if entry is not None
        ]
        if not entries and stale is not None:
            logger.info("Series catalog empty; using stale persisted copy")
            self._catalogs[provider_key] = stale
            return stale

        index = build_catalog_index(now, entries)
        self._catalogs[provider_key] = index
        if entries:
            await self._store.put(
                KIND_CATALOG,
                provider_key,
                {"created_at": now, "entries": [_entry_to_payload(e) for e in entries]},
                now,
            )
            logger.info("Indexed %s series for provider catalog", len(entries))
        return index

    @staticmethod
    def _decode_catalog(payload) -> CatalogIndex | None:
        if not isinstance(payload, dict):
            return None
        try:
            created_at = float(payload["created_at"])
        except (KeyError, TypeError, ValueError):
            return None
        entries = [e for e in (_entry_from_payload(d) for d in payload.get("entries") or []) if e is not None]
        return build_catalog_index(created_at, entries)

    async def _load_series_info(
        self,
        provider_key: str,
        credentials: ProviderCredentials,
        series_id: int,
        allow_network: bool,
    ) -> list[SeriesEpisode]:
        key = f"{provider_key}|{series_id}"
        cached = self._series_info.get(key)
        if cached:
            return cached

        stored = await self._store.get(KIND_SERIES_INFO, key)
        if stored is not None and self._clock() - stored[1] < SERIES_INFO_TTL_SECONDS:
            episodes = [e for e in (_episode_from_payload(d) for d in stored[0] or []) if e is not None]
            if episodes:
                self._series_info.put(key, episodes)
                return episodes

        if not allow_network:
            return []
        return await self._series_flights.run(key, lambda: self._fetch_series_info(key, credentials, series_id))

    async def _fetch_series_info(
        self,
        key: str,
        credentials: ProviderCredentials,
        series_id: int,
    ) -> list[SeriesEpisode]:
        try:
            episodes = await asyncio.wait_for(
                self._catalog.get_series_episodes(credentials, series_id, timeout=SERIES_INFO_FETCH_TIMEOUT),
                timeout=SERIES_INFO_FETCH_TIMEOUT,
            )
        except asyncio.TimeoutError:
            logger.warning("Episode list for series %s exceeded %ss", series_id, SERIES_INFO_FETCH_TIMEOUT)
            return []
        if episodes:
            self._series_info.put(key, episodes)
            await self._store.put(KIND_SERIES_INFO, key, [_episode_to_payload(e) for e in episodes])
        return episodes
