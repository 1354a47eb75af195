"""
Provider Catalog

Memory caches over the provider's on-demand listings: raw series and VOD lists
(6h per account) and a small LRU of per-series episode lists. Concurrent
requests for the same listing share one network call.
"""
import logging
import time

import httpx

from iptv_service.errors import TransportError
from iptv_service.services.iptv_types import ProviderCredentials, SeriesEpisode
from iptv_service.services.provider_client import SeriesItem, VodStream, XtreamClient
from iptv_service.utils.lru_cache import LruCache
from iptv_service.utils.single_flight import SingleFlight


logger = logging.getLogger(__name__)

LIST_TTL_SECONDS = 6 * 60 * 60
SERIES_EPISODES_CAPACITY = 8


class ProviderCatalog:
    """Cached access to get_series, get_vod_streams and get_series_info."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        list_ttl_seconds: float = LIST_TTL_SECONDS,
        episodes_capacity: int = SERIES_EPISODES_CAPACITY,
    ):
        self._http = http_client
        self._series_lists: LruCache[list[SeriesItem]] = LruCache(16, list_ttl_seconds)
        self._vod_lists: LruCache[list[VodStream]] = LruCache(16, list_ttl_seconds)
        self._episodes: LruCache[list[SeriesEpisode]] = LruCache(episodes_capacity, list_ttl_seconds)
        self._flights: SingleFlight = SingleFlight()
        self.network_calls = 0

    def _client(self, credentials: ProviderCredentials) -> XtreamClient:
        return XtreamClient(self._http, credentials)

    async def get_series(
        self,
        credentials: ProviderCredentials,
        *,
        timeout: float | None = None,
        allow_network: bool = True,
    ) -> list[SeriesItem]:
        """
        Raw series list for an account.

        Returns:
            Cached or freshly fetched items; empty on failure or when the
            network is disallowed and nothing is cached
        """
        key = credentials.cache_key
        cached = self._series_lists.get(key)
        if cached is not None or not allow_network:
            return cached or []

        async def load() -> list[SeriesItem]:
            self.network_calls += 1
            items = await self._client(credentials).get_series(timeout)
            if items:
                self._series_lists.put(key, items)
            return items

        return await self._guarded(("series", key), load, "series list")

    async def get_vod_streams(
        self,
        credentials: ProviderCredentials,
        *,
        timeout: float | None = None,
        allow_network: bool = True,
    ) -> list[VodStream]:
        key = credentials.cache_key
        cached = self._vod_lists.get(key)
        if cached is not None or not allow_network:
            return cached or []

        async def load() -> list[VodStream]:
            self.network_calls += 1
            items = await self._client(credentials).get_vod_streams(timeout)
            if items:
                self._vod_lists.put(key, items)
            return items

        return await self._guarded(("vod", key), load, "VOD list")

    async def get_series_episodes(
        self,
        credentials: ProviderCredentials,
        series_id: int,
        *,
        timeout: float | None = None,
        allow_network: bool = True,
    ) -> list[SeriesEpisode]:
        key = f"{credentials.cache_key}|{series_id}"
        cached = self._episodes.get(key)
        if cached is not None or not allow_network:
            return cached or []

        async def load() -> list[SeriesEpisode]:
            self.network_calls += 1
            episodes = await self._client(credentials).get_series_episodes(series_id, timeout)
            if episodes:
                self._episodes.put(key, episodes)
            return episodes

        return await self._guarded(("episodes", key), load, f"series {series_id} episodes")

    async def _guarded(self, flight_key, load, what: str) -> list:
        started = time.monotonic()
        try:
            items = await self._flights.run(flight_key, load)
        except TransportError as exc:
            logger.warning("Failed to fetch %s: %s", what, exc)
            return []
        logger.debug("Fetched %s: %s items in %.2fs", what, len(items), time.monotonic() - started)
        return items

    def invalidate(self) -> None:
        self._series_lists.clear()
        self._vod_lists.clear()
        self._episodes.clear()
