import httpx
import pytest
import pytest_asyncio

from iptv_service.services.provider_catalog import ProviderCatalog
from iptv_service.services.provider_client import VodStream
from iptv_service.services.resolver_store import ResolverStore
from iptv_service.services.series_resolver import SeriesResolver
from iptv_service.services.vod_service import (
    EPISODE_LABEL,
    SERIES_LABEL,
    VOD_LABEL,
    VodSourceFinder,
    best_episode_item,
    best_movie_match,
)
from tests.conftest import make_client


MOVIES = [
    {"stream_id": 1, "name": "Dune (2021) 4K", "container_extension": "mkv", "tmdb": "438631"},
    {"stream_id": "2", "name": "Dune (1984)", "year": "1984"},
    {"stream_id": 3, "name": "Dune Part Two 1080p", "imdb": "tt15239678"},
    {"stream_id": None, "name": "Dune Broken"},
]

EPISODE_ITEMS = [
    {"stream_id": 20, "name": "Severance S02E03"},
    {"stream_id": 21, "name": "Severance - 3"},
    {"stream_id": 22, "name": "Other Show S02E03"},
]


def _vod(items) -> list[VodStream]:
    return [VodStream.model_validate(item) for item in items]


class TestBestMovieMatch:
    def test_tmdb_then_imdb(self):
        items = _vod(MOVIES)
        assert best_movie_match(items, "anything", None, None, "438631").stream_id == 1
        assert best_movie_match(items, "anything", None, "tt15239678", None).stream_id == 3

    def test_year_steers_fuzzy_match(self):
        items = _vod(MOVIES)
        assert best_movie_match(items, "Dune", 1984, None, None).stream_id == 2
        assert best_movie_match(items, "Dune", 2021, None, None).stream_id == 1

    def test_year_taken_from_title(self):
        assert best_movie_match(_vod(MOVIES), "Dune (1984)", None, None, None).stream_id == 2

    def test_no_match(self):
        assert best_movie_match(_vod(MOVIES), "Arrival", None, None, None) is None
        assert best_movie_match(_vod(MOVIES), "", None, None, None) is None


class TestBestEpisodeItem:
    def test_exact_season_episode_with_title(self):
        match = best_episode_item(_vod(EPISODE_ITEMS), "Severance", 2, 3, None, None)
        assert match.stream_id == 20

    def test_episode_only_names_in_first_season(self):
        match = best_episode_item(_vod(EPISODE_ITEMS), "Severance", 1, 3, None, None)
        assert match.stream_id == 21

    def test_unrelated_title_is_rejected(self):
        assert best_episode_item(_vod(EPISODE_ITEMS), "Andor", 2, 3, None, None) is None


class ProviderStub:
    def __init__(self, series=None, episodes=None):
        self.series = series or []
        self.episodes = episodes or {}
        self.actions: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        action = request.url.params.get("action")
        self.actions.append(action)
        if action == "get_vod_streams":
            return httpx.Response(200, json=MOVIES + EPISODE_ITEMS)
        if action == "get_series":
            return httpx.Response(200, json=self.series)
        if action == "get_series_info":
            return httpx.Response(200, json=self.episodes)
        return httpx.Response(404)


@pytest_asyncio.fixture
async def finder_factory(database):
    clients = []

    def build(provider: ProviderStub) -> VodSourceFinder:
        client = make_client(provider)
        clients.append(client)
        catalog = ProviderCatalog(client)
        return VodSourceFinder(catalog, SeriesResolver(catalog, ResolverStore()))

    yield build
    for client in clients:
        await client.aclose()


class TestVodSourceFinder:
    @pytest.mark.asyncio
    async def test_movie_source(self, finder_factory, credentials):
        provider = ProviderStub()
        finder = finder_factory(provider)

        source = await finder.find_movie_source(credentials, "Dune", year=2021)
        assert source.label == VOD_LABEL
        assert source.quality == "4K"
        assert source.url == "http://provider.test/movie/u/p/1.mkv"

        await finder.find_movie_source(credentials, "Dune", year=1984)
        assert provider.actions.count("get_vod_streams") == 1

    @pytest.mark.asyncio
    async def test_movie_source_offline_without_cache(self, finder_factory, credentials):
        provider = ProviderStub()
        finder = finder_factory(provider)
        assert await finder.find_movie_source(credentials, "Dune", allow_network=False) is None
        assert provider.actions == []

    @pytest.mark.asyncio
    async def test_episode_from_series_resolver(self, finder_factory, credentials):
        provider = ProviderStub(
            series=[{"series_id": 10, "name": "Severance"}],
            episodes={"episodes": {"2": [{"id": 77, "episode_num": 3, "container_extension": "mkv"}]}},
        )
        finder = finder_factory(provider)

        source = await finder.find_episode_source("acct", credentials, "Severance", 2, 3)
        assert source.label == SERIES_LABEL
        assert source.title == "Severance S2E3"
        assert source.url == "http://provider.test/series/u/p/77.mkv"

    @pytest.mark.asyncio
    async def test_episode_falls_back_to_vod_items(self, finder_factory, credentials):
        finder = finder_factory(ProviderStub())

        source = await finder.find_episode_source("acct", credentials, "Severance", 2, 3)
        assert source.label == EPISODE_LABEL
        assert source.title == "Severance S02E03"
        assert source.url == "http://provider.test/movie/u/p/20.mp4"

    @pytest.mark.asyncio
    async def test_blank_request_is_none(self, finder_factory, credentials):
        provider = ProviderStub()
        finder = finder_factory(provider)
        assert await finder.find_episode_source("acct", credentials, "  ", 1, 1) is None
        assert provider.actions == []
