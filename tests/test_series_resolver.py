import httpx
import pytest
import pytest_asyncio

from iptv_service.services.iptv_types import SeriesEpisode
from iptv_service.services.provider_catalog import ProviderCatalog
from iptv_service.services.provider_client import parse_series_episodes
from iptv_service.services.resolver_store import KIND_RESOLVED, ResolverStore
from iptv_service.services.series_resolver import (
    METHOD_BINDING,
    METHOD_CANONICAL,
    METHOD_TMDB,
    METHOD_TOKENS,
    STORE_LIMITS,
    SeriesResolver,
    build_candidates,
    build_catalog_entry,
    build_catalog_index,
    match_episode,
)
from tests.conftest import make_client


SERIES = [
    {"series_id": 10, "name": "Breaking Bad (2008)", "tmdb": "1396"},
    {"series_id": 11, "name": "Breaking Bad Documentary"},
    {"series_id": 12, "name": "The Office (US)", "imdb": "tt0386676"},
]

EPISODES = {
    "10": {"episodes": {
        "1": [
            {"id": "501", "episode_num": 1, "title": "Pilot", "container_extension": "mkv"},
            {"id": "502", "episode_num": 2, "title": "Cat's in the Bag"},
        ],
        "2": [{"id": "601", "episode_num": 1, "title": "Seven Thirty-Seven"}],
    }},
    "11": {"episodes": []},
    "12": {"episodes": [
        {"id": 901, "episode_num": 1, "season": 1},
        {"id": 902, "episode_num": 2, "season": 1},
        {"id": 903, "episode_num": 3, "season": 1},
    ]},
}


class ProviderStub:
    """Mock player_api.php recording each action"""

    def __init__(self):
        self.actions: list[tuple[str, str | None]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        action = request.url.params.get("action")
        series_id = request.url.params.get("series_id")
        self.actions.append((action, series_id))
        if action == "get_series":
            return httpx.Response(200, json=SERIES)
        if action == "get_series_info":
            return httpx.Response(200, json=EPISODES.get(series_id, {}))
        return httpx.Response(404)


@pytest.fixture
def provider():
    return ProviderStub()


@pytest_asyncio.fixture
async def http_client(provider):
    async with make_client(provider) as client:
        yield client


def _resolver(http_client) -> SeriesResolver:
    return SeriesResolver(ProviderCatalog(http_client), ResolverStore(max_entries=STORE_LIMITS))


def _index():
    entries = [build_catalog_entry(s["series_id"], s["name"], s.get("tmdb"), s.get("imdb")) for s in SERIES]
    return build_catalog_index(0.0, entries)


class TestCandidates:
    def test_tmdb_match_ranks_first(self):
        candidates = build_candidates(_index(), "breaking bad", "1396", None, None)
        assert candidates[0].entry.series_id == 10
        assert candidates[0].method == METHOD_TMDB
        assert candidates[0].confidence == 0.98

    def test_canonical_title_beats_token_overlap(self):
        candidates = build_candidates(_index(), "breaking bad", None, None, 2008)
        assert [(c.entry.series_id, c.method) for c in candidates] == [(10, METHOD_CANONICAL), (11, METHOD_TOKENS)]
        assert candidates[0].confidence == 0.93

    def test_year_off_by_more_than_one_is_excluded(self):
        candidates = build_candidates(_index(), "breaking bad", None, None, 2015)
        assert [c.entry.series_id for c in candidates] == [11]

    def test_single_token_query_needs_full_coverage(self):
        assert build_candidates(_index(), "breaking", None, None, None)
        assert build_candidates(_index(), "breaking news", None, None, None) == []


class TestMatchEpisode:
    EPISODES = [SeriesEpisode(1, 1, 1, "a"), SeriesEpisode(2, 1, 2, "b"), SeriesEpisode(3, 2, 1, "c")]

    def test_exact(self):
        assert match_episode(self.EPISODES, 2, 1).episode.id == 3

    def test_existing_season_without_episode_is_a_miss(self):
        assert match_episode(self.EPISODES, 1, 9) is None

    def test_flattened_season_matches_unique_episode(self):
        flat = [SeriesEpisode(1, 1, 1, "a"), SeriesEpisode(2, 1, 2, "b")]
        hit = match_episode(flat, 3, 2)
        assert hit.episode.id == 2
        assert hit.score == 640

    def test_unflattened_catalog_does_not_guess(self):
        assert match_episode(self.EPISODES, 3, 2) is None


class TestParseSeriesEpisodes:
    def test_season_keys_and_flexible_ids(self):
        episodes = parse_series_episodes(EPISODES["10"])
        assert [(e.id, e.season, e.episode) for e in episodes] == [(501, 1, 1), (502, 1, 2), (601, 2, 1)]
        assert episodes[0].container_extension == "mkv"

    def test_season_from_title(self):
        episodes = parse_series_episodes({"episodes": [{"id": 7, "title": "Show S03E04"}]})
        assert (episodes[0].season, episodes[0].episode) == (3, 4)


class TestSeriesResolver:
    """End-to-end resolution over a mocked provider and SQLite"""

    @pytest.mark.asyncio
    async def test_resolves_by_tmdb_and_caches(self, database, http_client, provider, credentials):
        resolver = _resolver(http_client)

        resolved = await resolver.resolve_episode("acct", credentials, "Breaking Bad", 2, 1, tmdb_id=1396)
        assert resolved.stream_id == 601
        assert resolved.series_id == 10
        assert resolved.method == METHOD_TMDB
        assert provider.actions == [("get_series", None), ("get_series_info", "10")]

        again = await resolver.resolve_episode("acct", credentials, "Breaking Bad", 2, 1, tmdb_id=1396)
        assert again == resolved
        assert len(provider.actions) == 2

    @pytest.mark.asyncio
    async def test_binding_short_circuits_catalog(self, database, http_client, provider, credentials):
        resolver = _resolver(http_client)
        await resolver.resolve_episode("acct", credentials, "Breaking Bad", 2, 1)

        resolved = await resolver.resolve_episode("acct", credentials, "Breaking Bad", 1, 1)
        assert resolved.method == METHOD_BINDING
        assert resolved.stream_id == 501
        assert resolved.container_extension == "mkv"
        assert len(provider.actions) == 2

    @pytest.mark.asyncio
    async def test_persisted_tiers_survive_restart(self, database, http_client, provider, credentials):
        await _resolver(http_client).resolve_episode("acct", credentials, "Breaking Bad", 1, 2)
        calls = len(provider.actions)

        fresh = _resolver(http_client)
        resolved = await fresh.resolve_episode("acct", credentials, "Breaking Bad", 1, 2, allow_network=False)
        assert resolved.stream_id == 502
        assert len(provider.actions) == calls

    @pytest.mark.asyncio
    async def test_flattened_provider_season(self, database, http_client, credentials):
        resolved = await _resolver(http_client).resolve_episode(
            "acct", credentials, "The Office", 4, 3, imdb_id="tt0386676"
        )
        assert resolved.stream_id == 903

    @pytest.mark.asyncio
    async def test_missing_episode_is_none(self, database, http_client, credentials):
        resolver = _resolver(http_client)
        assert await resolver.resolve_episode("acct", credentials, "Breaking Bad", 5, 1) is None
        assert await resolver.resolve_episode("acct", credentials, "Unknown Show", 1, 1) is None
        assert await resolver.resolve_episode("acct", credentials, "", 1, 1) is None

    @pytest.mark.asyncio
    async def test_offline_without_cache_is_none(self, database, http_client, provider, credentials):
        resolver = _resolver(http_client)
        assert await resolver.resolve_episode("acct", credentials, "Breaking Bad", 1, 1, allow_network=False) is None
        assert provider.actions == []

    @pytest.mark.asyncio
    async def test_prefetch_warms_episode_lists(self, database, http_client, provider, credentials):
        resolver = _resolver(http_client)
        await resolver.prefetch_series_info("acct", credentials, "Breaking Bad", tmdb_id="1396")
        assert ("get_series_info", "10") in provider.actions

        calls = len(provider.actions)
        resolved = await resolver.resolve_episode("acct", credentials, "Breaking Bad", 1, 1, tmdb_id="1396")
        assert resolved.stream_id == 501
        assert len(provider.actions) == calls


class TestResolverStore:
    @pytest.mark.asyncio
    async def test_upsert_prune_and_clear(self, database):
        store = ResolverStore(max_entries={KIND_RESOLVED: 2})
        await store.put(KIND_RESOLVED, "acct|a", {"v": 1}, saved_at=1.0)
        await store.put(KIND_RESOLVED, "acct|b", {"v": 2}, saved_at=2.0)
        await store.put(KIND_RESOLVED, "acct|a", {"v": 3}, saved_at=3.0)
        assert await store.get(KIND_RESOLVED, "acct|a") == ({"v": 3}, 3.0)

        await store.put(KIND_RESOLVED, "other|c", {"v": 4}, saved_at=4.0)
        assert await store.get(KIND_RESOLVED, "acct|b") is None

        assert await store.clear("acct|") == 1
        assert await store.get(KIND_RESOLVED, "other|c") == ({"v": 4}, 4.0)
