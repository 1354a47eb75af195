"""
Shared fixtures for the IPTV service tests.

HTTP is always mocked with httpx.MockTransport; each test that needs SQLite
gets its own database file under tmp_path.
"""
import asyncio
import os
import tempfile
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

# Settings are created at import time; keep them away from the working tree.
_SETTINGS_DIR = tempfile.mkdtemp(prefix="iptv_service_tests_")
os.environ.setdefault("DATA_DIR", _SETTINGS_DIR)
os.environ.setdefault("DATABASE_PATH", os.path.join(_SETTINGS_DIR, "iptv.db"))

import httpx
import pytest
import pytest_asyncio

from iptv_service.database import close_db, init_db
from iptv_service.services.cache_store import SnapshotDiskCache
from iptv_service.services.epg_coordinator import GuideCoordinator
from iptv_service.services.iptv_repository import IptvRepository
from iptv_service.services.iptv_types import Channel, ChannelGuide, Program, ProviderCredentials
from iptv_service.services.playlist_service import PlaylistService
from iptv_service.services.profile_store import ProfileStore
from iptv_service.services.provider_catalog import ProviderCatalog
from iptv_service.services.resolver_store import ResolverStore
from iptv_service.services.series_resolver import SeriesResolver
from iptv_service.utils.secure_storage import ConfigCipher


NOW = datetime(2025, 3, 1, 20, 0, tzinfo=timezone.utc)


def make_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_program(title: str, start_offset_min: int, duration_min: int = 30, now: datetime = NOW) -> Program:
    start = now + timedelta(minutes=start_offset_min)
    return Program(title=title, start=start, end=start + timedelta(minutes=duration_min))


def live_guide(title: str = "Evening News", now: datetime = NOW) -> ChannelGuide:
    upcoming = (make_program("Weather", 20, now=now), make_program("Film", 50, 90, now=now))
    return ChannelGuide(
        now=make_program(title, -10, now=now),
        next=upcoming[0],
        later=upcoming[1],
        upcoming=upcoming,
    )


def xtream_channel(stream_id: int, name: str, group: str = "News", epg_id: str | None = None) -> Channel:
    return Channel(
        id=f"xtream:{stream_id}",
        name=name,
        stream_url=f"http://provider.test/u/p/{stream_id}",
        group=group,
        epg_id=epg_id,
        raw_title=name,
        provider_stream_id=stream_id,
    )


class FakeDownloader:
    """GuideDownloader stand-in returning canned guides (or raising) per URL"""

    def __init__(self, results: dict[str, object], delay: float = 0.0):
        self.results = results
        self.delay = delay
        self.calls: list[str] = []

    async def fetch_guide(self, url, channels, now=None):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.get(url, {})
        if isinstance(result, Exception):
            raise result
        return result


class FakeShortFetcher:
    def __init__(self, result, delay: float = 0.0):
        self.result = result
        self.delay = delay
        self.calls = 0

    async def fetch(self, credentials, channels, **kwargs):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result


@pytest.fixture
def credentials() -> ProviderCredentials:
    return ProviderCredentials(base_url="http://provider.test", username="u", password="p")


@pytest.fixture
def cipher(tmp_path) -> ConfigCipher:
    return ConfigCipher.from_key_file(tmp_path / "secret.key")


@pytest_asyncio.fixture
async def database(tmp_path):
    """Fresh SQLite database for one test."""
    await init_db(tmp_path / "test.db")
    yield
    await close_db()


# Repository wiring over a mocked playlist server

PLAYLIST_URL = "http://lists.test/tv.m3u"
OTHER_PLAYLIST_URL = "http://lists.test/other.m3u"
GUIDE_URL = "http://guides.test/epg.xml"

PLAYLIST = f"""#EXTM3U url-tvg="{GUIDE_URL}"
#EXTINF:-1 tvg-id="news.uk" group-title="News",News 24
http://streams.test/news
#EXTINF:-1 group-title="",Film Four
http://streams.test/film
"""

OTHER_PLAYLIST = """#EXTM3U
#EXTINF:-1 group-title="Kids",Cartoons
http://streams.test/cartoons
"""


class PlaylistServer:
    """Serves playlists by URL and records requests"""

    def __init__(self):
        self.routes = {PLAYLIST_URL: (200, PLAYLIST), OTHER_PLAYLIST_URL: (200, OTHER_PLAYLIST)}
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        status, body = self.routes.get(url, (404, "not found"))
        return httpx.Response(status, text=body)


class Harness:
    def __init__(self, tmp_path, cipher, client, downloader, guide_deadline: float = 90.0):
        self.disk = SnapshotDiskCache(tmp_path / "cache", max_bytes=5 * 1024 * 1024)
        self.profiles = ProfileStore(cipher, disk_cache=self.disk)
        self.downloader = downloader
        catalog = ProviderCatalog(client)
        self.repository = IptvRepository(
            self.profiles,
            PlaylistService(client, retry_delay_cap=0),
            GuideCoordinator(downloader, FakeShortFetcher({}), deadline_seconds=guide_deadline),
            self.disk,
            catalog,
            SeriesResolver(catalog, ResolverStore()),
            temp_dir=tmp_path / "tmp",
        )


@pytest.fixture
def playlist_server() -> PlaylistServer:
    return PlaylistServer()


@pytest_asyncio.fixture
async def playlist_client(playlist_server):
    async with make_client(playlist_server) as client:
        yield client


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader({GUIDE_URL: {"epg:news.uk": live_guide()}})


@pytest_asyncio.fixture
async def harness(database, tmp_path, cipher, playlist_client, downloader):
    return Harness(tmp_path, cipher, playlist_client, downloader)
