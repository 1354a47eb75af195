from datetime import timedelta

import pytest

from iptv_service.services.cache_store import CacheStore, SnapshotDiskCache, build_config_signature
from iptv_service.services.iptv_types import CacheOwnership, ChannelGuide, Program
from tests.conftest import NOW, live_guide, make_program, xtream_channel


OWNER = CacheOwnership(profile_id="default", config_signature=build_config_signature("http://p/list.m3u", ""))


def _store(**overrides) -> CacheStore:
    values = {
        "owner": OWNER,
        "channels": [xtream_channel(1, "News One"), xtream_channel(2, "Sport One", group="Sports")],
        "guides": {"xtream:1": live_guide()},
        "playlist_loaded_at": NOW,
        "guide_loaded_at": NOW,
        "discovered_guide_url": "http://guides.example/a.xml",
    }
    values.update(overrides)
    return CacheStore(**values)


class TestConfigSignature:
    def test_inputs_are_trimmed(self):
        assert build_config_signature(" a ", "b ") == build_config_signature("a", "b")
        assert build_config_signature("a", "b") != build_config_signature("a", "")


class TestCacheStore:
    def test_freshness(self):
        store = _store()
        assert store.is_playlist_fresh(timedelta(hours=24), NOW + timedelta(hours=23))
        assert not store.is_playlist_fresh(timedelta(hours=24), NOW + timedelta(hours=24))
        assert store.guide_age(NOW + timedelta(minutes=5)) == timedelta(minutes=5)

    def test_empty_store(self):
        store = CacheStore(owner=OWNER)
        assert not store.has_channels
        assert not store.has_guide_data
        assert not store.is_playlist_fresh(timedelta(hours=24), NOW)
        assert store.playlist_age(NOW) is None


class TestSnapshotDiskCache:
    """Disk snapshot persistence"""

    @pytest.mark.asyncio
    async def test_write_then_read(self, tmp_path):
        cache = SnapshotDiskCache(tmp_path, max_bytes=1024 * 1024)
        assert await cache.write(_store())
        assert cache.path_for("default").name == "default_iptv_cache.json"

        loaded = await cache.read(OWNER)
        assert [c.id for c in loaded.channels] == ["xtream:1", "xtream:2"]
        assert loaded.channels[1].group == "Sports"
        assert loaded.channels[0].raw_title == "News One"
        assert loaded.guides["xtream:1"].now.title == "Evening News"
        assert loaded.playlist_loaded_at == NOW
        assert loaded.discovered_guide_url == "http://guides.example/a.xml"

    @pytest.mark.asyncio
    async def test_descriptions_and_empty_guides_are_not_persisted(self, tmp_path):
        show = make_program("Show", -5)
        described = ChannelGuide(now=Program("Show", show.start, show.end, "Long text"))
        store = _store(guides={
            "xtream:1": described,
            "xtream:2": ChannelGuide(recent=(make_program("Old", -30, 20),)),
        })
        cache = SnapshotDiskCache(tmp_path, max_bytes=1024 * 1024)
        await cache.write(store)

        loaded = await cache.read(OWNER)
        assert set(loaded.guides) == {"xtream:1"}
        assert loaded.guides["xtream:1"].now.description is None

    @pytest.mark.asyncio
    async def test_oversized_payload_drops_guide(self, tmp_path):
        cache = SnapshotDiskCache(tmp_path, max_bytes=900)
        store = _store(guides={f"xtream:{i}": live_guide() for i in range(1, 3)})
        assert await cache.write(store)

        loaded = await cache.read(OWNER)
        assert len(loaded.channels) == 2
        assert loaded.guides == {}
        assert loaded.guide_loaded_at is None

    @pytest.mark.asyncio
    async def test_store_without_channels_is_not_written(self, tmp_path):
        cache = SnapshotDiskCache(tmp_path, max_bytes=1024 * 1024)
        assert not await cache.write(_store(channels=[]))
        assert not cache.path_for("default").exists()

    @pytest.mark.asyncio
    async def test_signature_mismatch_is_a_miss(self, tmp_path):
        cache = SnapshotDiskCache(tmp_path, max_bytes=1024 * 1024)
        await cache.write(_store())
        other = CacheOwnership(profile_id="default", config_signature=build_config_signature("http://other", ""))
        assert await cache.read(other) is None

    @pytest.mark.asyncio
    async def test_corrupt_file_is_a_miss(self, tmp_path):
        cache = SnapshotDiskCache(tmp_path, max_bytes=1024 * 1024)
        cache.path_for("default").write_text("{not json", encoding="utf-8")
        assert await cache.read(OWNER) is None

    @pytest.mark.asyncio
    async def test_file_over_twice_the_ceiling_is_deleted(self, tmp_path):
        cache = SnapshotDiskCache(tmp_path, max_bytes=10)
        path = cache.path_for("default")
        path.write_text("x" * 100, encoding="utf-8")
        assert await cache.read(OWNER) is None
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        cache = SnapshotDiskCache(tmp_path, max_bytes=1024 * 1024)
        await cache.write(_store())
        assert cache.delete("default")
        assert not cache.delete("default")
        assert await cache.read(OWNER) is None
