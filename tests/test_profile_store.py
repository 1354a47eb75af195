import pytest
import pytest_asyncio

from iptv_service.database import session_scope
from iptv_service.models import ProfileConfig
from iptv_service.services.cache_store import SnapshotDiskCache
from iptv_service.services.iptv_types import IptvConfig
from iptv_service.services.profile_store import ProfileState, ProfileStore, validate_profile_id
from iptv_service.utils.secure_storage import ENCRYPTED_PREFIX


PLAYLIST = "http://provider.test/get.php?username=u&password=p&type=m3u_plus&output=ts"
GUIDE = "http://provider.test/xmltv.php?username=u&password=p"


@pytest.fixture
def disk_cache(tmp_path):
    return SnapshotDiskCache(tmp_path / "cache", max_bytes=1024 * 1024)


@pytest_asyncio.fixture
async def store(database, cipher, disk_cache):
    return ProfileStore(cipher, disk_cache=disk_cache)


async def _row(profile_id: str) -> ProfileConfig | None:
    async with session_scope() as session:
        return await session.get(ProfileConfig, profile_id)


class TestValidateProfileId:
    def test_trims(self):
        assert validate_profile_id("  living-room ") == "living-room"

    @pytest.mark.parametrize("bad", ["", "   ", "../etc", "a/b", "a\\b"])
    def test_rejects(self, bad):
        with pytest.raises(ValueError):
            validate_profile_id(bad)


class TestProfileStore:
    @pytest.mark.asyncio
    async def test_unknown_profile_is_blank(self, store):
        assert await store.get_config() == IptvConfig()

    @pytest.mark.asyncio
    async def test_save_normalizes_and_encrypts(self, store):
        config = await store.save_config("provider.test u p", "provider.test u p")
        assert config.playlist_url == PLAYLIST
        assert config.guide_url == GUIDE

        row = await _row("default")
        assert row.playlist_url.startswith(ENCRYPTED_PREFIX)
        assert "password" not in row.playlist_url
        assert await store.get_config() == config

    @pytest.mark.asyncio
    async def test_favorites_toggle_and_survive_save(self, store):
        assert await store.toggle_favorite_group("Sports") == ("Sports",)
        assert await store.toggle_favorite_group(" News ") == ("News", "Sports")
        assert await store.toggle_favorite_group("Sports") == ("News",)
        assert await store.toggle_favorite_channel("xtream:1") == ("xtream:1",)

        await store.save_config(PLAYLIST, "")
        config = await store.get_config()
        assert config.favorite_groups == ("News",)
        assert config.favorite_channels == ("xtream:1",)

    @pytest.mark.asyncio
    async def test_malformed_favorites_are_ignored(self, store):
        await store.save_config(PLAYLIST, "")
        async with session_scope() as session:
            row = await session.get(ProfileConfig, "default")
            row.favorite_groups = "not json"
        assert (await store.get_config()).favorite_groups == ()

    @pytest.mark.asyncio
    async def test_listeners_notified_on_save_and_clear(self, store):
        seen = []

        async def listener(profile_id):
            seen.append(profile_id)

        store.add_listener(listener)
        await store.save_config(PLAYLIST, "")
        await store.toggle_favorite_group("News")
        await store.clear_config()
        assert seen == ["default", "default"]

    @pytest.mark.asyncio
    async def test_clear_removes_row_and_disk_snapshot(self, store, disk_cache):
        await store.save_config(PLAYLIST, GUIDE)
        disk_cache.cache_dir.mkdir(parents=True)
        disk_cache.path_for("default").write_text("{}")

        await store.clear_config()

        assert await _row("default") is None
        assert not disk_cache.path_for("default").exists()
        assert await store.get_config() == IptvConfig()

    @pytest.mark.asyncio
    async def test_profiles_are_isolated(self, store):
        await store.save_config(PLAYLIST, "")
        assert store.switch_profile("kids") is True
        assert store.switch_profile("kids") is False
        assert store.active_profile_id == "kids"
        assert await store.get_config() == IptvConfig()
        assert (await store.get_config("default")).playlist_url == PLAYLIST

        with pytest.raises(ValueError):
            store.switch_profile("../default")

    @pytest.mark.asyncio
    async def test_export_and_import_state(self, store):
        await store.save_config(PLAYLIST, GUIDE)
        await store.toggle_favorite_group("News")
        exported = await store.export_profile_state()
        assert exported == ProfileState(playlist_url=PLAYLIST, guide_url=GUIDE, favorite_groups=["News"])

        imported = await store.import_profile_state(
            ProfileState(playlist_url="provider.test u p", favorite_channels=["a", "a", " ", "b"]),
            profile_id="kids",
        )
        assert imported.playlist_url == PLAYLIST
        assert imported.favorite_channels == ("a", "b")
        assert await store.get_config("kids") == imported
