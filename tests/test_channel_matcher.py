from iptv_service.services.channel_matcher import (
    ChannelKeyLookup,
    normalize_loose_key,
    strip_quality_suffixes,
)
from iptv_service.services.iptv_types import Channel


def _channel(channel_id: str, name: str, epg_id: str | None = None, raw_title: str = "") -> Channel:
    return Channel(id=channel_id, name=name, stream_url=f"http://s/{channel_id}", epg_id=epg_id, raw_title=raw_title)


class TestKeyNormalization:
    def test_loose_key_drops_punctuation(self):
        assert normalize_loose_key(" BBC-One.UK ") == "bbconeuk"

    def test_quality_suffixes_are_removed(self):
        assert strip_quality_suffixes("Sky Sports HD") == "sky sports"
        assert strip_quality_suffixes("Film 4K HEVC") == "film"

    def test_quality_words_inside_names_survive(self):
        assert strip_quality_suffixes("HDTV Shop") == "hdtv shop"


class TestChannelKeyLookup:
    def test_matches_epg_id_case_insensitively(self):
        bbc = _channel("epg:bbc1.uk", "BBC One", epg_id="BBC1.uk")
        lookup = ChannelKeyLookup([bbc])
        assert lookup.lookup("bbc1.UK") is bbc

    def test_matches_name_without_quality_suffix(self):
        sky = _channel("url:sky", "Sky Sports HD")
        lookup = ChannelKeyLookup([sky])
        assert lookup.lookup("sky sports") is sky
        assert lookup.lookup("Sky-Sports") is sky

    def test_matches_tvg_name_from_raw_title(self):
        raw = '#EXTINF:-1 tvg-name="Das Erste",ARD HD'
        ard = _channel("url:ard", "ARD HD", raw_title=raw)
        lookup = ChannelKeyLookup([ard])
        assert lookup.lookup("Das Erste") is ard

    def test_first_channel_wins_a_shared_key(self):
        first = _channel("url:a", "News")
        second = _channel("url:b", "News")
        lookup = ChannelKeyLookup([first, second])
        assert lookup.lookup("news") is first

    def test_resolve_falls_back_to_aliases(self):
        bbc = _channel("url:bbc", "BBC One")
        lookup = ChannelKeyLookup([bbc])
        assert lookup.resolve("unknown.id", ["Something", "BBC One"]) is bbc
        assert lookup.resolve("unknown.id", ["Something"]) is None
        assert lookup.resolve(None) is None
