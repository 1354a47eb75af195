from iptv_service.services.credentials import (
    normalize_guide_input,
    normalize_playlist_input,
    resolve_guide_candidates,
    resolve_provider_credentials,
)


PLAYLIST = "http://provider.test/get.php?username=u&password=p&type=m3u_plus&output=ts"


class TestNormalizePlaylistInput:
    def test_blank_input_is_empty(self):
        assert normalize_playlist_input("   ") == ""

    def test_whitespace_triplet(self):
        assert normalize_playlist_input("provider.test u p") == PLAYLIST

    def test_multiline_triplet_with_xtream_prefix(self):
        raw = "xtream://provider.test/\nu\np\n"
        assert normalize_playlist_input(raw) == PLAYLIST

    def test_broken_scheme_is_repaired(self):
        assert normalize_playlist_input("http:/provider.test u p") == PLAYLIST

    def test_full_url_with_alternate_param_names(self):
        raw = "http://provider.test/player_api.php?user=u&pass=p"
        assert normalize_playlist_input(raw) == PLAYLIST

    def test_unrecognized_url_is_returned_trimmed(self):
        raw = "  https://lists.example/tv.m3u  "
        assert normalize_playlist_input(raw) == "https://lists.example/tv.m3u"


class TestNormalizeGuideInput:
    def test_triplet_builds_xmltv_url(self):
        assert normalize_guide_input("provider.test u p") == "http://provider.test/xmltv.php?username=u&password=p"

    def test_get_php_is_rewritten_to_xmltv(self):
        assert normalize_guide_input(PLAYLIST) == "http://provider.test/xmltv.php?username=u&password=p"


class TestResolveProviderCredentials:
    def test_extracts_account(self):
        creds = resolve_provider_credentials(PLAYLIST)
        assert creds is not None
        assert (creds.base_url, creds.username, creds.password) == ("http://provider.test", "u", "p")

    def test_keeps_path_prefix(self):
        creds = resolve_provider_credentials("https://provider.test/iptv/xmltv.php?username=u&password=p")
        assert creds.base_url == "https://provider.test/iptv"

    def test_requires_known_endpoint(self):
        assert resolve_provider_credentials("http://provider.test/list.m3u?username=u&password=p") is None

    def test_requires_password(self):
        assert resolve_provider_credentials("http://provider.test/get.php?username=u") is None

    def test_cache_key_is_stable_per_account(self):
        a = resolve_provider_credentials(PLAYLIST)
        b = resolve_provider_credentials("http://provider.test/xmltv.php?username=u&password=p")
        c = resolve_provider_credentials("http://provider.test/xmltv.php?username=u&password=other")
        assert a.cache_key == b.cache_key
        assert a.cache_key != c.cache_key


class TestResolveGuideCandidates:
    def test_order_manual_discovered_preferred_derived(self):
        candidates = resolve_guide_candidates(
            PLAYLIST,
            "http://guides.example/manual.xml",
            discovered_guide_url="http://guides.example/header.xml",
            preferred_guide_url="http://provider.test/get.php?username=u&password=p&type=xml",
        )
        assert candidates[:3] == [
            "http://guides.example/manual.xml",
            "http://guides.example/header.xml",
            "http://provider.test/get.php?username=u&password=p&type=xml",
        ]
        assert candidates[3] == "http://provider.test/xmltv.php?username=u&password=p"
        assert len(candidates) == len(set(candidates))

    def test_preferred_from_other_host_is_ignored(self):
        candidates = resolve_guide_candidates(PLAYLIST, "", preferred_guide_url="http://elsewhere.test/xmltv.php")
        assert "http://elsewhere.test/xmltv.php" not in candidates
        assert len(candidates) == 5

    def test_non_http_discovered_url_is_ignored(self):
        candidates = resolve_guide_candidates(PLAYLIST, "", discovered_guide_url="guide.xml")
        assert "guide.xml" not in candidates

    def test_guide_url_account_is_used_for_cdn_playlist(self):
        guide = "http://prov.example.com:8080/get.php?username=u&password=p&type=m3u_plus"
        candidates = resolve_guide_candidates("http://cdn.example.com/list.m3u", guide)
        assert candidates[0] == guide
        assert "http://prov.example.com:8080/xmltv.php?username=u&password=p" in candidates

    def test_guide_url_account_wins_over_playlist_account(self):
        guide = "http://other.test/xmltv.php?username=g&password=h"
        candidates = resolve_guide_candidates(PLAYLIST, guide)
        assert candidates[0] == guide
        assert not any(url.startswith("http://provider.test") for url in candidates)

    def test_plain_m3u_without_manual_guide_has_no_candidates(self):
        assert resolve_guide_candidates("https://lists.example/tv.m3u", "") == []
