from iptv_service.utils.text_matching import (
    extract_episode_only,
    extract_season_episode,
    extract_title_tokens,
    infer_quality,
    loose_series_title_score,
    normalize_imdb_id,
    normalize_lookup_text,
    normalize_tmdb_id,
    parse_year,
    score_name_match,
    to_canonical_title_key,
)


class TestNormalization:
    def test_brackets_and_release_tags_are_removed(self):
        assert normalize_lookup_text("The Office (US) [4K]") == "the office"
        assert normalize_lookup_text("Breaking.Bad.1080p.WEB-DL") == "breaking bad"

    def test_blank(self):
        assert normalize_lookup_text("   ") == ""
        assert extract_title_tokens(None) == frozenset()

    def test_tokens_skip_noise_and_short_words(self):
        assert extract_title_tokens("The Lord of the Rings: Complete Series") == frozenset({"lord", "rings"})

    def test_canonical_key_is_order_insensitive(self):
        assert to_canonical_title_key("Bad Breaking") == to_canonical_title_key("Breaking Bad")


class TestIdentifiers:
    def test_imdb(self):
        assert normalize_imdb_id("https://www.imdb.com/title/tt0903747/") == "tt0903747"
        assert normalize_imdb_id("TT0903747") == "tt0903747"
        assert normalize_imdb_id("12345") is None

    def test_tmdb(self):
        assert normalize_tmdb_id("001396") == "1396"
        assert normalize_tmdb_id(1396) == "1396"
        assert normalize_tmdb_id(0) is None
        assert normalize_tmdb_id("none") is None

    def test_year(self):
        assert parse_year("Dune (2021)") == 2021
        assert parse_year("Dune") is None


class TestEpisodeMarkers:
    def test_season_episode_forms(self):
        assert extract_season_episode("Show S02E05") == (2, 5)
        assert extract_season_episode("Show 3x07") == (3, 7)
        assert extract_season_episode("Season 4 Episode 10") == (4, 10)
        assert extract_season_episode("Pilot") is None

    def test_episode_only(self):
        assert extract_episode_only("Episode 12") == 12
        assert extract_episode_only("Finale - 8") == 8
        assert extract_episode_only("Pilot") is None


class TestScoring:
    def test_name_match_levels(self):
        assert score_name_match("Breaking Bad (2008)", "breaking bad") == 120
        assert score_name_match("Breaking Bad Extras", "breaking bad") == 90
        assert score_name_match("Dune", "dune part two") == 70
        assert score_name_match("Something Else", "breaking bad") == 0

    def test_loose_series_score(self):
        assert loose_series_title_score("Breaking Bad Story", "bad breaking") == 52
        assert loose_series_title_score("Breaking News", "breaking bad") == 24

    def test_quality(self):
        assert infer_quality("Movie 2160p") == "4K"
        assert infer_quality("Movie 1080p") == "1080p"
        assert infer_quality("Movie") == "VOD"
