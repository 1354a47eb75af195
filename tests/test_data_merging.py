from iptv_service.services.iptv_types import ChannelGuide
from iptv_service.utils.data_merging import (
    count_channels_with_data,
    has_any_program_data,
    merge_guides,
    overlay_guides,
)
from tests.conftest import live_guide, make_program


class TestProgramDataChecks:
    def test_empty_and_recent_only_guides_have_no_data(self):
        recent_only = ChannelGuide(recent=(make_program("Old", -40, 30),))
        assert not has_any_program_data(None)
        assert not has_any_program_data({"a": recent_only})
        assert count_channels_with_data({"a": recent_only, "b": live_guide()}) == 1


class TestMergeGuides:
    def test_short_wins_now_and_next(self):
        full = {"a": live_guide("Full Now")}
        short_next = make_program("Short Next", 15)
        short = {"a": ChannelGuide(now=make_program("Short Now", -5), next=short_next, upcoming=(short_next,))}

        merged = merge_guides(full, short)["a"]
        assert merged.now.title == "Short Now"
        assert merged.next.title == "Short Next"
        assert merged.later.title == "Film"
        assert [p.title for p in merged.upcoming] == ["Weather", "Film"]

    def test_full_fills_missing_short_fields(self):
        full = {"a": live_guide("Full Now")}
        short = {"a": ChannelGuide(next=make_program("Short Next", 15))}
        merged = merge_guides(full, short)["a"]
        assert merged.now.title == "Full Now"
        assert merged.next.title == "Short Next"

    def test_union_of_channels(self):
        merged = merge_guides({"a": live_guide()}, {"b": live_guide("Other")})
        assert set(merged) == {"a", "b"}

    def test_missing_side_returns_copy(self):
        full = {"a": live_guide()}
        merged = merge_guides(full, None)
        assert merged == full
        assert merged is not full


class TestOverlayGuides:
    def test_fresh_entries_replace_whole_entries(self):
        existing = {"a": live_guide("Old"), "b": live_guide("Keep")}
        combined = overlay_guides(existing, {"a": ChannelGuide(next=make_program("New", 10))})
        assert combined["a"].now is None
        assert combined["b"].now.title == "Keep"
