from datetime import datetime, timedelta, timezone

import pytest

from iptv_service.errors import GuideParseError
from iptv_service.services.iptv_types import Channel
from iptv_service.services.xmltv_parser_service import (
    EscapeSanitizer,
    GuideAssembler,
    PullGuideParser,
    SaxGuideParser,
    sanitize_bytes,
)
from tests.conftest import NOW


def _ts(dt: datetime) -> str:
    return dt.strftime("%Y%m%d%H%M%S") + " +0000"


def _programme(channel: str, start_min: int, stop_min: int, title: str, desc: str = "") -> str:
    start = NOW + timedelta(minutes=start_min)
    stop = NOW + timedelta(minutes=stop_min)
    desc_xml = f"<desc>{desc}</desc>" if desc else ""
    return (
        f'<programme channel="{channel}" start="{_ts(start)}" stop="{_ts(stop)}">'
        f"<title>{title}</title>{desc_xml}</programme>"
    )


CHANNELS = [
    Channel(id="url:bbc", name="BBC One HD", stream_url="http://s/bbc"),
    Channel(id="epg:news.uk", name="News 24", stream_url="http://s/news", epg_id="News.uk"),
    Channel(id="url:quiet", name="Quiet Channel", stream_url="http://s/quiet"),
]

GUIDE_XML = "\n".join([
    '<?xml version="1.0" encoding="UTF-8"?>',
    '<tv generator-info-name="test">',
    '<channel id="bbc1"><display-name>BBC One</display-name></channel>',
    '<channel id="news.uk"><display-name>News</display-name></channel>',
    _programme("bbc1", -120, -60, "Too Old"),
    _programme("bbc1", -30, 30, "Evening News", "Headlines"),
    _programme("bbc1", 30, 60, "Weather"),
    _programme("bbc1", 60, 120, "Film"),
    _programme("NEWS.UK", -70, -10, "Recent Bulletin"),
    _programme("NEWS.UK", 0, 15, ""),
    _programme("unknown", -10, 20, "Nobody Watches"),
    "</tv>",
])


def _write(tmp_path, content: str | bytes, name: str = "guide.xml"):
    path = tmp_path / name
    if isinstance(content, str):
        content = content.encode("utf-8")
    path.write_bytes(content)
    return path


class TestEscapeSanitizer:
    def test_resolves_json_style_escapes(self):
        assert sanitize_bytes(b'Say \\"hi\\" \\/ bye') == b'Say "hi" / bye'

    def test_control_bytes_become_spaces(self):
        assert sanitize_bytes(b"a\x01b\tc\nd") == b"a b\tc\nd"

    def test_backspace_and_formfeed_escapes_become_spaces(self):
        assert sanitize_bytes(b"a\\bb\\fc") == b"a b c"

    def test_escape_split_across_chunks(self):
        sanitizer = EscapeSanitizer()
        first = sanitizer.feed(b"line one\\")
        second = sanitizer.feed(b"nline two")
        assert first + second == b"line one\nline two"

    def test_even_backslash_run_is_not_held(self):
        sanitizer = EscapeSanitizer()
        assert sanitizer.feed(b"path\\\\") == b"path\\"

    def test_lone_trailing_backslash_is_dropped(self):
        sanitizer = EscapeSanitizer()
        assert sanitizer.feed(b"end\\") == b"end"
        assert sanitizer.flush() == b""


class TestGuideAssembler:
    def test_upcoming_is_capped_and_sorted(self):
        assembler = GuideAssembler(CHANNELS, NOW)
        for offset in reversed(range(1, 11)):
            start = NOW + timedelta(minutes=offset * 10)
            assembler.add_programme("news.uk", _ts(start), _ts(start + timedelta(minutes=10)), f"Show {offset}", None)

        guide = assembler.build()["epg:news.uk"]
        assert [p.title for p in guide.upcoming] == [f"Show {i}" for i in range(1, 9)]
        assert guide.next.title == "Show 1"
        assert guide.later.title == "Show 2"
        assert guide.now is None

    def test_recent_keeps_latest_entries(self):
        assembler = GuideAssembler(CHANNELS, NOW)
        for minute in range(46, 60, 2):
            start = NOW - timedelta(minutes=60 - minute)
            assembler.add_programme("news.uk", _ts(start), _ts(start + timedelta(minutes=2)), f"Clip {minute}", None)

        guide = assembler.build()["epg:news.uk"]
        assert len(guide.recent) == 6
        assert guide.recent[0].title == "Clip 48"
        assert guide.recent[-1].title == "Clip 58"
        assert not guide.has_program_data

    def test_duplicate_upcoming_entries_are_ignored(self):
        assembler = GuideAssembler(CHANNELS, NOW)
        start = NOW + timedelta(minutes=5)
        for title in ("Match", "MATCH"):
            assembler.add_programme("news.uk", _ts(start), _ts(start + timedelta(minutes=90)), title, None)
        assert len(assembler.build()["epg:news.uk"].upcoming) == 1

    def test_invalid_times_are_skipped(self):
        assembler = GuideAssembler(CHANNELS, NOW)
        assembler.add_programme("news.uk", "garbage", _ts(NOW), "Broken", None)
        assembler.add_programme("news.uk", _ts(NOW + timedelta(minutes=10)), _ts(NOW + timedelta(minutes=5)), "Backwards", None)
        assert assembler.build() == {}
        assert assembler.programmes_seen == 2


class TestPullGuideParser:
    def test_matches_channels_by_id_and_alias(self, tmp_path):
        guides = PullGuideParser().parse_file(_write(tmp_path, GUIDE_XML), CHANNELS, NOW)

        assert set(guides) == {"url:bbc", "epg:news.uk"}
        bbc = guides["url:bbc"]
        assert bbc.now.title == "Evening News"
        assert bbc.now.description == "Headlines"
        assert bbc.now.start == NOW - timedelta(minutes=30)
        assert bbc.now.start.tzinfo == timezone.utc
        assert [p.title for p in bbc.upcoming] == ["Weather", "Film"]

        news = guides["epg:news.uk"]
        assert news.now.title == "Unknown program"
        assert [p.title for p in news.recent] == ["Recent Bulletin"]

    def test_namespaced_document(self, tmp_path):
        xml = GUIDE_XML.replace("<tv ", '<tv xmlns="urn:example:xmltv" ')
        guides = PullGuideParser().parse_file(_write(tmp_path, xml), CHANNELS, NOW)
        assert guides["url:bbc"].now.title == "Evening News"

    def test_session_accepts_arbitrary_chunks(self):
        session = PullGuideParser().open_session(CHANNELS, NOW)
        data = GUIDE_XML.encode("utf-8")
        for i in range(0, len(data), 37):
            session.feed(data[i:i + 37])
        guides = session.close()
        assert guides["url:bbc"].next.title == "Weather"

    def test_malformed_document_raises(self, tmp_path):
        broken = GUIDE_XML.replace("<title>Weather</title>", "<title>Wind & Rain</title>")
        with pytest.raises(GuideParseError):
            PullGuideParser().parse_file(_write(tmp_path, broken), CHANNELS, NOW)

    def test_sanitize_repairs_escaped_text(self, tmp_path):
        escaped = GUIDE_XML.replace("<desc>Headlines</desc>", "<desc>Top\\tstories\x02</desc>")
        guides = PullGuideParser().parse_file(_write(tmp_path, escaped), CHANNELS, NOW, sanitize=True)
        assert guides["url:bbc"].now.description == "Top\tstories"


class TestSaxGuideParser:
    def test_same_result_as_pull_parser(self, tmp_path):
        path = _write(tmp_path, GUIDE_XML)
        assert SaxGuideParser().parse_file(path, CHANNELS, NOW) == PullGuideParser().parse_file(path, CHANNELS, NOW)

    def test_sanitizing_reader(self, tmp_path):
        escaped = GUIDE_XML.replace("<title>Film</title>", "<title>Film \\\"Noir\\\"\x01</title>")
        guides = SaxGuideParser().parse_file(_write(tmp_path, escaped), CHANNELS, NOW, sanitize=True)
        assert guides["url:bbc"].later.title == 'Film "Noir"'

    def test_malformed_document_raises(self, tmp_path):
        with pytest.raises(GuideParseError):
            SaxGuideParser().parse_file(_write(tmp_path, "<tv><programme></tv>"), CHANNELS, NOW)
