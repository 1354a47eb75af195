"""
XMLTV guide parsing

Two parsers share one GuideAssembler so matching and program selection
behave identically: PullGuideParser (lxml incremental pull parser, used for
streaming) and SaxGuideParser (xml.sax, used as the last fallback). Both can
read through EscapeSanitizer, which repairs the JSON-style backslash escapes
and control bytes some providers emit inside XML text.
"""
from __future__ import annotations

import logging
import re
import xml.sax
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import BinaryIO

from lxml import etree  # type: ignore

from iptv_service.errors import GuideParseError
from iptv_service.services.channel_matcher import ChannelKeyLookup, normalize_channel_key
from iptv_service.services.iptv_types import Channel, ChannelGuide, Program
from iptv_service.utils.timezone import parse_xmltv_time


logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(minutes=15)
UPCOMING_CAP = 8
RECENT_CAP = 6
READ_CHUNK_SIZE = 64 * 1024

_ESCAPE_PAIR = re.compile(rb"\\(.)", re.DOTALL)
_ESCAPE_MAP = {
    b"\\": b"\\",
    b'"': b'"',
    b"'": b"'",
    b"/": b"/",
    b"n": b"\n",
    b"r": b"\r",
    b"t": b"\t",
    b"b": b"\x08",
    b"f": b"\x0c",
}
_CONTROL_BYTES = bytes(b for b in range(0x20) if b not in (0x09, 0x0A, 0x0D))
_CONTROL_TO_SPACE = bytes.maketrans(_CONTROL_BYTES, b" " * len(_CONTROL_BYTES))


class EscapeSanitizer:
    """Stateful byte filter; a trailing backslash is held until the next chunk."""

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, chunk: bytes) -> bytes:
        data = self._pending + chunk
        self._pending = b""
        trailing = len(data) - len(data.rstrip(b"\\"))
        if trailing % 2 == 1:
            data, self._pending = data[:-1], data[-1:]
        return self._clean(data)

    def flush(self) -> bytes:
        # A lone backslash at EOF is dropped
        self._pending = b""
        return b""

    @staticmethod
    def _clean(data: bytes) -> bytes:
        resolved = _ESCAPE_PAIR.sub(lambda m: _ESCAPE_MAP.get(m.group(1), m.group(1)), data)
        return resolved.translate(_CONTROL_TO_SPACE)


class SanitizingReader:
    """File-like wrapper applying EscapeSanitizer on read()."""

    def __init__(self, raw: BinaryIO):
        self._raw = raw
        self._sanitizer = EscapeSanitizer()
        self._eof = False

    def read(self, size: int = -1) -> bytes:
        # xml.sax probes the stream type with read(0)
        if size == 0:
            return b""
        while not self._eof:
            chunk = self._raw.read(size if size and size > 0 else READ_CHUNK_SIZE)
            if not chunk:
                self._eof = True
                return self._sanitizer.flush()
            cleaned = self._sanitizer.feed(chunk)
            if cleaned:
                return cleaned
        return b""


def sanitize_bytes(data: bytes) -> bytes:
    sanitizer = EscapeSanitizer()
    return sanitizer.feed(data) + sanitizer.flush()


def _insert_upcoming(upcoming: list[Program], program: Program) -> None:
    for existing in upcoming:
        if (
            existing.start == program.start
            and existing.end == program.end
            and existing.title.lower() == program.title.lower()
        ):
            return
    position = len(upcoming)
    for idx, existing in enumerate(upcoming):
        if existing.start > program.start or (
            existing.start == program.start and existing.end > program.end
        ):
            position = idx
            break
    if position >= UPCOMING_CAP:
        return
    upcoming.insert(position, program)
    del upcoming[UPCOMING_CAP:]


class GuideAssembler:
    """
    Matching and program-selection policy shared by both parsers.

    Parsers report channel aliases and finished programmes; the assembler
    resolves them to playlist channels and keeps the live, upcoming and
    recently-ended programs for each.
    """

    def __init__(self, channels: Iterable[Channel], now: datetime):
        self._lookup = ChannelKeyLookup(channels)
        self._now = now
        self._recent_cutoff = now - RECENT_WINDOW
        self._aliases: dict[str, list[str]] = {}
        self._resolved: dict[str, str | None] = {}
        self._live: dict[str, Program] = {}
        self._upcoming: dict[str, list[Program]] = {}
        self._recent: dict[str, list[Program]] = {}
        self.programmes_seen = 0
        self.programmes_matched = 0

    def add_alias(self, xml_channel_id: str | None, display_name: str | None) -> None:
        key = normalize_channel_key(xml_channel_id)
        name = (display_name or "").strip()
        if not key or not name:
            return
        self._aliases.setdefault(key, []).append(name)
        self._resolved.pop(key, None)

    def _resolve(self, xml_channel_id: str) -> str | None:
        key = normalize_channel_key(xml_channel_id)
        if not key:
            return None
        if key not in self._resolved:
            channel = self._lookup.resolve(xml_channel_id, self._aliases.get(key, ()))
            self._resolved[key] = channel.id if channel else None
        return self._resolved[key]

    def add_programme(
        self,
        xml_channel_id: str | None,
        start_raw: str | None,
        stop_raw: str | None,
        title: str | None,
        description: str | None,
    ) -> None:
        self.programmes_seen += 1
        start = parse_xmltv_time(start_raw)
        stop = parse_xmltv_time(stop_raw)
        if start is None or stop is None:
            return
        if stop <= self._recent_cutoff:
            return

        channel_id = self._resolve(xml_channel_id or "")
        if channel_id is None or stop <= start:
            return
        self.programmes_matched += 1

        program = Program(
            title=(title or "").strip() or "Unknown program",
            start=start,
            end=stop,
            description=(description or "").strip() or None,
        )

        if program.is_live(self._now):
            current = self._live.get(channel_id)
            if current is None or program.start >= current.start:
                self._live[channel_id] = program
        elif program.start > self._now:
            _insert_upcoming(self._upcoming.setdefault(channel_id, []), program)
        elif program.end > self._recent_cutoff:
            recent = self._recent.setdefault(channel_id, [])
            recent.append(program)
            if len(recent) > RECENT_CAP:
                recent.sort(key=lambda p: p.start)
                del recent[: len(recent) - RECENT_CAP]

    def build(self) -> dict[str, ChannelGuide]:
        """Guides for every channel that received at least one program."""
        channel_ids = set(self._live) | set(self._upcoming) | set(self._recent)
        guides: dict[str, ChannelGuide] = {}
        for channel_id in channel_ids:
            upcoming = self._upcoming.get(channel_id, [])
            recent = sorted(self._recent.get(channel_id, []), key=lambda p: p.start)[-RECENT_CAP:]
            guides[channel_id] = ChannelGuide(
                now=self._live.get(channel_id),
                next=upcoming[0] if upcoming else None,
                later=upcoming[1] if len(upcoming) > 1 else None,
                upcoming=tuple(upcoming),
                recent=tuple(recent),
            )
        return guides


class XmlGuideParser(ABC):
    """A parser turning an XMLTV file into per-channel guides."""

    name: str = "xml"

    @abstractmethod
    def parse_file(
        self,
        file_path: Path | str,
        channels: Iterable[Channel],
        now: datetime,
        *,
        sanitize: bool = False,
    ) -> dict[str, ChannelGuide]:
        """
        Parse a guide file.

        Raises:
            GuideParseError: If the document is malformed
            OSError: If the file can't be read
        """


def _local_tag(tag) -> str:
    if not isinstance(tag, str):
        return ""
    if "}" in tag:
        tag = tag.rsplit("}", 1)[1]
    return tag.lower()


def _element_text(element) -> str:
    return "".join(element.itertext()).strip()


class PullGuideSession:
    """Incremental lxml parse; feed bytes as they arrive, then close()."""

    def __init__(self, assembler: GuideAssembler):
        self._assembler = assembler
        self._parser = etree.XMLPullParser(
            events=("end",),
            huge_tree=True,
            resolve_entities=False,
            no_network=True,
        )

    def feed(self, data: bytes) -> None:
        if not data:
            return
        try:
            self._parser.feed(data)
        except etree.XMLSyntaxError as exc:
            raise GuideParseError(f"XML syntax error: {exc}") from exc
        self._drain()

    def close(self) -> dict[str, ChannelGuide]:
        try:
            self._parser.close()
        except etree.XMLSyntaxError as exc:
            raise GuideParseError(f"XML syntax error: {exc}") from exc
        self._drain()
        return self._assembler.build()

    def _drain(self) -> None:
        for _, element in self._parser.read_events():
            tag = _local_tag(element.tag)
            if tag == "channel":
                xml_id = element.get("id")
                for child in element:
                    if _local_tag(child.tag) == "display-name":
                        self._assembler.add_alias(xml_id, _element_text(child))
            elif tag == "programme":
                title = desc = None
                for child in element:
                    child_tag = _local_tag(child.tag)
                    if child_tag == "title" and title is None:
                        title = _element_text(child)
                    elif child_tag == "desc" and desc is None:
                        desc = _element_text(child)
                self._assembler.add_programme(
                    element.get("channel"),
                    element.get("start"),
                    element.get("stop"),
                    title,
                    desc,
                )
            else:
                continue

            element.clear(keep_tail=True)
            parent = element.getparent()
            if parent is not None:
                while element.getprevious() is not None:
                    del parent[0]


class PullGuideParser(XmlGuideParser):
    """Primary parser built on lxml's XMLPullParser."""

    name = "pull"

    def open_session(self, channels: Iterable[Channel], now: datetime) -> PullGuideSession:
        return PullGuideSession(GuideAssembler(channels, now))

    def parse_file(self, file_path, channels, now, *, sanitize=False):
        session = self.open_session(channels, now)
        sanitizer = EscapeSanitizer() if sanitize else None
        with open(file_path, "rb") as handle:
            while True:
                chunk = handle.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                session.feed(sanitizer.feed(chunk) if sanitizer else chunk)
        return session.close()


class _GuideContentHandler(xml.sax.handler.ContentHandler):
    def __init__(self, assembler: GuideAssembler):
        super().__init__()
        self._assembler = assembler
        self._channel_id: str | None = None
        self._programme: dict[str, str | None] | None = None
        self._capture: str | None = None
        self._buffer: list[str] = []

    def startElement(self, name, attrs):
        tag = _local_tag(name)
        if tag == "channel":
            self._channel_id = attrs.get("id")
        elif tag == "programme":
            self._programme = {
                "channel": attrs.get("channel"),
                "start": attrs.get("start"),
                "stop": attrs.get("stop"),
                "title": None,
                "desc": None,
            }
        elif tag == "display-name" and self._channel_id is not None:
            self._begin_capture(tag)
        elif tag in ("title", "desc") and self._programme is not None and self._programme[tag] is None:
            self._begin_capture(tag)

    def characters(self, content):
        if self._capture is not None:
            self._buffer.append(content)

    def endElement(self, name):
        tag = _local_tag(name)
        if self._capture == tag:
            text = "".join(self._buffer).strip()
            self._capture = None
            self._buffer = []
            if tag == "display-name":
                self._assembler.add_alias(self._channel_id, text)
            elif self._programme is not None:
                self._programme[tag] = text
        elif tag == "channel":
            self._channel_id = None
        elif tag == "programme" and self._programme is not None:
            programme = self._programme
            self._programme = None
            self._assembler.add_programme(
                programme["channel"],
                programme["start"],
                programme["stop"],
                programme["title"],
                programme["desc"],
            )

    def _begin_capture(self, tag: str) -> None:
        self._capture = tag
        self._buffer = []


class SaxGuideParser(XmlGuideParser):
    """Fallback parser built on the standard library SAX reader."""

    name = "sax"

    def parse_file(self, file_path, channels, now, *, sanitize=False):
        assembler = GuideAssembler(channels, now)
        reader = xml.sax.make_parser()
        reader.setFeature(xml.sax.handler.feature_namespaces, False)
        reader.setFeature(xml.sax.handler.feature_external_ges, False)
        reader.setContentHandler(_GuideContentHandler(assembler))
        with open(file_path, "rb") as handle:
            source = SanitizingReader(handle) if sanitize else handle
            try:
                reader.parse(source)
            except xml.sax.SAXException as exc:
                raise GuideParseError(f"SAX parse error: {exc}") from exc
        return assembler.build()
