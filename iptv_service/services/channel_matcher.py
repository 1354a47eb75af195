"""
Channel key matching

Guide documents identify channels by their own ids ("BBC1.uk", "bbc one hd"),
which rarely equal playlist ids. ChannelKeyLookup indexes playlist channels
under several normalized keys so a programme's channel attribute, or any of
its display-name aliases, can be mapped back to a playlist channel.
"""
import re
from collections.abc import Iterable

from iptv_service.services.iptv_types import Channel
from iptv_service.services.playlist_service import extract_attr


_QUALITY_SUFFIX = re.compile(r"\b(hd|fhd|uhd|sd|4k|hevc|x265|x264|h264|h265)\b")
_NON_ALNUM = re.compile(r"[^a-z0-9]")
_MULTI_SPACE = re.compile(r"\s+")


def normalize_channel_key(value: str | None) -> str:
    return (value or "").strip().lower()


def normalize_loose_key(value: str | None) -> str:
    return _NON_ALNUM.sub("", normalize_channel_key(value))


def strip_quality_suffixes(value: str | None) -> str:
    stripped = _QUALITY_SUFFIX.sub(" ", normalize_channel_key(value))
    return _MULTI_SPACE.sub(" ", stripped).strip()


def _keys_for(value: str | None) -> list[str]:
    return [
        normalize_channel_key(value),
        normalize_loose_key(value),
        normalize_loose_key(strip_quality_suffixes(value)),
    ]


class ChannelKeyLookup:
    """Maps normalized guide keys to playlist channels. First channel wins a key."""

    def __init__(self, channels: Iterable[Channel]):
        self._by_key: dict[str, Channel] = {}
        for channel in channels:
            sources = [channel.name, channel.epg_id]
            if channel.raw_title:
                sources.append(extract_attr(channel.raw_title, "tvg-name"))
            for source in sources:
                if not source:
                    continue
                for key in _keys_for(source):
                    if key:
                        self._by_key.setdefault(key, channel)

    def __len__(self) -> int:
        return len(self._by_key)

    def lookup(self, value: str | None) -> Channel | None:
        for key in _keys_for(value):
            if key and key in self._by_key:
                return self._by_key[key]
        return None

    def resolve(self, xml_channel_id: str | None, aliases: Iterable[str] = ()) -> Channel | None:
        """
        Resolve a guide channel reference.

        Args:
            xml_channel_id: The programme's channel attribute
            aliases: display-name values declared for that channel id

        Returns:
            The matching playlist channel, or None
        """
        channel = self.lookup(xml_channel_id)
        if channel is not None:
            return channel
        for alias in aliases:
            channel = self.lookup(alias)
            if channel is not None:
                return channel
        return None
