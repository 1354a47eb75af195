"""
Shared dataclasses used across playlist, guide and resolution services.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable


UNCATEGORIZED = "Uncategorized"


@dataclass(slots=True, frozen=True)
class Channel:
    """A playable live channel produced once per playlist load."""
    id: str
    name: str
    stream_url: str
    group: str = UNCATEGORIZED
    logo_url: str | None = None
    epg_id: str | None = None
    raw_title: str = ""
    provider_stream_id: int | None = None


@dataclass(slots=True, frozen=True)
class Program:
    """A single guide entry with UTC start and end."""
    title: str
    start: datetime
    end: datetime
    description: str | None = None

    def is_live(self, now: datetime) -> bool:
        return self.start <= now < self.end


@dataclass(slots=True, frozen=True)
class ChannelGuide:
    """Now/next view of one channel's schedule."""
    now: Program | None = None
    next: Program | None = None
    later: Program | None = None
    upcoming: tuple[Program, ...] = ()
    recent: tuple[Program, ...] = ()

    @property
    def has_program_data(self) -> bool:
        return bool(self.now or self.next or self.later or self.upcoming)


@dataclass(slots=True, frozen=True)
class Snapshot:
    """Channel list plus guide returned to callers."""
    channels: tuple[Channel, ...]
    grouped: dict[str, tuple[Channel, ...]]
    guide: dict[str, ChannelGuide]
    favorite_groups: tuple[str, ...]
    favorite_channels: tuple[str, ...]
    loaded_at: datetime
    warning: str | None = None


@dataclass(slots=True, frozen=True)
class ProviderCredentials:
    """Xtream-style account extracted from a provider URL."""
    base_url: str
    username: str
    password: str

    @property
    def cache_key(self) -> str:
        raw = f"{self.base_url}|{self.username}|{self.password}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def api_url(self, action: str | None = None, **params: object) -> str:
        url = f"{self.base_url}/player_api.php?username={self.username}&password={self.password}"
        if action:
            url += f"&action={action}"
        for key, value in params.items():
            url += f"&{key}={value}"
        return url

    def live_stream_url(self, stream_id: int) -> str:
        return f"{self.base_url}/{self.username}/{self.password}/{stream_id}"

    def series_stream_url(self, stream_id: int, extension: str | None) -> str:
        ext = (extension or "").strip() or "mp4"
        return f"{self.base_url}/series/{self.username}/{self.password}/{stream_id}.{ext}"

    def movie_stream_url(self, stream_id: int, extension: str | None) -> str:
        ext = (extension or "").strip() or "mp4"
        return f"{self.base_url}/movie/{self.username}/{self.password}/{stream_id}.{ext}"


@dataclass(slots=True, frozen=True)
class CacheOwnership:
    """Identifies whose data an in-memory cache holds."""
    profile_id: str
    config_signature: str


@dataclass(slots=True, frozen=True)
class IptvConfig:
    """Decrypted per-profile configuration."""
    playlist_url: str = ""
    guide_url: str = ""
    favorite_groups: tuple[str, ...] = ()
    favorite_channels: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class SeriesEpisode:
    id: int
    season: int
    episode: int
    title: str
    container_extension: str | None = None


@dataclass(slots=True, frozen=True)
class CatalogEntry:
    """One provider series, pre-normalized for matching."""
    series_id: int
    name: str
    normalized_name: str
    canonical_title_key: str
    title_tokens: frozenset[str]
    tmdb: str | None = None
    imdb: str | None = None
    year: int | None = None


@dataclass(slots=True, frozen=True)
class CatalogIndex:
    """Point-in-time series catalog with lookup indices."""
    created_at: float
    entries: tuple[CatalogEntry, ...] = ()
    by_tmdb: dict[str, tuple[CatalogEntry, ...]] = field(default_factory=dict)
    by_imdb: dict[str, tuple[CatalogEntry, ...]] = field(default_factory=dict)
    by_canonical_title: dict[str, tuple[CatalogEntry, ...]] = field(default_factory=dict)
    by_token: dict[str, tuple[CatalogEntry, ...]] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ResolvedEpisode:
    stream_id: int
    series_id: int
    confidence: float
    method: str
    resolved_at: float
    container_extension: str | None = None


@dataclass(slots=True, frozen=True)
class StreamSource:
    """Playable on-demand stream found on the provider."""
    title: str
    label: str
    quality: str
    url: str


@dataclass(slots=True, frozen=True)
class LoadProgress:
    message: str
    percent: int | None = None


ProgressCallback = Callable[[LoadProgress], None]


__all__ = [
    "UNCATEGORIZED",
    "Channel",
    "Program",
    "ChannelGuide",
    "Snapshot",
    "ProviderCredentials",
    "CacheOwnership",
    "IptvConfig",
    "SeriesEpisode",
    "CatalogEntry",
    "CatalogIndex",
    "ResolvedEpisode",
    "StreamSource",
    "LoadProgress",
    "ProgressCallback",
]
