"""
Snapshot cache

In-memory CacheStore per profile/config ownership plus a per-profile JSON file
on disk. Disk payloads are validated with pydantic; anything corrupt,
mismatched or oversized is treated as a miss.
"""
from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

import aiofiles
from pydantic import BaseModel, ValidationError

from iptv_service.errors import CacheIntegrityError
from iptv_service.services.iptv_types import (
    UNCATEGORIZED,
    CacheOwnership,
    Channel,
    ChannelGuide,
    Program,
)
from iptv_service.utils.data_merging import has_any_program_data
from iptv_service.utils.timezone import utc_now


logger = logging.getLogger(__name__)

CACHE_FILE_SUFFIX = "_iptv_cache.json"


def build_config_signature(playlist_url: str, guide_url: str) -> str:
    """SHA-256 hex of the trimmed playlist and guide inputs."""
    raw = f"{(playlist_url or '').strip()}|{(guide_url or '').strip()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class CacheStore:
    """Everything loaded for one profile/config pair."""
    owner: CacheOwnership
    channels: list[Channel] = field(default_factory=list)
    guides: dict[str, ChannelGuide] = field(default_factory=dict)
    playlist_loaded_at: datetime | None = None
    guide_loaded_at: datetime | None = None
    discovered_guide_url: str | None = None
    preferred_guide_url: str | None = None

    @property
    def has_channels(self) -> bool:
        return bool(self.channels)

    @property
    def has_guide_data(self) -> bool:
        return has_any_program_data(self.guides)

    def playlist_age(self, now: datetime | None = None) -> timedelta | None:
        if self.playlist_loaded_at is None:
            return None
        return (now or utc_now()) - self.playlist_loaded_at

    def guide_age(self, now: datetime | None = None) -> timedelta | None:
        if self.guide_loaded_at is None:
            return None
        return (now or utc_now()) - self.guide_loaded_at

    def is_playlist_fresh(self, ttl: timedelta, now: datetime | None = None) -> bool:
        age = self.playlist_age(now)
        return self.has_channels and age is not None and age < ttl


# Disk payload models


class CachedProgram(BaseModel):
    title: str
    start: datetime
    end: datetime
    description: str | None = None

    @classmethod
    def from_program(cls, program: Program, *, keep_description: bool) -> CachedProgram:
        return cls(
            title=program.title,
            start=program.start,
            end=program.end,
            description=program.description if keep_description else None,
        )

    def to_program(self) -> Program:
        return Program(title=self.title, start=self.start, end=self.end, description=self.description)


class CachedGuide(BaseModel):
    now: CachedProgram | None = None
    next: CachedProgram | None = None
    later: CachedProgram | None = None
    upcoming: list[CachedProgram] = []
    recent: list[CachedProgram] = []

    @classmethod
    def from_guide(cls, guide: ChannelGuide, *, keep_description: bool = False) -> CachedGuide:
        def convert(program: Program | None) -> CachedProgram | None:
            if program is None:
                return None
            return CachedProgram.from_program(program, keep_description=keep_description)

        return cls(
            now=convert(guide.now),
            next=convert(guide.next),
            later=convert(guide.later),
            upcoming=[convert(p) for p in guide.upcoming],
            recent=[convert(p) for p in guide.recent],
        )

    def to_guide(self) -> ChannelGuide:
        return ChannelGuide(
            now=self.now.to_program() if self.now else None,
            next=self.next.to_program() if self.next else None,
            later=self.later.to_program() if self.later else None,
            upcoming=tuple(p.to_program() for p in self.upcoming),
            recent=tuple(p.to_program() for p in self.recent),
        )


class CachedChannel(BaseModel):
    id: str
    name: str
    stream_url: str
    group: str = UNCATEGORIZED
    logo_url: str | None = None
    epg_id: str | None = None
    provider_stream_id: int | None = None

    @classmethod
    def from_channel(cls, channel: Channel) -> CachedChannel:
        return cls(
            id=channel.id,
            name=channel.name,
            stream_url=channel.stream_url,
            group=channel.group,
            logo_url=channel.logo_url,
            epg_id=channel.epg_id,
            provider_stream_id=channel.provider_stream_id,
        )

    def to_channel(self) -> Channel:
        # Raw EXTINF metadata is not persisted; the display name stands in for it.
        return Channel(
            id=self.id,
            name=self.name,
            stream_url=self.stream_url,
            group=self.group or UNCATEGORIZED,
            logo_url=self.logo_url,
            epg_id=self.epg_id,
            raw_title=self.name,
            provider_stream_id=self.provider_stream_id,
        )


class CachedSnapshot(BaseModel):
    """Serialized form of a CacheStore."""
    config_signature: str
    saved_at: datetime
    playlist_loaded_at: datetime | None = None
    guide_loaded_at: datetime | None = None
    discovered_guide_url: str | None = None
    preferred_guide_url: str | None = None
    channels: list[CachedChannel]
    guide: dict[str, CachedGuide] = {}


class SnapshotDiskCache:
    """One JSON snapshot file per profile under cache_dir."""

    def __init__(self, cache_dir: Path | str, max_bytes: int):
        self._cache_dir = Path(cache_dir)
        self._max_bytes = max_bytes

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def path_for(self, profile_id: str) -> Path:
        return self._cache_dir / f"{profile_id}{CACHE_FILE_SUFFIX}"

    async def read(self, owner: CacheOwnership) -> CacheStore | None:
        """
        Load the disk snapshot for an owner.

        Returns:
            Hydrated CacheStore, or None when the file is missing, oversized,
            corrupt, empty or belongs to a different configuration
        """
        path = self.path_for(owner.profile_id)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Cannot stat snapshot cache %s: %s", path, exc)
            return None

        if size > self._max_bytes * 2:
            logger.warning(
                "Snapshot cache %s is %.1f MB, over twice the ceiling; deleting",
                path,
                size / (1024 * 1024),
            )
            self._unlink(path)
            return None

        try:
            async with aiofiles.open(path, "rb") as f:
                raw = await f.read()
            return self._decode(raw, owner)
        except CacheIntegrityError as exc:
            logger.warning("Ignoring snapshot cache for profile %s: %s", owner.profile_id, exc)
            return None
        except OSError as exc:
            logger.warning("Failed to read snapshot cache %s: %s", path, exc)
            return None

    @staticmethod
    def _decode(raw: bytes, owner: CacheOwnership) -> CacheStore:
        try:
            payload = CachedSnapshot.model_validate_json(raw)
        except ValidationError as exc:
            raise CacheIntegrityError(f"corrupt payload ({exc.error_count()} errors)") from exc
        if payload.config_signature != owner.config_signature:
            raise CacheIntegrityError("configuration signature mismatch")
        if not payload.channels:
            raise CacheIntegrityError("no channels")

        return CacheStore(
            owner=owner,
            channels=[c.to_channel() for c in payload.channels],
            guides={channel_id: g.to_guide() for channel_id, g in payload.guide.items()},
            playlist_loaded_at=payload.playlist_loaded_at,
            guide_loaded_at=payload.guide_loaded_at,
            discovered_guide_url=payload.discovered_guide_url,
            preferred_guide_url=payload.preferred_guide_url,
        )

    async def write(self, store: CacheStore) -> bool:
        """
        Persist a CacheStore, dropping the guide when the payload is too large.

        Returns:
            True when a file was written
        """
        if not store.channels:
            return False

        payload = CachedSnapshot(
            config_signature=store.owner.config_signature,
            saved_at=utc_now(),
            playlist_loaded_at=store.playlist_loaded_at,
            guide_loaded_at=store.guide_loaded_at,
            discovered_guide_url=store.discovered_guide_url,
            preferred_guide_url=store.preferred_guide_url,
            channels=[CachedChannel.from_channel(c) for c in store.channels],
            guide={
                channel_id: CachedGuide.from_guide(guide)
                for channel_id, guide in store.guides.items()
                if guide.has_program_data
            },
        )
        data = payload.model_dump_json().encode("utf-8")
        if len(data) > self._max_bytes:
            logger.warning(
                "Snapshot for profile %s is %.1f MB, over the %.1f MB ceiling; saving without guide",
                store.owner.profile_id,
                len(data) / (1024 * 1024),
                self._max_bytes / (1024 * 1024),
            )
            payload.guide = {}
            payload.guide_loaded_at = None
            data = payload.model_dump_json().encode("utf-8")

        path = self.path_for(store.owner.profile_id)
        temp_path = path.with_suffix(".tmp")
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(data)
            os.replace(temp_path, path)
        except OSError as exc:
            logger.error("Failed to write snapshot cache %s: %s", path, exc)
            self._unlink(temp_path)
            return False

        logger.info(
            "Saved snapshot cache for profile %s (%s channels, %s guides, %.2f MB)",
            store.owner.profile_id,
            len(payload.channels),
            len(payload.guide),
            len(data) / (1024 * 1024),
        )
        return True

    def delete(self, profile_id: str) -> bool:
        return self._unlink(self.path_for(profile_id))

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Failed to delete %s: %s", path, exc)
            return False
