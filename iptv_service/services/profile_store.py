"""
Profile Store

Per-profile configuration persistence. Playlist and guide inputs are
normalized, encrypted with ConfigCipher and stored in SQLite; favorites are
stored as JSON lists. Change listeners are notified after every write so
in-memory caches can be invalidated.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from pydantic import BaseModel, Field

from iptv_service.database import session_scope
from iptv_service.models import ProfileConfig
from iptv_service.services.cache_store import SnapshotDiskCache
from iptv_service.services.credentials import normalize_guide_input, normalize_playlist_input
from iptv_service.services.iptv_types import IptvConfig
from iptv_service.utils.secure_storage import ConfigCipher


logger = logging.getLogger(__name__)

ConfigChangeListener = Callable[[str], Awaitable[None]]


class ProfileState(BaseModel):
    """Portable profile state exchanged with a cloud sync backend."""
    playlist_url: str = ""
    guide_url: str = ""
    favorite_groups: list[str] = Field(default_factory=list)
    favorite_channels: list[str] = Field(default_factory=list)


def validate_profile_id(profile_id: str) -> str:
    cleaned = (profile_id or "").strip()
    if not cleaned or any(sep in cleaned for sep in ("/", "\\", "..")):
        raise ValueError(f"Invalid profile id: {profile_id!r}")
    return cleaned


def _toggle(values: tuple[str, ...], value: str) -> tuple[str, ...]:
    """Remove value if present, else put it first; result trimmed and de-duplicated."""
    target = value.strip()
    cleaned: list[str] = []
    for item in values:
        item = item.strip()
        if item and item not in cleaned:
            cleaned.append(item)
    if not target:
        return tuple(cleaned)
    if target in cleaned:
        cleaned.remove(target)
    else:
        cleaned.insert(0, target)
    return tuple(cleaned)


def _load_list(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    try:
        values = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed favorites list")
        return ()
    if not isinstance(values, list):
        return ()
    return tuple(str(v) for v in values if isinstance(v, str) and v.strip())


@dataclass(slots=True)
class _Record:
    playlist_url: str
    guide_url: str
    favorite_groups: tuple[str, ...]
    favorite_channels: tuple[str, ...]


class ProfileStore:
    """Reads and writes encrypted per-profile configuration."""

    def __init__(
        self,
        cipher: ConfigCipher,
        *,
        disk_cache: SnapshotDiskCache | None = None,
        default_profile_id: str = "default",
    ):
        self._cipher = cipher
        self._disk_cache = disk_cache
        self._active_profile_id = validate_profile_id(default_profile_id)
        self._listeners: list[ConfigChangeListener] = []

    @property
    def active_profile_id(self) -> str:
        return self._active_profile_id

    def add_listener(self, listener: ConfigChangeListener) -> None:
        self._listeners.append(listener)

    def switch_profile(self, profile_id: str) -> bool:
        """
        Make profile_id the active profile.

        Returns:
            True when the active profile changed

        Raises:
            ValueError: If the profile id is blank or contains path separators
        """
        profile_id = validate_profile_id(profile_id)
        if profile_id == self._active_profile_id:
            return False
        logger.info("Switching active profile %s -> %s", self._active_profile_id, profile_id)
        self._active_profile_id = profile_id
        return True

    async def get_config(self, profile_id: str | None = None) -> IptvConfig:
        record = await self._read(profile_id or self._active_profile_id)
        if record is None:
            return IptvConfig()
        return IptvConfig(
            playlist_url=record.playlist_url,
            guide_url=record.guide_url,
            favorite_groups=record.favorite_groups,
            favorite_channels=record.favorite_channels,
        )

    async def save_config(self, playlist_url: str, guide_url: str, profile_id: str | None = None) -> IptvConfig:
        """Normalize, encrypt and store both inputs, keeping favorites."""
        profile_id = profile_id or self._active_profile_id
        current = await self.get_config(profile_id)
        updated = IptvConfig(
            playlist_url=normalize_playlist_input(playlist_url),
            guide_url=normalize_guide_input(guide_url),
            favorite_groups=current.favorite_groups,
            favorite_channels=current.favorite_channels,
        )
        await self._write(profile_id, updated)
        logger.info("Saved configuration for profile %s", profile_id)
        await self._notify(profile_id)
        return updated

    async def clear_config(self, profile_id: str | None = None) -> None:
        profile_id = profile_id or self._active_profile_id
        async with session_scope() as session:
            row = await session.get(ProfileConfig, profile_id)
            if row is not None:
                await session.delete(row)
        if self._disk_cache is not None:
            self._disk_cache.delete(profile_id)
        logger.info("Cleared configuration for profile %s", profile_id)
        await self._notify(profile_id)

    async def toggle_favorite_group(self, group: str, profile_id: str | None = None) -> tuple[str, ...]:
        profile_id = profile_id or self._active_profile_id
        current = await self.get_config(profile_id)
        groups = _toggle(current.favorite_groups, group)
        await self._write(profile_id, IptvConfig(
            playlist_url=current.playlist_url,
            guide_url=current.guide_url,
            favorite_groups=groups,
            favorite_channels=current.favorite_channels,
        ))
        return groups

    async def toggle_favorite_channel(self, channel_id: str, profile_id: str | None = None) -> tuple[str, ...]:
        profile_id = profile_id or self._active_profile_id
        current = await self.get_config(profile_id)
        channels = _toggle(current.favorite_channels, channel_id)
        await self._write(profile_id, IptvConfig(
            playlist_url=current.playlist_url,
            guide_url=current.guide_url,
            favorite_groups=current.favorite_groups,
            favorite_channels=channels,
        ))
        return channels

    async def export_profile_state(self, profile_id: str | None = None) -> ProfileState:
        config = await self.get_config(profile_id)
        return ProfileState(
            playlist_url=config.playlist_url,
            guide_url=config.guide_url,
            favorite_groups=list(config.favorite_groups),
            favorite_channels=list(config.favorite_channels),
        )

    async def import_profile_state(self, state: ProfileState, profile_id: str | None = None) -> IptvConfig:
        """Replace a profile's configuration with state pulled from sync."""
        profile_id = validate_profile_id(profile_id or self._active_profile_id)
        config = IptvConfig(
            playlist_url=normalize_playlist_input(state.playlist_url),
            guide_url=normalize_guide_input(state.guide_url),
            favorite_groups=_toggle(tuple(state.favorite_groups), ""),
            favorite_channels=_toggle(tuple(state.favorite_channels), ""),
        )
        await self._write(profile_id, config)
        logger.info("Imported profile state for %s", profile_id)
        await self._notify(profile_id)
        return config

    async def _read(self, profile_id: str) -> _Record | None:
        async with session_scope() as session:
            row = await session.get(ProfileConfig, profile_id)
            if row is None:
                return None
            return _Record(
                playlist_url=self._cipher.decrypt(row.playlist_url),
                guide_url=self._cipher.decrypt(row.guide_url),
                favorite_groups=_load_list(row.favorite_groups),
                favorite_channels=_load_list(row.favorite_channels),
            )

    async def _write(self, profile_id: str, config: IptvConfig) -> None:
        async with session_scope() as session:
            row = await session.get(ProfileConfig, profile_id)
            if row is None:
                row = ProfileConfig(profile_id=profile_id)
                session.add(row)
            row.playlist_url = self._cipher.encrypt(config.playlist_url)
            row.guide_url = self._cipher.encrypt(config.guide_url)
            row.favorite_groups = json.dumps(list(config.favorite_groups))
            row.favorite_channels = json.dumps(list(config.favorite_channels))

    async def _notify(self, profile_id: str) -> None:
        for listener in self._listeners:
            await listener(profile_id)

