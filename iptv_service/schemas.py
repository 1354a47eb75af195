from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from iptv_service.services.iptv_types import Channel, ChannelGuide, Program, Snapshot, StreamSource


class ProgramResponse(BaseModel):
    """Single program data"""
    title: str
    start_time: str = Field(..., description="ISO8601 UTC start time")
    stop_time: str = Field(..., description="ISO8601 UTC stop time")
    description: str | None = None

    @classmethod
    def from_program(cls, program: Program) -> "ProgramResponse":
        return cls(
            title=program.title,
            start_time=program.start.isoformat(),
            stop_time=program.end.isoformat(),
            description=program.description,
        )


def _program(program: Program | None) -> ProgramResponse | None:
    return ProgramResponse.from_program(program) if program else None


class ChannelGuideResponse(BaseModel):
    """Now/next view of one channel"""
    now: ProgramResponse | None = None
    next: ProgramResponse | None = None
    later: ProgramResponse | None = None
    upcoming: list[ProgramResponse] = Field(default_factory=list)
    recent: list[ProgramResponse] = Field(default_factory=list)

    @classmethod
    def from_guide(cls, guide: ChannelGuide) -> "ChannelGuideResponse":
        return cls(
            now=_program(guide.now),
            next=_program(guide.next),
            later=_program(guide.later),
            upcoming=[ProgramResponse.from_program(p) for p in guide.upcoming],
            recent=[ProgramResponse.from_program(p) for p in guide.recent],
        )


class ChannelResponse(BaseModel):
    """Channel data model"""
    id: str = Field(..., description="Stable channel id (epg:, url: or xtream: prefixed)")
    name: str
    stream_url: str
    group: str
    logo_url: str | None = None
    epg_id: str | None = None
    provider_stream_id: int | None = None

    @classmethod
    def from_channel(cls, channel: Channel) -> "ChannelResponse":
        return cls(
            id=channel.id,
            name=channel.name,
            stream_url=channel.stream_url,
            group=channel.group,
            logo_url=channel.logo_url,
            epg_id=channel.epg_id,
            provider_stream_id=channel.provider_stream_id,
        )


class SnapshotResponse(BaseModel):
    """Channels, groups and guide for the active profile"""
    loaded_at: str
    warning: str | None = None
    channels_total: int
    channels_with_guide: int
    channels: list[ChannelResponse]
    groups: dict[str, list[str]] = Field(..., description="Channel ids per group, groups sorted by name")
    guide: dict[str, ChannelGuideResponse] = Field(..., description="Guide keyed by channel id")
    favorite_groups: list[str]
    favorite_channels: list[str]

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "SnapshotResponse":
        guide = {
            channel_id: ChannelGuideResponse.from_guide(entry)
            for channel_id, entry in snapshot.guide.items()
            if entry.has_program_data
        }
        return cls(
            loaded_at=snapshot.loaded_at.isoformat(),
            warning=snapshot.warning,
            channels_total=len(snapshot.channels),
            channels_with_guide=len(guide),
            channels=[ChannelResponse.from_channel(c) for c in snapshot.channels],
            groups={name: [c.id for c in members] for name, members in snapshot.grouped.items()},
            guide=guide,
            favorite_groups=list(snapshot.favorite_groups),
            favorite_channels=list(snapshot.favorite_channels),
        )


class ConfigRequest(BaseModel):
    """Playlist and guide input; triplets and provider hosts are accepted"""
    playlist_url: str = Field(..., min_length=1, description="Playlist URL or 'host user pass'")
    guide_url: str = Field(default="", description="Optional XMLTV URL")

    @field_validator("playlist_url")
    @classmethod
    def validate_playlist_url(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("playlist_url must not be blank")
        return v


class ConfigResponse(BaseModel):
    """Stored configuration with credentials masked"""
    profile_id: str
    configured: bool
    playlist_url: str
    guide_url: str
    favorite_groups: list[str]
    favorite_channels: list[str]


class ToggleRequest(BaseModel):
    value: str = Field(..., min_length=1, description="Group title or channel id")


class FavoritesResponse(BaseModel):
    favorites: list[str] = Field(..., description="Favorites, newest first")


class ProfileResponse(BaseModel):
    profile_id: str
    changed: bool


class GuideRefreshResponse(BaseModel):
    status: str = Field(..., description="'refreshed' or 'skipped'")
    message: str | None = None
    snapshot: SnapshotResponse | None = None


class StreamSourceResponse(BaseModel):
    """Playable on-demand stream"""
    title: str
    label: str
    quality: str
    url: str

    @classmethod
    def from_source(cls, source: StreamSource) -> "StreamSourceResponse":
        return cls(title=source.title, label=source.label, quality=source.quality, url=source.url)


class ErrorDetail(BaseModel):
    """Standard error detail"""
    code: str = Field(..., description="Error code (e.g., 'PLAYLIST_FAILED', 'VALIDATION_ERROR')")
    message: str = Field(..., description="Human-readable error message")
    context: dict | None = Field(None, description="Additional context about the error")


class StandardErrorResponse(BaseModel):
    """Standardized error response"""
    status: str = Field("error", description="Status indicator")
    timestamp: str = Field(..., description="ISO8601 timestamp of error")
    error: ErrorDetail = Field(..., description="Error details")

    @classmethod
    def build(cls, code: str, message: str, now: datetime, context: dict | None = None) -> "StandardErrorResponse":
        return cls(timestamp=now.isoformat(), error=ErrorDetail(code=code, message=message, context=context))
