from pydantic import BaseModel, Field, field_validator, model_validator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from typing import Any

from iptv_ingest.entities import Channel, EpgEntry, Playlist, SourceKind
from iptv_ingest.services.stalker_client import StalkerConfig
from iptv_ingest.services.xtream_client import XtreamConfig
from iptv_ingest.utils.logging_helpers import sanitize_url
from iptv_ingest.utils.timezone import convert_to_timezone


def validate_timezone_name(v: str) -> str:
    """Validate an IANA timezone name or 'UTC'"""
    if v == "UTC":
        return v
    try:
        ZoneInfo(v)
        return v
    except (ZoneInfoNotFoundError, KeyError, ValueError):
        raise ValueError(f"Invalid timezone: {v}. Must be a valid IANA timezone (e.g., 'Europe/London', 'America/New_York') or 'UTC'")


class PlaylistCreate(BaseModel):
    """New playlist source"""
    name: str = Field(..., min_length=1, description="Display name")
    source_kind: SourceKind = Field(..., description="m3u-file, m3u-url, xtream or stalker")
    connection: dict[str, Any] = Field(
        default_factory=dict,
        description="Source parameters: path (m3u-file), url (m3u-url), base_url/username/password (xtream), base_url/mac (stalker)"
    )
    epg_url: str | None = Field(None, description="XMLTV guide URL overriding the source's own guide")

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @model_validator(mode='after')
    def validate_connection(self):
        """Check the connection parameters the source kind needs"""
        if self.source_kind == SourceKind.M3U_FILE and not self.connection.get("path"):
            raise ValueError("m3u-file playlists need connection.path")
        if self.source_kind == SourceKind.M3U_URL and not self.connection.get("url"):
            raise ValueError("m3u-url playlists need connection.url")
        if self.source_kind == SourceKind.XTREAM:
            XtreamConfig.from_connection(self.connection)
        if self.source_kind == SourceKind.STALKER:
            StalkerConfig.from_connection(self.connection)
        return self


class PlaylistResponse(BaseModel):
    """Playlist with its sync state; credentials are never returned"""
    id: str
    name: str
    source_kind: SourceKind
    source: str | None = Field(None, description="Sanitized source location")
    epg_url: str | None
    sync_status: str
    last_synced_at: str | None
    last_error: str | None
    dropped_records: int

    @classmethod
    def from_entity(cls, playlist: Playlist) -> "PlaylistResponse":
        connection = playlist.connection
        location = connection.get("url") or connection.get("base_url") or connection.get("host") \
            or connection.get("portal_url") or connection.get("path")
        return cls(
            id=playlist.id,
            name=playlist.name,
            source_kind=playlist.source_kind,
            source=sanitize_url(str(location)) if location else None,
            epg_url=sanitize_url(playlist.epg_url) if playlist.epg_url else None,
            sync_status=playlist.sync_status.value,
            last_synced_at=playlist.last_synced_at.isoformat() if playlist.last_synced_at else None,
            last_error=playlist.last_error,
            dropped_records=playlist.dropped_records,
        )


class ChannelResponse(BaseModel):
    id: str
    name: str
    stream_url: str
    logo_url: str | None
    category_id: str | None
    epg_channel_id: str | None
    position: int
    catchup_mode: str | None
    catchup_days: int | None
    stale: bool
    favorite: bool = False

    @classmethod
    def from_entity(cls, channel: Channel, favorite: bool = False) -> "ChannelResponse":
        return cls(
            id=channel.id,
            name=channel.name,
            stream_url=channel.stream_url,
            logo_url=channel.logo_url,
            category_id=channel.category_id,
            epg_channel_id=channel.epg_channel_id,
            position=channel.position,
            catchup_mode=channel.catchup_mode,
            catchup_days=channel.catchup_days,
            stale=channel.stale,
            favorite=favorite,
        )


class ProgramResponse(BaseModel):
    """Single program data"""
    id: str
    start_time: str
    stop_time: str
    title: str
    description: str | None

    @classmethod
    def from_entity(cls, entry: EpgEntry, timezone_str: str = "UTC") -> "ProgramResponse":
        return cls(
            id=entry.id,
            start_time=convert_to_timezone(entry.start, timezone_str),
            stop_time=convert_to_timezone(entry.end, timezone_str),
            title=entry.title,
            description=entry.description,
        )


class NowNextResponse(BaseModel):
    channel_id: str
    timestamp: str
    timezone: str = Field(..., description="Timezone used for all timestamps in response")
    current: ProgramResponse | None
    next: ProgramResponse | None


class ChangeCounts(BaseModel):
    added: int
    updated: int
    removed: int


class SyncResponse(BaseModel):
    """Outcome of one sync cycle"""
    playlist_id: str
    status: str
    started_at: str
    completed_at: str
    duration_seconds: float
    dropped_records: int
    dropped_by_reason: dict[str, int]
    guide_carried_forward: bool
    changes: dict[str, ChangeCounts] | None = None
    error: str | None = None
    error_type: str | None = None

