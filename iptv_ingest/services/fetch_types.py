"""
Shared dataclasses used between the parsers, protocol clients and normalizer.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from iptv_ingest.entities import DropSummary, SourceKind


@dataclass(slots=True)
class M3URecord:
    """One #EXTINF line paired with its URL line."""
    name: str
    url: str
    group: str | None = None
    logo: str | None = None
    tvg_id: str | None = None
    tvg_name: str | None = None
    duration: int = -1
    catchup: str | None = None
    catchup_days: int | None = None
    catchup_source: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class M3UParseResult:
    records: list[M3URecord] = field(default_factory=list)
    epg_urls: list[str] = field(default_factory=list)
    dropped: DropSummary = field(default_factory=DropSummary)


@dataclass(slots=True)
class SourceCategory:
    """Category as listed by Xtream Codes or a Stalker portal."""
    source_id: str
    name: str
    position: int = 0


@dataclass(slots=True)
class XtreamStream:
    stream_id: str | None
    name: str | None
    stream_url: str | None
    category_id: str | None = None
    logo: str | None = None
    epg_channel_id: str | None = None
    number: int | None = None
    tv_archive: bool = False
    tv_archive_duration: int | None = None


@dataclass(slots=True)
class StalkerChannel:
    channel_id: str | None
    name: str | None
    cmd: str | None
    genre_id: str | None = None
    logo: str | None = None
    epg_id: str | None = None
    number: int | None = None
    archive: bool = False
    archive_days: int | None = None


@dataclass(slots=True)
class GuideChannel:
    """Channel element of an XMLTV guide."""
    channel_key: str
    display_names: list[str] = field(default_factory=list)
    icon_url: str | None = None


@dataclass(slots=True)
class RawProgram:
    """Programme as read from a guide, before UTC normalization and overlap checks."""
    channel_key: str
    title: str | None
    start: datetime
    stop: datetime
    description: str | None = None


@dataclass(slots=True)
class GuidePayload:
    channels: list[GuideChannel] = field(default_factory=list)
    programs: list[RawProgram] = field(default_factory=list)


@dataclass(slots=True)
class SourcePayload:
    """Everything fetched for one playlist in one cycle, before normalization."""
    kind: SourceKind
    m3u: M3UParseResult | None = None
    categories: list[SourceCategory] = field(default_factory=list)
    xtream_streams: list[XtreamStream] = field(default_factory=list)
    stalker_channels: list[StalkerChannel] = field(default_factory=list)
    guide: GuidePayload | None = None
    guide_failed: bool = False


__all__ = [
    "GuideChannel",
    "GuidePayload",
    "M3UParseResult",
    "M3URecord",
    "RawProgram",
    "SourceCategory",
    "SourcePayload",
    "StalkerChannel",
    "XtreamStream",
]
