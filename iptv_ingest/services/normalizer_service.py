"""
Normalization Service

Maps source-specific records onto the canonical entity graph. Individual bad
records are dropped and counted; they never fail a whole import.
"""
from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime

from iptv_ingest.entities import (
    Category,
    Channel,
    DropSummary,
    EntityIndex,
    EpgEntry,
    SourceKind,
)
from iptv_ingest.exceptions import ValidationError
from iptv_ingest.services.fetch_types import (
    GuideChannel,
    M3UParseResult,
    RawProgram,
    SourceCategory,
    SourcePayload,
    StalkerChannel,
    XtreamStream,
)
from iptv_ingest.utils.logging_helpers import log_drop_summary
from iptv_ingest.utils.timezone import ensure_utc


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class NormalizedPlaylist:
    playlist_id: str
    categories: EntityIndex[Category]
    channels: EntityIndex[Channel]
    epg_entries: EntityIndex[EpgEntry]
    dropped: DropSummary


def _digest(*parts: str) -> str:
    return hashlib.sha1("\x1f".join(parts).encode("utf-8")).hexdigest()[:16]


def make_channel_id(playlist_id: str, source_id: str | None, name: str, url: str) -> str:
    """Source identifier when the source has one, else a hash of name and URL"""
    if source_id:
        return f"{playlist_id}:ch:{source_id}"
    return f"{playlist_id}:ch:h{_digest(name.strip(), url.strip())}"


def make_category_id(playlist_id: str, source_id: str | None = None, name: str | None = None) -> str:
    if source_id:
        return f"{playlist_id}:cat:{source_id}"
    return f"{playlist_id}:cat:h{_digest((name or '').strip().casefold())}"


def make_epg_entry_id(playlist_id: str, channel_key: str, start: datetime) -> str:
    return f"{playlist_id}:epg:{channel_key}:{int(start.timestamp())}"


def _fold(name: str) -> str:
    return " ".join(name.casefold().split())


def validate_channel_fields(name: str | None, url: str | None, allow_paths: bool = False) -> None:
    """
    Check the fields every channel needs

    allow_paths accepts scheme-less entries such as local file paths.

    Raises:
        ValidationError: With reason missing_name, missing_url or invalid_url
    """
    if not name or not name.strip():
        raise ValidationError("missing_name")
    if not url or not url.strip():
        raise ValidationError("missing_url")
    if not allow_paths and "://" not in url:
        raise ValidationError("invalid_url", f"Stream URL has no scheme: {url!r}")


class _PlaylistBuilder:
    """Accumulates categories and channels for one playlist."""

    def __init__(self, playlist_id: str, allow_paths: bool = False) -> None:
        self.playlist_id = playlist_id
        self.allow_paths = allow_paths
        self.categories: EntityIndex[Category] = EntityIndex(playlist_id)
        self.channels: EntityIndex[Channel] = EntityIndex(playlist_id)
        self.dropped = DropSummary()
        self._category_by_name: dict[str, str] = {}

    def category(self, name: str | None, source_id: str | None = None) -> str | None:
        """Return the category id, creating the category on first encounter"""
        name = (name or "").strip()
        if source_id:
            category_id = make_category_id(self.playlist_id, source_id=source_id)
        elif name:
            existing = self._category_by_name.get(name.casefold())
            if existing:
                return existing
            category_id = make_category_id(self.playlist_id, name=name)
        else:
            return None

        if category_id not in self.categories:
            self.categories.add(Category(
                id=category_id,
                playlist_id=self.playlist_id,
                name=name or source_id,
                position=len(self.categories),
                source_id=source_id,
            ))
        if name:
            self._category_by_name.setdefault(name.casefold(), category_id)
        return category_id

    def channel(self, *, source_id: str | None, name: str | None, url: str | None, **fields) -> Channel | None:
        try:
            validate_channel_fields(name, url, self.allow_paths)
        except ValidationError as exc:
            logger.debug("Dropping channel %r: %s", name, exc)
            self.dropped.add(exc.reason)
            return None

        channel = Channel(
            id=make_channel_id(self.playlist_id, source_id, name, url),
            playlist_id=self.playlist_id,
            name=name.strip(),
            stream_url=url.strip(),
            position=len(self.channels),
            **fields,
        )
        if not self.channels.add(channel):
            kept = self.channels.get(channel.id)
            logger.warning(
                "Duplicate channel id %s in playlist %s: keeping %r, dropping %r",
                channel.id,
                self.playlist_id,
                kept.name if kept else None,
                channel.name,
            )
            self.dropped.add("duplicate_id")
            return None
        return channel

    def finish(self, programs: Iterable[RawProgram], guide_channels: Iterable[GuideChannel] = ()) -> NormalizedPlaylist:
        epg_entries = normalize_epg(self.playlist_id, programs, self.channels, guide_channels, self.dropped)
        log_drop_summary(logger, self.playlist_id, self.dropped)
        logger.info(
            "Normalized playlist %s: %s categories, %s channels, %s EPG entries",
            self.playlist_id,
            len(self.categories),
            len(self.channels),
            len(epg_entries),
        )
        return NormalizedPlaylist(
            playlist_id=self.playlist_id,
            categories=self.categories,
            channels=self.channels,
            epg_entries=epg_entries,
            dropped=self.dropped,
        )


def normalize_m3u(
    playlist_id: str,
    parsed: M3UParseResult,
    programs: Iterable[RawProgram] = (),
    guide_channels: Iterable[GuideChannel] = (),
    allow_paths: bool = False,
) -> NormalizedPlaylist:
    builder = _PlaylistBuilder(playlist_id, allow_paths)
    builder.dropped.merge(parsed.dropped)

    for record in parsed.records:
        builder.channel(
            source_id=None,
            name=record.name,
            url=record.url,
            logo_url=record.logo,
            category_id=builder.category(record.group),
            epg_channel_id=record.tvg_id,
            catchup_mode=record.catchup,
            catchup_days=record.catchup_days,
            catchup_source=record.catchup_source,
        )

    return builder.finish(programs, guide_channels)


def normalize_xtream(
    playlist_id: str,
    categories: Iterable[SourceCategory],
    streams: Iterable[XtreamStream],
    programs: Iterable[RawProgram] = (),
    guide_channels: Iterable[GuideChannel] = (),
) -> NormalizedPlaylist:
    builder = _PlaylistBuilder(playlist_id)
    category_names = {}
    for category in categories:
        category_names[category.source_id] = category.name
        builder.category(category.name, source_id=category.source_id)

    for stream in streams:
        category_id = None
        if stream.category_id and stream.category_id in category_names:
            category_id = builder.category(category_names[stream.category_id], source_id=stream.category_id)
        builder.channel(
            source_id=stream.stream_id,
            name=stream.name,
            url=stream.stream_url,
            logo_url=stream.logo,
            category_id=category_id,
            epg_channel_id=stream.epg_channel_id,
            catchup_mode="xc" if stream.tv_archive else None,
            catchup_days=stream.tv_archive_duration if stream.tv_archive else None,
        )

    return builder.finish(programs, guide_channels)


def normalize_stalker(
    playlist_id: str,
    categories: Iterable[SourceCategory],
    channels: Iterable[StalkerChannel],
    programs: Iterable[RawProgram] = (),
    guide_channels: Iterable[GuideChannel] = (),
) -> NormalizedPlaylist:
    builder = _PlaylistBuilder(playlist_id)
    programs = list(programs)
    # get_epg_info keys programmes by portal channel id
    guide_keys = {program.channel_key for program in programs}

    category_names = {}
    for category in categories:
        category_names[category.source_id] = category.name
        builder.category(category.name, source_id=category.source_id)

    for record in channels:
        category_id = None
        if record.genre_id and record.genre_id in category_names:
            category_id = builder.category(category_names[record.genre_id], source_id=record.genre_id)
        epg_channel_id = record.epg_id
        if record.channel_id and record.channel_id in guide_keys:
            epg_channel_id = record.channel_id
        builder.channel(
            source_id=record.channel_id,
            name=record.name,
            url=record.cmd,
            logo_url=record.logo,
            category_id=category_id,
            epg_channel_id=epg_channel_id,
            catchup_mode="stalker" if record.archive else None,
            catchup_days=record.archive_days if record.archive else None,
        )

    return builder.finish(programs, guide_channels)


def _link_channels_by_name(
    channels: EntityIndex[Channel],
    available_keys: set[str],
    guide_channels: Iterable[GuideChannel],
) -> None:
    """Give channels without an EPG id the guide channel whose display name matches"""
    name_to_key: dict[str, str] = {}
    for guide_channel in guide_channels:
        if guide_channel.channel_key not in available_keys:
            continue
        for display_name in guide_channel.display_names:
            name_to_key.setdefault(_fold(display_name), guide_channel.channel_key)
    for key in available_keys:
        name_to_key.setdefault(_fold(key), key)

    for channel in channels:
        if channel.epg_channel_id:
            continue
        key = name_to_key.get(_fold(channel.name))
        if key:
            channels.replace(replace(channel, epg_channel_id=key))


def normalize_epg(
    playlist_id: str,
    programs: Iterable[RawProgram],
    channels: EntityIndex[Channel],
    guide_channels: Iterable[GuideChannel] = (),
    dropped: DropSummary | None = None,
) -> EntityIndex[EpgEntry]:
    """
    Turn raw programmes into non-overlapping UTC EPG entries

    Programmes for guide channels that no playlist channel references are
    skipped. Within one channel, when two entries overlap the later-starting
    one wins: the earlier entry is cut at the later start, and of two entries
    with the same start the one listed last is kept.
    """
    dropped = dropped if dropped is not None else DropSummary()
    programs = list(programs)
    if not programs:
        return EntityIndex(playlist_id)

    _link_channels_by_name(channels, {program.channel_key for program in programs}, guide_channels)
    referenced = {channel.epg_channel_id for channel in channels if channel.epg_channel_id}

    grouped: dict[str, list[tuple[datetime, int, datetime, RawProgram]]] = defaultdict(list)
    skipped = 0
    for sequence, program in enumerate(programs):
        if program.channel_key not in referenced:
            skipped += 1
            continue
        if not program.title:
            dropped.add("missing_title")
            continue
        start = ensure_utc(program.start)
        end = ensure_utc(program.stop)
        if end <= start:
            dropped.add("invalid_time_range")
            continue
        grouped[program.channel_key].append((start, sequence, end, program))

    entries: EntityIndex[EpgEntry] = EntityIndex(playlist_id)
    for channel_key in sorted(grouped):
        resolved: list[EpgEntry] = []
        for start, _, end, program in sorted(grouped[channel_key], key=lambda item: (item[0], item[1])):
            while resolved and resolved[-1].start == start:
                resolved.pop()
                dropped.add("overlapping_program")
            if resolved and resolved[-1].end > start:
                resolved[-1] = replace(resolved[-1], end=start)
            resolved.append(EpgEntry(
                id=make_epg_entry_id(playlist_id, channel_key, start),
                playlist_id=playlist_id,
                channel_key=channel_key,
                title=program.title,
                start=start,
                end=end,
                description=program.description,
            ))
        for entry in resolved:
            entries.add(entry)

    if skipped:
        logger.debug("Skipped %s programmes for guide channels not in playlist %s", skipped, playlist_id)
    return entries


def _from_m3u(playlist_id: str, payload: SourcePayload) -> NormalizedPlaylist:
    guide = payload.guide
    return normalize_m3u(
        playlist_id,
        payload.m3u or M3UParseResult(),
        guide.programs if guide else (),
        guide.channels if guide else (),
        allow_paths=payload.kind == SourceKind.M3U_FILE,
    )


def _from_xtream(playlist_id: str, payload: SourcePayload) -> NormalizedPlaylist:
    guide = payload.guide
    return normalize_xtream(
        playlist_id,
        payload.categories,
        payload.xtream_streams,
        guide.programs if guide else (),
        guide.channels if guide else (),
    )


def _from_stalker(playlist_id: str, payload: SourcePayload) -> NormalizedPlaylist:
    guide = payload.guide
    return normalize_stalker(
        playlist_id,
        payload.categories,
        payload.stalker_channels,
        guide.programs if guide else (),
        guide.channels if guide else (),
    )


_NORMALIZERS: dict[SourceKind, Callable[[str, SourcePayload], NormalizedPlaylist]] = {
    SourceKind.M3U_FILE: _from_m3u,
    SourceKind.M3U_URL: _from_m3u,
    SourceKind.XTREAM: _from_xtream,
    SourceKind.STALKER: _from_stalker,
}


def normalize(playlist_id: str, payload: SourcePayload) -> NormalizedPlaylist:
    """Normalize whatever the source fetcher produced for one playlist"""
    return _NORMALIZERS[payload.kind](playlist_id, payload)
