"""
EPG Query Service

Answers "what is on now and next" for a channel. Entries are indexed per
guide channel key, sorted by start time, and looked up by binary search.
"""
from __future__ import annotations

import logging
from bisect import bisect_left, bisect_right
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from iptv_ingest.entities import Channel, EpgEntry
from iptv_ingest.services.persistence import PlaylistStore
from iptv_ingest.utils.timezone import ensure_utc

logger = logging.getLogger(__name__)

# How far around "now" to load entries when answering from the store
NOW_NEXT_LOOKBEHIND = timedelta(hours=12)
NOW_NEXT_LOOKAHEAD = timedelta(hours=24)


class EpgIndex:
    """Per channel key, EPG entries ascending by start with a parallel list of starts."""

    def __init__(self, entries: Iterable[EpgEntry] = ()) -> None:
        grouped: dict[str, list[EpgEntry]] = defaultdict(list)
        for entry in entries:
            grouped[entry.channel_key].append(entry)
        self._entries: dict[str, list[EpgEntry]] = {}
        self._starts: dict[str, list[datetime]] = {}
        for channel_key, channel_entries in grouped.items():
            channel_entries.sort(key=lambda entry: entry.start)
            self._entries[channel_key] = channel_entries
            self._starts[channel_key] = [entry.start for entry in channel_entries]

    def __contains__(self, channel_key: object) -> bool:
        return channel_key in self._entries

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    def current_and_next(self, channel_key: str, now: datetime) -> tuple[EpgEntry | None, EpgEntry | None]:
        """
        Find the entry airing at `now` and the one after it

        Returns:
            (current, next); current is None in a gap, next is None past the last entry
        """
        entries = self._entries.get(channel_key)
        if not entries:
            return None, None
        now = ensure_utc(now)
        index = bisect_right(self._starts[channel_key], now) - 1
        current = entries[index] if index >= 0 and entries[index].end > now else None
        upcoming = entries[index + 1] if index + 1 < len(entries) else None
        return current, upcoming

    def window(self, channel_key: str, start: datetime, end: datetime) -> list[EpgEntry]:
        """Entries overlapping [start, end)"""
        entries = self._entries.get(channel_key)
        if not entries:
            return []
        start, end = ensure_utc(start), ensure_utc(end)
        starts = self._starts[channel_key]
        first = max(bisect_right(starts, start) - 1, 0)
        last = bisect_left(starts, end)
        return [entry for entry in entries[first:last] if entry.end > start]


class EpgCorrelator:
    """Resolves channels to their guide entries through the channel's EPG id."""

    def __init__(self, channels: Iterable[Channel], index: EpgIndex) -> None:
        self._keys = {channel.id: channel.epg_channel_id for channel in channels}
        self._index = index

    def current_and_next(self, channel_id: str, now_utc: datetime) -> tuple[EpgEntry | None, EpgEntry | None]:
        channel_key = self._keys.get(channel_id)
        if not channel_key:
            return None, None
        return self._index.current_and_next(channel_key, now_utc)


async def get_now_next(
    store: PlaylistStore,
    playlist_id: str,
    channel: Channel,
    now: datetime | None = None,
) -> tuple[EpgEntry | None, EpgEntry | None]:
    """
    Answer now/next for one stored channel

    Args:
        store: Persistence port
        playlist_id: Playlist that owns the channel
        channel: Channel to look up
        now: Reference time (defaults to the current UTC time)
    """
    now = ensure_utc(now or datetime.now(timezone.utc))
    if not channel.epg_channel_id:
        return None, None
    entries = await store.epg_window(
        playlist_id,
        channel.epg_channel_id,
        now - NOW_NEXT_LOOKBEHIND,
        now + NOW_NEXT_LOOKAHEAD,
    )
    logger.debug("Loaded %s EPG entries around %s for %s", len(entries), now.isoformat(), channel.id)
    return EpgCorrelator([channel], EpgIndex(entries)).current_and_next(channel.id, now)
