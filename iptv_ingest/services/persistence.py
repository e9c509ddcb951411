"""
Persistence port

The sync engine only talks to storage through PlaylistStore. The SQLite
implementation lives in db_service; MemoryPlaylistStore backs tests and
embedded use.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Protocol

from iptv_ingest.entities import Category, Channel, EntityIndex, EpgEntry, Playlist, SyncChangeset


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlaylistSnapshot:
    """Everything stored for one playlist by its last sync"""
    playlist_id: str
    categories: list[Category] = field(default_factory=list)
    channels: list[Channel] = field(default_factory=list)
    epg_entries: list[EpgEntry] = field(default_factory=list)


class PlaylistStore(Protocol):
    async def get_playlist(self, playlist_id: str) -> Playlist | None: ...

    async def list_playlists(self) -> list[Playlist]: ...

    async def save_playlist(self, playlist: Playlist) -> None: ...

    async def update_sync_state(self, playlist: Playlist) -> bool:
        """Write sync status fields only; returns False if the playlist was removed"""
        ...

    async def remove_playlist(self, playlist_id: str) -> bool: ...

    async def load_snapshot(self, playlist_id: str) -> PlaylistSnapshot: ...

    async def apply_changeset(
        self,
        changeset: SyncChangeset,
        categories: EntityIndex[Category],
        channels: EntityIndex[Channel],
        epg_entries: EntityIndex[EpgEntry],
    ) -> None: ...

    async def list_channels(self, playlist_id: str) -> list[Channel]: ...

    async def epg_window(
        self,
        playlist_id: str,
        channel_key: str,
        start: datetime,
        end: datetime,
    ) -> list[EpgEntry]: ...

    async def add_favorite(self, playlist_id: str, channel_id: str) -> bool: ...

    async def remove_favorite(self, playlist_id: str, channel_id: str) -> bool: ...

    async def list_favorites(self, playlist_id: str) -> set[str]: ...


class MemoryPlaylistStore:
    """In-process PlaylistStore."""

    def __init__(self) -> None:
        self._playlists: dict[str, Playlist] = {}
        self._categories: dict[str, dict[str, Category]] = {}
        self._channels: dict[str, dict[str, Channel]] = {}
        self._epg: dict[str, dict[str, EpgEntry]] = {}
        self._favorites: dict[str, set[str]] = {}

    async def get_playlist(self, playlist_id: str) -> Playlist | None:
        playlist = self._playlists.get(playlist_id)
        return replace(playlist) if playlist else None

    async def list_playlists(self) -> list[Playlist]:
        return [replace(playlist) for playlist in self._playlists.values()]

    async def save_playlist(self, playlist: Playlist) -> None:
        self._playlists[playlist.id] = replace(playlist)
        for table in (self._categories, self._channels, self._epg):
            table.setdefault(playlist.id, {})
        self._favorites.setdefault(playlist.id, set())

    async def update_sync_state(self, playlist: Playlist) -> bool:
        stored = self._playlists.get(playlist.id)
        if stored is None:
            return False
        self._playlists[playlist.id] = replace(
            stored,
            sync_status=playlist.sync_status,
            last_synced_at=playlist.last_synced_at,
            last_error=playlist.last_error,
            dropped_records=playlist.dropped_records,
        )
        return True

    async def remove_playlist(self, playlist_id: str) -> bool:
        if self._playlists.pop(playlist_id, None) is None:
            return False
        for table in (self._categories, self._channels, self._epg, self._favorites):
            table.pop(playlist_id, None)
        return True

    async def load_snapshot(self, playlist_id: str) -> PlaylistSnapshot:
        return PlaylistSnapshot(
            playlist_id=playlist_id,
            categories=list(self._categories.get(playlist_id, {}).values()),
            channels=list(self._channels.get(playlist_id, {}).values()),
            epg_entries=list(self._epg.get(playlist_id, {}).values()),
        )

    async def apply_changeset(
        self,
        changeset: SyncChangeset,
        categories: EntityIndex[Category],
        channels: EntityIndex[Channel],
        epg_entries: EntityIndex[EpgEntry],
    ) -> None:
        playlist_id = changeset.playlist_id
        if playlist_id not in self._playlists:
            raise KeyError(playlist_id)
        favorites = self._favorites[playlist_id]

        _apply(self._categories[playlist_id], changeset.categories, categories)
        _apply(self._epg[playlist_id], changeset.epg_entries, epg_entries)

        stored = self._channels[playlist_id]
        for channel_id in changeset.channels.added | changeset.channels.updated:
            stored[channel_id] = channels.get(channel_id)
        for channel_id in changeset.channels.removed:
            channel = stored.get(channel_id)
            if channel is None:
                continue
            if channel_id in favorites:
                stored[channel_id] = replace(channel, stale=True)
            else:
                del stored[channel_id]

    async def list_channels(self, playlist_id: str) -> list[Channel]:
        return sorted(self._channels.get(playlist_id, {}).values(), key=lambda channel: channel.position)

    async def epg_window(
        self,
        playlist_id: str,
        channel_key: str,
        start: datetime,
        end: datetime,
    ) -> list[EpgEntry]:
        entries = [
            entry
            for entry in self._epg.get(playlist_id, {}).values()
            if entry.channel_key == channel_key and entry.end > start and entry.start < end
        ]
        return sorted(entries, key=lambda entry: entry.start)

    async def add_favorite(self, playlist_id: str, channel_id: str) -> bool:
        if channel_id not in self._channels.get(playlist_id, {}):
            return False
        self._favorites[playlist_id].add(channel_id)
        return True

    async def remove_favorite(self, playlist_id: str, channel_id: str) -> bool:
        favorites = self._favorites.get(playlist_id, set())
        if channel_id not in favorites:
            return False
        favorites.discard(channel_id)
        channels = self._channels[playlist_id]
        channel = channels.get(channel_id)
        if channel is not None and channel.stale:
            del channels[channel_id]
        return True

    async def list_favorites(self, playlist_id: str) -> set[str]:
        return set(self._favorites.get(playlist_id, set()))


def _apply(stored: dict, changes, index: EntityIndex) -> None:
    for entity_id in changes.added | changes.updated:
        stored[entity_id] = index.get(entity_id)
    for entity_id in changes.removed:
        stored.pop(entity_id, None)
