"""
Canonical entity graph shared by every source kind.

Playlists own Categories, Channels and EPG entries. Favorites live outside this
graph so that they survive playlist re-syncs.
"""
from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar


class SourceKind(str, Enum):
    M3U_FILE = "m3u-file"
    M3U_URL = "m3u-url"
    XTREAM = "xtream"
    STALKER = "stalker"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass(slots=True)
class Playlist:
    """A configured source and its sync bookkeeping."""
    id: str
    name: str
    source_kind: SourceKind
    connection: dict[str, Any] = field(default_factory=dict)
    epg_url: str | None = None
    last_synced_at: datetime | None = None
    sync_status: SyncStatus = SyncStatus.IDLE
    last_error: str | None = None
    dropped_records: int = 0


@dataclass(frozen=True, slots=True)
class Category:
    id: str
    playlist_id: str
    name: str
    position: int = 0
    source_id: str | None = None


@dataclass(frozen=True, slots=True)
class Channel:
    id: str
    playlist_id: str
    name: str
    stream_url: str
    logo_url: str | None = None
    category_id: str | None = None
    epg_channel_id: str | None = None
    position: int = 0
    catchup_mode: str | None = None
    catchup_days: int | None = None
    catchup_source: str | None = None
    stale: bool = False


@dataclass(frozen=True, slots=True)
class EpgEntry:
    """A single programme slot; start and end are always UTC."""
    id: str
    playlist_id: str
    channel_key: str
    title: str
    start: datetime
    end: datetime
    description: str | None = None


E = TypeVar("E", Category, Channel, EpgEntry)


class EntityIndex(Generic[E]):
    """
    Keyed mapping of entities with insertion order preserved.

    Every entity must belong to the index's playlist and ids are unique; the
    first entity added under an id is kept.
    """

    __slots__ = ("playlist_id", "_items")

    def __init__(self, playlist_id: str, entities: Iterable[E] = ()) -> None:
        self.playlist_id = playlist_id
        self._items: dict[str, E] = {}
        for entity in entities:
            self.add(entity)

    def add(self, entity: E) -> bool:
        """
        Add an entity.

        Returns:
            False if an entity with the same id is already present

        Raises:
            ValueError: If the entity belongs to another playlist
        """
        if entity.playlist_id != self.playlist_id:
            raise ValueError(
                f"Entity {entity.id} belongs to playlist {entity.playlist_id}, "
                f"not {self.playlist_id}"
            )
        if entity.id in self._items:
            return False
        self._items[entity.id] = entity
        return True

    def replace(self, entity: E) -> None:
        if entity.id not in self._items:
            raise KeyError(entity.id)
        self._items[entity.id] = entity

    def discard(self, entity_id: str) -> None:
        self._items.pop(entity_id, None)

    def get(self, entity_id: str) -> E | None:
        return self._items.get(entity_id)

    def ids(self) -> list[str]:
        return list(self._items)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._items

    def __iter__(self) -> Iterator[E]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"<EntityIndex(playlist_id={self.playlist_id}, size={len(self._items)})>"


@dataclass(frozen=True, slots=True)
class EntityChanges:
    added: frozenset[str] = frozenset()
    updated: frozenset[str] = frozenset()
    removed: frozenset[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.updated or self.removed)

    def to_dict(self) -> dict:
        return {
            "added": len(self.added),
            "updated": len(self.updated),
            "removed": len(self.removed),
        }


@dataclass(frozen=True, slots=True)
class SyncChangeset:
    """Additions, updates and removals produced by one sync cycle."""
    playlist_id: str
    categories: EntityChanges = EntityChanges()
    channels: EntityChanges = EntityChanges()
    epg_entries: EntityChanges = EntityChanges()

    @property
    def is_empty(self) -> bool:
        return self.categories.is_empty and self.channels.is_empty and self.epg_entries.is_empty

    def to_dict(self) -> dict:
        return {
            "categories": self.categories.to_dict(),
            "channels": self.channels.to_dict(),
            "epg_entries": self.epg_entries.to_dict(),
        }


@dataclass(slots=True)
class DropSummary:
    """Counts of records dropped during parsing and normalization, by reason."""
    reasons: Counter = field(default_factory=Counter)

    def add(self, reason: str, count: int = 1) -> None:
        if count:
            self.reasons[reason] += count

    def merge(self, other: "DropSummary") -> None:
        self.reasons.update(other.reasons)

    @property
    def total(self) -> int:
        return sum(self.reasons.values())

    def to_dict(self) -> dict[str, int]:
        return dict(sorted(self.reasons.items()))


__all__ = [
    "Category",
    "Channel",
    "DropSummary",
    "EntityChanges",
    "EntityIndex",
    "EpgEntry",
    "Playlist",
    "SourceKind",
    "SyncChangeset",
    "SyncStatus",
]
