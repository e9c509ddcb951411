"""
Database operations for playlists

This module contains the SQLite-backed PlaylistStore. Writes use raw
INSERT ... ON CONFLICT statements in executemany batches; each changeset is
applied inside one transaction.
"""
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from time import perf_counter

from sqlalchemy import delete, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_ingest.database import session_scope
from iptv_ingest.entities import (
    Category,
    Channel,
    EntityIndex,
    EpgEntry,
    Playlist,
    SourceKind,
    SyncChangeset,
    SyncStatus,
)
from iptv_ingest.models import CategoryRow, ChannelRow, EpgEntryRow, FavoriteRow, PlaylistRow
from iptv_ingest.services.persistence import PlaylistSnapshot
from iptv_ingest.utils.timezone import ensure_utc, parse_iso8601_to_utc


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1000

_CATEGORY_UPSERT = text(
    """
    INSERT INTO categories (id, playlist_id, name, position, source_id)
    VALUES (:id, :playlist_id, :name, :position, :source_id)
    ON CONFLICT(id) DO UPDATE SET
        name = excluded.name,
        position = excluded.position,
        source_id = excluded.source_id
    """
)

_CHANNEL_UPSERT = text(
    """
    INSERT INTO channels (
        id, playlist_id, name, stream_url, logo_url, category_id, epg_channel_id,
        position, catchup_mode, catchup_days, catchup_source, stale
    )
    VALUES (
        :id, :playlist_id, :name, :stream_url, :logo_url, :category_id, :epg_channel_id,
        :position, :catchup_mode, :catchup_days, :catchup_source, :stale
    )
    ON CONFLICT(id) DO UPDATE SET
        name = excluded.name,
        stream_url = excluded.stream_url,
        logo_url = excluded.logo_url,
        category_id = excluded.category_id,
        epg_channel_id = excluded.epg_channel_id,
        position = excluded.position,
        catchup_mode = excluded.catchup_mode,
        catchup_days = excluded.catchup_days,
        catchup_source = excluded.catchup_source,
        stale = excluded.stale
    """
)

_EPG_UPSERT = text(
    """
    INSERT INTO epg_entries (id, playlist_id, channel_key, title, start_time, end_time, description)
    VALUES (:id, :playlist_id, :channel_key, :title, :start_time, :end_time, :description)
    ON CONFLICT(id) DO UPDATE SET
        title = excluded.title,
        start_time = excluded.start_time,
        end_time = excluded.end_time,
        description = excluded.description
    """
)


def _format_time(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def _playlist_from_row(row: PlaylistRow) -> Playlist:
    return Playlist(
        id=row.id,
        name=row.name,
        source_kind=SourceKind(row.source_kind),
        connection=dict(row.connection or {}),
        epg_url=row.epg_url,
        last_synced_at=parse_iso8601_to_utc(row.last_synced_at) if row.last_synced_at else None,
        sync_status=SyncStatus(row.sync_status),
        last_error=row.last_error,
        dropped_records=row.dropped_records or 0,
    )


def _category_from_row(row: CategoryRow) -> Category:
    return Category(
        id=row.id,
        playlist_id=row.playlist_id,
        name=row.name,
        position=row.position,
        source_id=row.source_id,
    )


def _channel_from_row(row: ChannelRow) -> Channel:
    return Channel(
        id=row.id,
        playlist_id=row.playlist_id,
        name=row.name,
        stream_url=row.stream_url,
        logo_url=row.logo_url,
        category_id=row.category_id,
        epg_channel_id=row.epg_channel_id,
        position=row.position,
        catchup_mode=row.catchup_mode,
        catchup_days=row.catchup_days,
        catchup_source=row.catchup_source,
        stale=bool(row.stale),
    )


def _epg_from_row(row: EpgEntryRow) -> EpgEntry:
    return EpgEntry(
        id=row.id,
        playlist_id=row.playlist_id,
        channel_key=row.channel_key,
        title=row.title,
        start=parse_iso8601_to_utc(row.start_time),
        end=parse_iso8601_to_utc(row.end_time),
        description=row.description,
    )


async def _execute_chunked(db: AsyncSession, statement, payload: Sequence[dict], label: str) -> None:
    if not payload:
        return
    started = perf_counter()
    for start_index in range(0, len(payload), CHUNK_SIZE):
        chunk = payload[start_index:start_index + CHUNK_SIZE]
        await db.execute(statement, chunk)
    logger.debug("Upserted %s %s in %.2fs", len(payload), label, perf_counter() - started)


async def _delete_ids(db: AsyncSession, model, ids: Iterable[str]) -> None:
    id_list = sorted(ids)
    for start_index in range(0, len(id_list), CHUNK_SIZE):
        chunk = id_list[start_index:start_index + CHUNK_SIZE]
        await db.execute(delete(model).where(model.id.in_(chunk)))


async def store_categories(db: AsyncSession, categories: Iterable[Category]) -> None:
    payload = [
        {
            "id": category.id,
            "playlist_id": category.playlist_id,
            "name": category.name,
            "position": category.position,
            "source_id": category.source_id,
        }
        for category in categories
    ]
    await _execute_chunked(db, _CATEGORY_UPSERT, payload, "categories")


async def store_channels(db: AsyncSession, channels: Iterable[Channel]) -> None:
    payload = [
        {
            "id": channel.id,
            "playlist_id": channel.playlist_id,
            "name": channel.name,
            "stream_url": channel.stream_url,
            "logo_url": channel.logo_url,
            "category_id": channel.category_id,
            "epg_channel_id": channel.epg_channel_id,
            "position": channel.position,
            "catchup_mode": channel.catchup_mode,
            "catchup_days": channel.catchup_days,
            "catchup_source": channel.catchup_source,
            "stale": channel.stale,
        }
        for channel in channels
    ]
    await _execute_chunked(db, _CHANNEL_UPSERT, payload, "channels")


async def store_epg_entries(db: AsyncSession, entries: Iterable[EpgEntry]) -> None:
    payload = [
        {
            "id": entry.id,
            "playlist_id": entry.playlist_id,
            "channel_key": entry.channel_key,
            "title": entry.title,
            "start_time": _format_time(entry.start),
            "end_time": _format_time(entry.end),
            "description": entry.description,
        }
        for entry in entries
    ]
    await _execute_chunked(db, _EPG_UPSERT, payload, "EPG entries")


async def remove_channels(db: AsyncSession, playlist_id: str, channel_ids: Iterable[str]) -> int:
    """
    Delete removed channels, keeping favorited ones as stale rows.

    Returns:
        Number of channels marked stale
    """
    channel_ids = set(channel_ids)
    if not channel_ids:
        return 0

    result = await db.execute(
        select(FavoriteRow.channel_id).where(FavoriteRow.playlist_id == playlist_id)
    )
    favorites = set(result.scalars().all()) & channel_ids

    if favorites:
        await db.execute(
            text("UPDATE channels SET stale = 1 WHERE id = :id"),
            [{"id": channel_id} for channel_id in sorted(favorites)],
        )
        logger.info("Marked %s favorited channels stale in playlist %s", len(favorites), playlist_id)
    await _delete_ids(db, ChannelRow, channel_ids - favorites)
    return len(favorites)


class SqlPlaylistStore:
    """PlaylistStore backed by the SQLite database initialized in database.init_db()."""

    async def get_playlist(self, playlist_id: str) -> Playlist | None:
        async with session_scope() as db:
            row = await db.get(PlaylistRow, playlist_id)
            return _playlist_from_row(row) if row else None

    async def list_playlists(self) -> list[Playlist]:
        async with session_scope() as db:
            result = await db.execute(select(PlaylistRow).order_by(PlaylistRow.name))
            return [_playlist_from_row(row) for row in result.scalars().all()]

    async def save_playlist(self, playlist: Playlist) -> None:
        async with session_scope() as db:
            row = await db.get(PlaylistRow, playlist.id)
            if row is None:
                row = PlaylistRow(id=playlist.id)
                db.add(row)
            row.name = playlist.name
            row.source_kind = playlist.source_kind.value
            row.connection = dict(playlist.connection)
            row.epg_url = playlist.epg_url
            row.last_synced_at = _format_time(playlist.last_synced_at) if playlist.last_synced_at else None
            row.sync_status = playlist.sync_status.value
            row.last_error = playlist.last_error
            row.dropped_records = playlist.dropped_records

    async def update_sync_state(self, playlist: Playlist) -> bool:
        async with session_scope() as db:
            row = await db.get(PlaylistRow, playlist.id)
            if row is None:
                return False
            row.last_synced_at = _format_time(playlist.last_synced_at) if playlist.last_synced_at else None
            row.sync_status = playlist.sync_status.value
            row.last_error = playlist.last_error
            row.dropped_records = playlist.dropped_records
            return True

    async def remove_playlist(self, playlist_id: str) -> bool:
        async with session_scope() as db:
            row = await db.get(PlaylistRow, playlist_id)
            if row is None:
                return False
            for model in (EpgEntryRow, ChannelRow, CategoryRow, FavoriteRow):
                await db.execute(delete(model).where(model.playlist_id == playlist_id))
            await db.delete(row)
        logger.info("Removed playlist %s", playlist_id)
        return True

    async def load_snapshot(self, playlist_id: str) -> PlaylistSnapshot:
        async with session_scope() as db:
            categories = await db.execute(
                select(CategoryRow).where(CategoryRow.playlist_id == playlist_id)
            )
            channels = await db.execute(
                select(ChannelRow).where(ChannelRow.playlist_id == playlist_id)
            )
            entries = await db.execute(
                select(EpgEntryRow).where(EpgEntryRow.playlist_id == playlist_id)
            )
            return PlaylistSnapshot(
                playlist_id=playlist_id,
                categories=[_category_from_row(row) for row in categories.scalars().all()],
                channels=[_channel_from_row(row) for row in channels.scalars().all()],
                epg_entries=[_epg_from_row(row) for row in entries.scalars().all()],
            )

    async def apply_changeset(
        self,
        changeset: SyncChangeset,
        categories: EntityIndex[Category],
        channels: EntityIndex[Channel],
        epg_entries: EntityIndex[EpgEntry],
    ) -> None:
        """Write one sync's changes in a single transaction"""
        playlist_id = changeset.playlist_id
        started = perf_counter()
        async with session_scope() as db:
            if await db.get(PlaylistRow, playlist_id) is None:
                raise KeyError(playlist_id)

            await store_categories(
                db, [categories.get(i) for i in sorted(changeset.categories.added | changeset.categories.updated)]
            )
            await store_channels(
                db, [channels.get(i) for i in sorted(changeset.channels.added | changeset.channels.updated)]
            )
            await store_epg_entries(
                db, [epg_entries.get(i) for i in sorted(changeset.epg_entries.added | changeset.epg_entries.updated)]
            )
            await _delete_ids(db, EpgEntryRow, changeset.epg_entries.removed)
            await remove_channels(db, playlist_id, changeset.channels.removed)
            await _delete_ids(db, CategoryRow, changeset.categories.removed)

        logger.info(
            "Applied changeset for playlist %s in %.2fs: %s",
            playlist_id,
            perf_counter() - started,
            changeset.to_dict(),
        )

    async def list_channels(self, playlist_id: str) -> list[Channel]:
        async with session_scope() as db:
            result = await db.execute(
                select(ChannelRow)
                .where(ChannelRow.playlist_id == playlist_id)
                .order_by(ChannelRow.position)
            )
            return [_channel_from_row(row) for row in result.scalars().all()]

    async def epg_window(
        self,
        playlist_id: str,
        channel_key: str,
        start: datetime,
        end: datetime,
    ) -> list[EpgEntry]:
        # ISO-8601 UTC strings compare in time order
        async with session_scope() as db:
            result = await db.execute(
                select(EpgEntryRow)
                .where(
                    EpgEntryRow.playlist_id == playlist_id,
                    EpgEntryRow.channel_key == channel_key,
                    EpgEntryRow.end_time > _format_time(start),
                    EpgEntryRow.start_time < _format_time(end),
                )
                .order_by(EpgEntryRow.start_time)
            )
            return [_epg_from_row(row) for row in result.scalars().all()]

    async def add_favorite(self, playlist_id: str, channel_id: str) -> bool:
        async with session_scope() as db:
            channel = await db.get(ChannelRow, channel_id)
            if channel is None or channel.playlist_id != playlist_id:
                return False
            if await db.get(FavoriteRow, (playlist_id, channel_id)) is None:
                db.add(FavoriteRow(playlist_id=playlist_id, channel_id=channel_id))
            return True

    async def remove_favorite(self, playlist_id: str, channel_id: str) -> bool:
        async with session_scope() as db:
            favorite = await db.get(FavoriteRow, (playlist_id, channel_id))
            if favorite is None:
                return False
            await db.delete(favorite)
            # A stale channel only existed because it was a favorite
            await db.execute(
                delete(ChannelRow).where(
                    ChannelRow.id == channel_id,
                    ChannelRow.playlist_id == playlist_id,
                    ChannelRow.stale.is_(True),
                )
            )
            return True

    async def list_favorites(self, playlist_id: str) -> set[str]:
        async with session_scope() as db:
            result = await db.execute(
                select(FavoriteRow.channel_id).where(FavoriteRow.playlist_id == playlist_id)
            )
            return set(result.scalars().all())
