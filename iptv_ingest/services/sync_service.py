"""
Sync Service

Runs sync cycles (fetch, normalize, diff, persist) and keeps at most one
cycle in flight per playlist. A sync request for a playlist that is already
syncing attaches to the running cycle instead of starting a second one.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from iptv_ingest.config import settings
from iptv_ingest.entities import DropSummary, Playlist, SyncChangeset, SyncStatus
from iptv_ingest.exceptions import IngestError, ProviderError
from iptv_ingest.services.db_service import SqlPlaylistStore
from iptv_ingest.services.normalizer_service import NormalizedPlaylist, normalize
from iptv_ingest.services.persistence import PlaylistStore
from iptv_ingest.services.source_service import SourceFetcher
from iptv_ingest.utils.data_merging import build_changeset, carry_forward_epg
from iptv_ingest.utils.logging_helpers import log_sync_end, log_sync_start


logger = logging.getLogger(__name__)

ChangesetCallback = Callable[[SyncChangeset], Awaitable[None] | None]


@dataclass(slots=True)
class SyncResult:
    playlist_id: str
    status: SyncStatus
    started_at: datetime
    completed_at: datetime
    changeset: SyncChangeset | None = None
    dropped: DropSummary = field(default_factory=DropSummary)
    error: IngestError | None = None
    guide_carried_forward: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.completed_at - self.started_at).total_seconds())

    def to_dict(self) -> dict:
        payload = {
            "playlist_id": self.playlist_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "dropped_records": self.dropped.total,
            "dropped_by_reason": self.dropped.to_dict(),
            "guide_carried_forward": self.guide_carried_forward,
        }
        if self.changeset is not None:
            payload["changes"] = self.changeset.to_dict()
        if self.error is not None:
            payload["error"] = str(self.error)
            payload["error_type"] = type(self.error).__name__
        return payload


class SyncEngine:
    """
    Coordinates sync cycles for every playlist in a store.

    Cycles for different playlists run concurrently up to max_concurrency;
    the per-playlist in-flight map is the only shared mutable state.
    """

    def __init__(
        self,
        store: PlaylistStore,
        fetcher: SourceFetcher | None = None,
        *,
        max_concurrency: int | None = None,
        stale_after: timedelta | None = None,
        on_changeset: ChangesetCallback | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher or SourceFetcher()
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency or settings.max_concurrent_syncs))
        self._stale_after = stale_after or timedelta(minutes=settings.sync_stale_after_minutes)
        self._on_changeset = on_changeset
        self._inflight: dict[str, asyncio.Task[SyncResult]] = {}

    @property
    def store(self) -> PlaylistStore:
        return self._store

    def is_syncing(self, playlist_id: str) -> bool:
        return playlist_id in self._inflight

    async def sync(self, playlist_id: str) -> SyncResult:
        """
        Sync one playlist, or wait for the cycle already running for it.

        Every caller that arrives while a cycle is in flight gets that cycle's
        SyncResult. Protocol errors are reported on the result, not raised.

        Raises:
            KeyError: If the playlist does not exist
            asyncio.CancelledError: If the cycle was cancelled via cancel()
        """
        task = self._inflight.get(playlist_id)
        if task is None:
            task = asyncio.create_task(self._run(playlist_id), name=f"sync:{playlist_id}")
            self._inflight[playlist_id] = task
            task.add_done_callback(lambda done: self._forget(playlist_id, done))
        else:
            logger.info("Sync already in progress for playlist %s, attaching to it", playlist_id)
        # A caller giving up must not cancel the cycle other callers share
        return await asyncio.shield(task)

    def _forget(self, playlist_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(playlist_id) is task:
            del self._inflight[playlist_id]

    def cancel(self, playlist_id: str) -> bool:
        """Cancel the in-flight cycle for a playlist; returns False if none is running"""
        task = self._inflight.get(playlist_id)
        if task is None or task.done():
            return False
        logger.info("Cancelling sync for playlist %s", playlist_id)
        return task.cancel()

    async def cancel_and_wait(self, playlist_id: str) -> bool:
        """Cancel the in-flight cycle for a playlist and wait until it has unwound"""
        task = self._inflight.get(playlist_id)
        if not self.cancel(playlist_id):
            return False
        await asyncio.wait([task])
        return True

    def is_stale(self, playlist: Playlist, now: datetime | None = None) -> bool:
        """Never synced, in error, left syncing by a previous process, or older than the refresh age"""
        if playlist.id in self._inflight:
            return False
        if playlist.sync_status in (SyncStatus.ERROR, SyncStatus.SYNCING):
            return True
        if playlist.last_synced_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - playlist.last_synced_at >= self._stale_after

    async def sync_stale(self) -> list[SyncResult]:
        """Sync every stale playlist concurrently; used by the scheduler"""
        now = datetime.now(timezone.utc)
        stale = [playlist for playlist in await self._store.list_playlists() if self.is_stale(playlist, now)]
        if not stale:
            logger.info("No stale playlists to sync")
            return []

        logger.info("Syncing %s stale playlist(s)", len(stale))
        outcomes = await asyncio.gather(
            *(self.sync(playlist.id) for playlist in stale),
            return_exceptions=True,
        )
        results = []
        for playlist, outcome in zip(stale, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Sync for playlist %s did not complete: %r", playlist.id, outcome)
                continue
            results.append(outcome)
        return results

    async def _run(self, playlist_id: str) -> SyncResult:
        async with self._semaphore:
            playlist = await self._store.get_playlist(playlist_id)
            if playlist is None:
                raise KeyError(playlist_id)

            previous_status = playlist.sync_status
            started_at = datetime.now(timezone.utc)
            playlist.sync_status = SyncStatus.SYNCING
            if not await self._store.update_sync_state(playlist):
                raise KeyError(playlist_id)
            log_sync_start(logger, playlist.id, playlist.source_kind.value)

            persisted = False
            dropped = None
            try:
                payload = await self._fetcher.fetch(playlist)
                normalized = normalize(playlist.id, payload)
                dropped = normalized.dropped
                snapshot = await self._store.load_snapshot(playlist.id)
                if payload.guide_failed:
                    normalized.epg_entries = carry_forward_epg(
                        playlist.id, snapshot.epg_entries, normalized.channels
                    )

                changeset = build_changeset(
                    playlist.id,
                    snapshot.categories,
                    snapshot.channels,
                    snapshot.epg_entries,
                    normalized.categories,
                    normalized.channels,
                    normalized.epg_entries,
                )

                persist = asyncio.ensure_future(self._persist(playlist, changeset, normalized))
                try:
                    await asyncio.shield(persist)
                except asyncio.CancelledError:
                    # Finish applying the changeset before honouring cancellation
                    await persist
                    persisted = True
                    raise
                persisted = True
            except asyncio.CancelledError:
                if not persisted:
                    playlist.sync_status = SyncStatus.IDLE if previous_status == SyncStatus.SYNCING else previous_status
                    await self._store.update_sync_state(playlist)
                    logger.warning("Sync for playlist %s cancelled, nothing persisted", playlist.id)
                raise
            except IngestError as exc:
                return await self._fail(playlist, started_at, exc, dropped)
            except Exception as exc:
                logger.error("Unexpected error syncing playlist %s: %s", playlist.id, exc, exc_info=True)
                return await self._fail(playlist, started_at, ProviderError(f"Unexpected error: {exc}"), dropped)

            log_sync_end(logger, playlist.id, changeset)
            await self._notify(changeset)
            return SyncResult(
                playlist_id=playlist.id,
                status=SyncStatus.IDLE,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                changeset=changeset,
                dropped=normalized.dropped,
                guide_carried_forward=payload.guide_failed,
            )

    async def _persist(self, playlist: Playlist, changeset: SyncChangeset, normalized: NormalizedPlaylist) -> None:
        try:
            await self._store.apply_changeset(
                changeset,
                normalized.categories,
                normalized.channels,
                normalized.epg_entries,
            )
        except KeyError as exc:
            raise ProviderError(f"Playlist {playlist.id} was removed during sync") from exc
        playlist.sync_status = SyncStatus.IDLE
        playlist.last_synced_at = datetime.now(timezone.utc)
        playlist.last_error = None
        playlist.dropped_records = normalized.dropped.total
        await self._store.update_sync_state(playlist)

    async def _fail(
        self,
        playlist: Playlist,
        started_at: datetime,
        error: IngestError,
        dropped: DropSummary | None = None,
    ) -> SyncResult:
        logger.error("Sync failed for playlist %s: %s: %s", playlist.id, type(error).__name__, error)
        if dropped is None:
            # Failed before normalization; report what the last sync dropped
            dropped = DropSummary()
            dropped.add("last_sync", playlist.dropped_records)
        playlist.sync_status = SyncStatus.ERROR
        playlist.last_error = f"{type(error).__name__}: {error}"
        if not await self._store.update_sync_state(playlist):
            logger.info("Playlist %s was removed, not recording the failure", playlist.id)
        return SyncResult(
            playlist_id=playlist.id,
            status=SyncStatus.ERROR,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            dropped=dropped,
            error=error,
        )

    async def _notify(self, changeset: SyncChangeset) -> None:
        if self._on_changeset is None:
            return
        try:
            outcome = self._on_changeset(changeset)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.error("Changeset listener failed for playlist %s: %s", changeset.playlist_id, exc, exc_info=True)


# Global singleton instance
_engine: SyncEngine | None = None


def get_sync_engine() -> SyncEngine:
    """
    Get the global sync engine, backed by the SQLite store.

    Returns:
        The global SyncEngine instance
    """
    global _engine
    if _engine is None:
        _engine = SyncEngine(SqlPlaylistStore())
    return _engine


def reset_sync_engine() -> None:
    """Drop the global sync engine (used on shutdown and in tests)"""
    global _engine
    _engine = None
