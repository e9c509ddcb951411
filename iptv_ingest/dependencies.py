"""
Dependency providers for the HTTP layer

Routes receive the playlist store and sync engine through FastAPI's Depends so
tests can swap them with app.dependency_overrides.
"""
import logging

from fastapi import HTTPException

from iptv_ingest.entities import Playlist
from iptv_ingest.services.persistence import PlaylistStore
from iptv_ingest.services.sync_service import SyncEngine, get_sync_engine


logger = logging.getLogger(__name__)


def get_store() -> PlaylistStore:
    """The store the global sync engine writes to"""
    return get_sync_engine().store


def get_engine() -> SyncEngine:
    return get_sync_engine()


async def require_playlist(store: PlaylistStore, playlist_id: str) -> Playlist:
    """
    Load a playlist or answer 404

    Raises:
        HTTPException: If the playlist does not exist
    """
    playlist = await store.get_playlist(playlist_id)
    if playlist is None:
        logger.info("Playlist %s not found", playlist_id)
        raise HTTPException(status_code=404, detail=f"Playlist {playlist_id} not found")
    return playlist
