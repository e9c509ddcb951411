from typing import Annotated
from datetime import datetime, timezone
from uuid import uuid4
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from iptv_ingest.dependencies import get_engine, get_store, require_playlist
from iptv_ingest.entities import Playlist
from iptv_ingest.schemas import (
    ChannelResponse,
    NowNextResponse,
    PlaylistCreate,
    PlaylistResponse,
    ProgramResponse,
    SyncResponse,
    validate_timezone_name,
)
from iptv_ingest.services import get_now_next, sync_scheduler
from iptv_ingest.services.persistence import PlaylistStore
from iptv_ingest.services.sync_service import SyncEngine
from iptv_ingest.utils.timezone import convert_to_timezone


logger = logging.getLogger(__name__)

main_router = APIRouter()

StoreDep = Annotated[PlaylistStore, Depends(get_store)]
EngineDep = Annotated[SyncEngine, Depends(get_engine)]


@main_router.get("/")
async def root() -> dict:
    """Root endpoint with service information"""
    next_run = sync_scheduler.get_next_run_time()

    return {
        "service": "IPTV Ingest",
        "version": "0.1.0",
        "next_scheduled_refresh": next_run.isoformat() if next_run else None,
        "endpoints": {
            "playlists": "/playlists - List (GET) or add (POST) playlists",
            "sync": "/playlists/{id}/sync - Sync a playlist now (POST)",
            "channels": "/playlists/{id}/channels - Channels of a playlist",
            "now_next": "/playlists/{id}/channels/{channel_id}/now-next - Current and next programme",
            "health": "/health - Health check"
        }
    }


@main_router.get("/health")
async def health_check() -> dict:
    """Health check endpoint"""
    next_run = sync_scheduler.get_next_run_time()
    return {
        "status": "ok",
        "scheduler_running": sync_scheduler.running,
        "next_refresh": next_run.isoformat() if next_run else None
    }


@main_router.get("/playlists", response_model=list[PlaylistResponse])
async def list_playlists(store: StoreDep) -> list[PlaylistResponse]:
    return [PlaylistResponse.from_entity(playlist) for playlist in await store.list_playlists()]


@main_router.post("/playlists", response_model=PlaylistResponse, status_code=201)
async def create_playlist(request: PlaylistCreate, store: StoreDep) -> PlaylistResponse:
    """
    Register a playlist source

    The playlist is synced by the next scheduled refresh, or immediately via
    POST /playlists/{id}/sync.
    """
    playlist = Playlist(
        id=uuid4().hex,
        name=request.name,
        source_kind=request.source_kind,
        connection=dict(request.connection),
        epg_url=request.epg_url,
    )
    await store.save_playlist(playlist)
    logger.info("Created playlist %s (%s, %s)", playlist.id, playlist.name, playlist.source_kind.value)
    return PlaylistResponse.from_entity(playlist)


@main_router.delete("/playlists/{playlist_id}", status_code=204)
async def delete_playlist(playlist_id: str, store: StoreDep, engine: EngineDep) -> Response:
    await engine.cancel_and_wait(playlist_id)
    if not await store.remove_playlist(playlist_id):
        raise HTTPException(status_code=404, detail=f"Playlist {playlist_id} not found")
    return Response(status_code=204)


@main_router.post("/playlists/{playlist_id}/sync", response_model=SyncResponse)
async def sync_playlist(playlist_id: str, store: StoreDep, engine: EngineDep) -> SyncResponse:
    """
    Sync a playlist now

    Requests arriving while the playlist is already syncing receive the
    result of the running cycle.
    """
    await require_playlist(store, playlist_id)
    logger.info("Manual sync triggered via API for playlist %s", playlist_id)
    try:
        result = await engine.sync(playlist_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Playlist {playlist_id} not found")
    except asyncio.CancelledError:
        raise HTTPException(status_code=409, detail=f"Sync for playlist {playlist_id} was cancelled")

    if not result.ok:
        logger.warning("Sync for playlist %s ended in error: %s", playlist_id, result.error)
    return SyncResponse(**result.to_dict())


@main_router.get("/playlists/{playlist_id}/channels", response_model=list[ChannelResponse])
async def list_channels(
    playlist_id: str,
    store: StoreDep,
    favorites_only: Annotated[bool, Query(description="Only return favorited channels")] = False,
) -> list[ChannelResponse]:
    await require_playlist(store, playlist_id)
    favorites = await store.list_favorites(playlist_id)
    channels = await store.list_channels(playlist_id)
    return [
        ChannelResponse.from_entity(channel, favorite=channel.id in favorites)
        for channel in channels
        if not favorites_only or channel.id in favorites
    ]


@main_router.put("/playlists/{playlist_id}/favorites/{channel_id}", status_code=204)
async def add_favorite(playlist_id: str, channel_id: str, store: StoreDep) -> Response:
    await require_playlist(store, playlist_id)
    if not await store.add_favorite(playlist_id, channel_id):
        raise HTTPException(status_code=404, detail=f"Channel {channel_id} not found")
    return Response(status_code=204)


@main_router.delete("/playlists/{playlist_id}/favorites/{channel_id}", status_code=204)
async def remove_favorite(playlist_id: str, channel_id: str, store: StoreDep) -> Response:
    await require_playlist(store, playlist_id)
    if not await store.remove_favorite(playlist_id, channel_id):
        raise HTTPException(status_code=404, detail=f"Channel {channel_id} is not a favorite")
    return Response(status_code=204)


@main_router.get(
    "/playlists/{playlist_id}/channels/{channel_id}/now-next",
    response_model=NowNextResponse,
)
async def now_next(
    playlist_id: str,
    channel_id: str,
    store: StoreDep,
    timezone_name: Annotated[str, Query(alias="timezone", description="Timezone for response timestamps")] = "UTC",
) -> NowNextResponse:
    """
    Current and next programme for a channel

    Returns:
        Programmes with timestamps in the requested timezone; null when the guide has no data
    """
    try:
        validate_timezone_name(timezone_name)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    await require_playlist(store, playlist_id)
    channel = next((c for c in await store.list_channels(playlist_id) if c.id == channel_id), None)
    if channel is None:
        raise HTTPException(status_code=404, detail=f"Channel {channel_id} not found")

    now = datetime.now(timezone.utc)
    current, upcoming = await get_now_next(store, playlist_id, channel, now)
    return NowNextResponse(
        channel_id=channel_id,
        timestamp=convert_to_timezone(now, timezone_name),
        timezone=timezone_name,
        current=ProgramResponse.from_entity(current, timezone_name) if current else None,
        next=ProgramResponse.from_entity(upcoming, timezone_name) if upcoming else None,
    )
