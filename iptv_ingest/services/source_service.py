"""
Source Fetching Service

Fetches the raw material for one playlist (playlist entries plus an optional
guide) from whichever kind of source it is configured with.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
from lxml import etree

from iptv_ingest.config import settings
from iptv_ingest.entities import Playlist, SourceKind
from iptv_ingest.exceptions import AuthError, IngestError, ProviderError, SessionError, ValidationError
from iptv_ingest.services.fetch_types import GuidePayload, M3UParseResult, SourcePayload
from iptv_ingest.services.m3u_parser_service import parse_m3u
from iptv_ingest.services.stalker_client import StalkerClient, StalkerConfig
from iptv_ingest.services.xmltv_parser_service import parse_xmltv_async
from iptv_ingest.services.xtream_client import XtreamClient, XtreamConfig
from iptv_ingest.utils.file_operations import cleanup_temp_file, download_bytes, download_file, read_local_file
from iptv_ingest.utils.http_retry import RetryPolicy
from iptv_ingest.utils.logging_helpers import sanitize_url


logger = logging.getLogger(__name__)

# Failures that cost a cycle its guide but not its channel list
GUIDE_ERRORS = (IngestError, httpx.HTTPError, etree.XMLSyntaxError, ValueError, OSError)


@dataclass(slots=True)
class GuideWindow:
    start: datetime
    end: datetime


def _guide_window() -> GuideWindow:
    now = datetime.now(timezone.utc)
    start = (now - timedelta(days=settings.epg_past_days)).replace(hour=0, minute=0, second=0, microsecond=0)
    end = (now + timedelta(days=settings.epg_future_days)).replace(hour=23, minute=59, second=59, microsecond=999999)
    return GuideWindow(start=start, end=end)


def _http_error(exc: httpx.HTTPStatusError, what: str) -> IngestError:
    status = exc.response.status_code
    if status in (401, 403):
        return AuthError(f"{what} refused access (HTTP {status})")
    return ProviderError(f"{what} failed with HTTP {status}")


class SourceFetcher:
    """Maps each source kind onto the coroutine that fetches it."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
        epg_enabled: bool | None = None,
    ) -> None:
        self._client = client
        self._policy = policy
        self._epg_enabled = settings.epg_enabled if epg_enabled is None else epg_enabled
        self._handlers: dict[SourceKind, Callable[[Playlist], Awaitable[SourcePayload]]] = {
            SourceKind.M3U_FILE: self._fetch_m3u_file,
            SourceKind.M3U_URL: self._fetch_m3u_url,
            SourceKind.XTREAM: self._fetch_xtream,
            SourceKind.STALKER: self._fetch_stalker,
        }

    async def fetch(self, playlist: Playlist) -> SourcePayload:
        """
        Fetch everything a sync cycle needs for one playlist

        Raises:
            ValidationError: If the connection parameters are unusable
            AuthError: If the source rejects the credentials
            SessionError: If a portal session cannot be kept alive
            TransientNetworkError: If retries are exhausted
            ProviderError: If the source answers with something unusable
            ParseError: If a playlist document contains no entries
        """
        handler = self._handlers.get(playlist.source_kind)
        if handler is None:
            raise ValidationError("unsupported_source", f"No fetcher for source kind {playlist.source_kind}")
        return await handler(playlist)

    async def _guide_from_url(self, url: str) -> GuidePayload:
        window = _guide_window()
        temp_file: Path | None = None
        try:
            temp_file = await download_file(url, client=self._client, policy=self._policy)
            return await parse_xmltv_async(
                str(temp_file),
                window.start,
                window.end,
                parse_timeout_seconds=settings.epg_parse_timeout_sec,
            )
        except httpx.HTTPStatusError as exc:
            raise _http_error(exc, f"Guide {sanitize_url(url)}") from exc
        finally:
            if temp_file:
                cleanup_temp_file(temp_file)

    async def _optional_guide(
        self,
        payload: SourcePayload,
        fetch_guide: Callable[[], Awaitable[GuidePayload]],
    ) -> SourcePayload:
        if not self._epg_enabled:
            return payload
        try:
            payload.guide = await fetch_guide()
        except SessionError:
            raise
        except GUIDE_ERRORS as exc:
            logger.warning("Guide fetch failed, keeping previous EPG: %s", exc)
            payload.guide_failed = True
        return payload

    async def _with_m3u_guide(self, playlist: Playlist, kind: SourceKind, parsed: M3UParseResult) -> SourcePayload:
        payload = SourcePayload(kind=kind, m3u=parsed)
        guide_url = playlist.epg_url or (parsed.epg_urls[0] if parsed.epg_urls else None)
        if not guide_url:
            return payload
        return await self._optional_guide(payload, lambda: self._guide_from_url(guide_url))

    async def _fetch_m3u_file(self, playlist: Playlist) -> SourcePayload:
        path = playlist.connection.get("path")
        if not path:
            raise ValidationError("invalid_connection", "M3U file playlist has no path")
        try:
            raw = await read_local_file(path)
        except OSError as exc:
            raise ProviderError(f"Cannot read playlist file {path}: {exc}") from exc
        return await self._with_m3u_guide(playlist, SourceKind.M3U_FILE, parse_m3u(raw))

    async def _fetch_m3u_url(self, playlist: Playlist) -> SourcePayload:
        url = playlist.connection.get("url")
        if not url:
            raise ValidationError("invalid_connection", "M3U URL playlist has no url")
        try:
            raw = await download_bytes(url, client=self._client, policy=self._policy)
        except httpx.HTTPStatusError as exc:
            raise _http_error(exc, f"Playlist {sanitize_url(url)}") from exc
        return await self._with_m3u_guide(playlist, SourceKind.M3U_URL, parse_m3u(raw))

    async def _fetch_xtream(self, playlist: Playlist) -> SourcePayload:
        try:
            cfg = XtreamConfig.from_connection(playlist.connection)
        except ValueError as exc:
            raise ValidationError("invalid_connection", str(exc)) from exc

        async with XtreamClient(cfg, client=self._client, policy=self._policy) as xtream:
            await xtream.authenticate()
            payload = SourcePayload(kind=SourceKind.XTREAM)
            payload.categories = await xtream.get_live_categories()
            payload.xtream_streams = [stream async for stream in xtream.iter_live_streams()]
            logger.info(
                "%s listed %s categories and %s live streams",
                xtream.describe(),
                len(payload.categories),
                len(payload.xtream_streams),
            )

            if playlist.epg_url:
                return await self._optional_guide(payload, lambda: self._guide_from_url(playlist.epg_url))

            window = _guide_window()
            return await self._optional_guide(
                payload,
                lambda: xtream.fetch_xmltv(
                    window.start,
                    window.end,
                    parse_timeout_seconds=settings.epg_parse_timeout_sec,
                ),
            )

    async def _fetch_stalker(self, playlist: Playlist) -> SourcePayload:
        try:
            cfg = StalkerConfig.from_connection(playlist.connection)
        except ValueError as exc:
            raise ValidationError("invalid_connection", str(exc)) from exc

        async with StalkerClient(cfg, client=self._client, policy=self._policy) as portal:
            portal.begin_cycle()
            payload = SourcePayload(kind=SourceKind.STALKER)
            payload.categories = await portal.get_genres()
            payload.stalker_channels = await portal.get_all_channels()
            logger.info(
                "%s listed %s genres and %s channels",
                portal.describe(),
                len(payload.categories),
                len(payload.stalker_channels),
            )

            if playlist.epg_url:
                return await self._optional_guide(payload, lambda: self._guide_from_url(playlist.epg_url))

            async def portal_guide() -> GuidePayload:
                return GuidePayload(programs=await portal.get_epg_info())

            return await self._optional_guide(payload, portal_guide)
