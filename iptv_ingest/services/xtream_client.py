"""
Xtream Codes client

Talks to `player_api.php`: credentials travel as query parameters on every
call and `action` selects the operation. Stream lists are decoded
incrementally from the response body.
"""
from __future__ import annotations

import base64
import binascii
import logging
import urllib.parse
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from iptv_ingest.config import settings
from iptv_ingest.exceptions import AuthError, ProviderError
from iptv_ingest.services.fetch_types import GuidePayload, RawProgram, SourceCategory, XtreamStream
from iptv_ingest.services.xmltv_parser_service import parse_xmltv_async
from iptv_ingest.utils.file_operations import build_http_client, cleanup_temp_file, download_file
from iptv_ingest.utils.http_retry import RetryPolicy, request_with_retry
from iptv_ingest.utils.json_stream import iter_json_array
from iptv_ingest.utils.timezone import DateFormatError, from_unix_timestamp, parse_local_datetime
from iptv_ingest.utils.urls import normalize_base_url


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class XtreamConfig:
    base_url: str
    username: str
    password: str
    port: int | None = None
    output: str | None = None

    @classmethod
    def from_connection(cls, connection: dict[str, Any]) -> "XtreamConfig":
        """Build from a playlist's opaque connection parameters"""
        try:
            base_url = connection.get("base_url") or connection["host"]
            return cls(
                base_url=base_url,
                username=connection["username"],
                password=connection["password"],
                port=int(connection["port"]) if connection.get("port") else None,
                output=connection.get("output"),
            )
        except (KeyError, ValueError, TypeError) as exc:
            raise ValueError(f"Incomplete Xtream Codes connection parameters: {exc}") from exc


@dataclass(slots=True)
class XtreamAccount:
    """Account and server details returned by the authentication call"""
    username: str
    status: str
    expires_at: datetime | None = None
    max_connections: int | None = None
    active_connections: int | None = None
    allowed_output_formats: list[str] = field(default_factory=list)
    server_timezone: str | None = None


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _decode_base64(value: Any) -> str | None:
    """Short EPG titles and descriptions are base64; fall back to the raw text"""
    text = _as_text(value)
    if text is None:
        return None
    try:
        return base64.b64decode(text, validate=True).decode("utf-8").strip() or None
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return text


class XtreamClient:
    """Async client for one Xtream Codes account."""

    def __init__(
        self,
        cfg: XtreamConfig,
        *,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.cfg = cfg
        self.base_url = normalize_base_url(cfg.base_url, cfg.port)
        self._api_url = f"{self.base_url}/player_api.php"
        self._owns_client = client is None
        self._client = client or build_http_client()
        self._policy = policy or RetryPolicy.from_settings()
        self._output = (cfg.output or settings.xtream_output).lstrip(".")

    async def __aenter__(self) -> "XtreamClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _params(self, action: str | None = None, **extra: Any) -> dict[str, str]:
        params = {"username": self.cfg.username, "password": self.cfg.password}
        if action:
            params["action"] = action
        params.update({key: str(value) for key, value in extra.items() if value is not None})
        return params

    def _check_status(self, response: httpx.Response, action: str | None) -> None:
        if response.status_code in (401, 403):
            raise AuthError(f"Xtream Codes server rejected credentials (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise ProviderError(f"Xtream Codes {action or 'auth'} failed with HTTP {response.status_code}")

    async def _get_json(self, action: str | None = None, **extra: Any) -> Any:
        response = await request_with_retry(
            self._client, "GET", self._api_url, params=self._params(action, **extra), policy=self._policy
        )
        self._check_status(response, action)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"Invalid JSON from Xtream Codes {action or 'auth'} call") from exc

    async def _iter_json(self, action: str, **extra: Any) -> AsyncIterator[dict]:
        response = await request_with_retry(
            self._client,
            "GET",
            self._api_url,
            params=self._params(action, **extra),
            policy=self._policy,
            stream=True,
        )
        try:
            self._check_status(response, action)
            async for item in iter_json_array(response.aiter_text()):
                if isinstance(item, dict):
                    yield item
                else:
                    logger.debug("Skipping non-object item in %s response", action)
        except ValueError as exc:
            raise ProviderError(f"Malformed JSON in Xtream Codes {action} response") from exc
        finally:
            await response.aclose()

    async def authenticate(self) -> XtreamAccount:
        """
        Validate credentials and read account capabilities

        Raises:
            AuthError: On HTTP 401/403 or when the panel reports auth=0 or an inactive account
            ProviderError: If the answer is not an Xtream Codes account document
        """
        payload = await self._get_json()
        if not isinstance(payload, dict) or not isinstance(payload.get("user_info"), dict):
            raise ProviderError("Xtream Codes authentication answer has no user_info")

        user_info = payload["user_info"]
        server_info = payload.get("server_info") or {}
        if str(user_info.get("auth", "0")) != "1":
            raise AuthError("Xtream Codes credentials were rejected")

        status = str(user_info.get("status") or "Active")
        if status.lower() != "active":
            raise AuthError(f"Xtream Codes account is not active (status: {status})")

        expires = _as_int(user_info.get("exp_date"))
        account = XtreamAccount(
            username=str(user_info.get("username") or self.cfg.username),
            status=status,
            expires_at=from_unix_timestamp(expires) if expires else None,
            max_connections=_as_int(user_info.get("max_connections")),
            active_connections=_as_int(user_info.get("active_cons")),
            allowed_output_formats=list(user_info.get("allowed_output_formats") or []),
            server_timezone=_as_text(server_info.get("timezone")),
        )
        logger.info(
            "Authenticated with Xtream Codes %s (status=%s, max connections=%s)",
            self.base_url,
            account.status,
            account.max_connections,
        )
        return account

    async def _get_categories(self, action: str) -> list[SourceCategory]:
        payload = await self._get_json(action)
        if not isinstance(payload, list):
            logger.warning("Xtream Codes %s returned %s instead of a list", action, type(payload).__name__)
            return []
        categories = []
        for position, item in enumerate(payload):
            if not isinstance(item, dict):
                continue
            source_id = _as_text(item.get("category_id"))
            name = _as_text(item.get("category_name"))
            if source_id is None or name is None:
                continue
            categories.append(SourceCategory(source_id=source_id, name=name, position=position))
        return categories

    async def get_live_categories(self) -> list[SourceCategory]:
        return await self._get_categories("get_live_categories")

    async def get_vod_categories(self) -> list[SourceCategory]:
        return await self._get_categories("get_vod_categories")

    async def get_series_categories(self) -> list[SourceCategory]:
        return await self._get_categories("get_series_categories")

    def stream_url(self, stream_id: str, kind: str = "live", extension: str | None = None) -> str:
        user = urllib.parse.quote(self.cfg.username, safe="")
        password = urllib.parse.quote(self.cfg.password, safe="")
        ext = (extension or self._output).lstrip(".")
        return f"{self.base_url}/{kind}/{user}/{password}/{stream_id}.{ext}"

    def _to_stream(self, item: dict, kind: str) -> XtreamStream:
        stream_id = _as_text(item.get("stream_id"))
        extension = _as_text(item.get("container_extension")) if kind == "movie" else None
        return XtreamStream(
            stream_id=stream_id,
            name=_as_text(item.get("name")),
            stream_url=self.stream_url(stream_id, kind, extension) if stream_id else None,
            category_id=_as_text(item.get("category_id")),
            logo=_as_text(item.get("stream_icon")),
            epg_channel_id=_as_text(item.get("epg_channel_id")),
            number=_as_int(item.get("num")),
            tv_archive=bool(_as_int(item.get("tv_archive"))),
            tv_archive_duration=_as_int(item.get("tv_archive_duration")),
        )

    async def iter_live_streams(self, category_id: str | None = None) -> AsyncIterator[XtreamStream]:
        """Yield live streams as they are decoded from the response body"""
        async for item in self._iter_json("get_live_streams", category_id=category_id):
            yield self._to_stream(item, "live")

    async def iter_vod_streams(self, category_id: str | None = None) -> AsyncIterator[XtreamStream]:
        async for item in self._iter_json("get_vod_streams", category_id=category_id):
            yield self._to_stream(item, "movie")

    async def iter_series(self, category_id: str | None = None) -> AsyncIterator[dict]:
        """Yield raw series entries; episodes are resolved per series by the player"""
        async for item in self._iter_json("get_series", category_id=category_id):
            yield item

    async def get_short_epg(self, stream_id: str, channel_key: str | None = None, limit: int = 4) -> list[RawProgram]:
        """
        Fetch the next few programmes for one stream

        Args:
            stream_id: Xtream stream id
            channel_key: Key to file the programmes under (defaults to the stream id)
            limit: Number of listings requested
        """
        payload = await self._get_json("get_short_epg", stream_id=stream_id, limit=limit)
        listings = payload.get("epg_listings") if isinstance(payload, dict) else None
        programs: list[RawProgram] = []
        for listing in listings or []:
            program = self._to_program(listing, channel_key or str(stream_id))
            if program:
                programs.append(program)
        return programs

    def _to_program(self, listing: Any, channel_key: str) -> RawProgram | None:
        if not isinstance(listing, dict):
            return None
        try:
            if listing.get("start_timestamp") and listing.get("stop_timestamp"):
                start = from_unix_timestamp(listing["start_timestamp"])
                stop = from_unix_timestamp(listing["stop_timestamp"])
            else:
                start = parse_local_datetime(str(listing.get("start")), "UTC")
                stop = parse_local_datetime(str(listing.get("end") or listing.get("stop")), "UTC")
        except DateFormatError:
            logger.debug("Skipping short EPG listing with unreadable times: %s", listing.get("id"))
            return None
        return RawProgram(
            channel_key=channel_key,
            title=_decode_base64(listing.get("title")),
            start=start,
            stop=stop,
            description=_decode_base64(listing.get("description")),
        )

    def xmltv_url(self) -> str:
        return f"{self.base_url}/xmltv.php"

    async def fetch_xmltv(
        self,
        time_from: datetime | None = None,
        time_to: datetime | None = None,
        *,
        parse_timeout_seconds: int | None = None,
    ) -> GuidePayload:
        """Download the panel's full XMLTV guide and parse it"""
        temp_file: Path | None = None
        try:
            temp_file = await download_file(
                self.xmltv_url(),
                client=self._client,
                policy=self._policy,
                params=self._params(),
            )
            return await parse_xmltv_async(
                str(temp_file),
                time_from,
                time_to,
                parse_timeout_seconds=parse_timeout_seconds,
            )
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in (401, 403):
                raise AuthError("Xtream Codes server rejected credentials for xmltv.php") from exc
            raise ProviderError(f"xmltv.php failed with HTTP {exc.response.status_code}") from exc
        finally:
            if temp_file:
                cleanup_temp_file(temp_file)

    def describe(self) -> str:
        return f"Xtream Codes ({urllib.parse.urlparse(self.base_url).netloc})"
