"""
Stalker Portal (Ministra) client

Performs the MAG-style handshake and exposes categories, channels and guide
data. Session tokens are short-lived: an expired session is refreshed once per
sync cycle and the failed call replayed once; a second expiry in the same
cycle is fatal.
"""
from __future__ import annotations

import logging
import re
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any

import httpx

from iptv_ingest.config import settings
from iptv_ingest.exceptions import AuthError, ProviderError, SessionError
from iptv_ingest.services.fetch_types import RawProgram, SourceCategory, StalkerChannel
from iptv_ingest.utils.file_operations import build_http_client
from iptv_ingest.utils.http_retry import RetryPolicy, request_with_retry
from iptv_ingest.utils.timezone import DateFormatError, from_unix_timestamp, parse_local_datetime
from iptv_ingest.utils.urls import normalize_base_url


logger = logging.getLogger(__name__)

_MAC_PATTERN = re.compile(r'^[0-9A-F]{2}(:[0-9A-F]{2}){5}$')
_EXPIRED_MARKERS = ("authorization failed", "access denied")
_LINK_PREFIXES = ("ffmpeg ", "auto ")
_MAX_PAGES = 500


def normalize_mac(mac: str) -> str:
    """
    Normalize a MAC address to upper-case colon form

    Raises:
        ValueError: If the value is not a MAC address
    """
    candidate = mac.strip().upper().replace("-", ":")
    if len(candidate) == 12 and ":" not in candidate:
        candidate = ":".join(candidate[i:i + 2] for i in range(0, 12, 2))
    if not _MAC_PATTERN.match(candidate):
        raise ValueError(f"Invalid MAC address: {mac!r}")
    return candidate


def strip_link_prefix(cmd: str) -> str:
    """Portal commands are prefixed with player hints ('ffmpeg ', 'auto ')"""
    for prefix in _LINK_PREFIXES:
        if cmd.startswith(prefix):
            return cmd[len(prefix):].strip()
    return cmd.strip()


def _as_count(value) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


@dataclass(slots=True)
class StalkerConfig:
    base_url: str
    mac: str
    username: str | None = None
    password: str | None = None
    timezone: str = "UTC"
    user_agent: str | None = None
    profile_user_agent: str = "Model: MAG250; Link: WiFi"

    def __post_init__(self) -> None:
        self.mac = normalize_mac(self.mac)

    @classmethod
    def from_connection(cls, connection: dict[str, Any]) -> "StalkerConfig":
        """Build from a playlist's opaque connection parameters"""
        try:
            return cls(
                base_url=connection.get("base_url") or connection["portal_url"],
                mac=connection["mac"],
                username=connection.get("username") or None,
                password=connection.get("password") or None,
                timezone=connection.get("timezone") or "UTC",
            )
        except KeyError as exc:
            raise ValueError(f"Incomplete Stalker Portal connection parameters: {exc}") from exc


class _SessionExpired(Exception):
    """Internal signal: the portal no longer accepts the current token"""


class StalkerClient:
    """Async client for one Stalker Portal device session."""

    def __init__(
        self,
        cfg: StalkerConfig,
        *,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
        max_session_refreshes: int = 1,
    ) -> None:
        self.cfg = cfg
        self._base = normalize_base_url(cfg.base_url)
        if self._base.endswith("/c"):
            self._base = self._base[:-2]
        self._portal_endpoint = self._derive_portal_endpoint()
        self._owns_client = client is None
        self._client = client or build_http_client(user_agent=cfg.user_agent or settings.stalker_user_agent)
        self._policy = policy or RetryPolicy.from_settings()
        self._token: str | None = None
        self._token_issued: float = 0.0
        self._max_session_refreshes = max_session_refreshes
        self._refreshes_left = max_session_refreshes

    def _derive_portal_endpoint(self) -> str:
        # Support either /portal.php or /server/load.php style deployments
        raw = self.cfg.base_url.strip()
        if raw.lower().endswith(("portal.php", "load.php")):
            return raw if "://" in raw else f"http://{raw}"
        return f"{self._base}/portal.php"

    async def __aenter__(self) -> "StalkerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def begin_cycle(self) -> None:
        """Reset the per-cycle session refresh allowance"""
        self._refreshes_left = self._max_session_refreshes

    def _headers(self, include_token: bool = True) -> dict[str, str]:
        headers = {
            "User-Agent": self.cfg.user_agent or settings.stalker_user_agent,
            "Accept": "application/json",
            "X-User-Agent": self.cfg.profile_user_agent,
            "Referer": f"{self._base}/c/",
            "Cookie": f"mac={urllib.parse.quote(self.cfg.mac)}; stb_lang=en; timezone={self.cfg.timezone}",
        }
        if include_token and self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _send(self, params: dict[str, str], include_token: bool = True) -> Any:
        query = dict(params)
        query.setdefault("JsHttpRequest", "1-xml")
        response = await request_with_retry(
            self._client,
            "GET",
            self._portal_endpoint,
            params=query,
            headers=self._headers(include_token=include_token),
            policy=self._policy,
        )
        action = params.get("action")
        if response.status_code in (401, 403):
            raise _SessionExpired(f"HTTP {response.status_code} on {action}")
        if response.status_code >= 400:
            raise ProviderError(f"Portal {action} failed with HTTP {response.status_code}")

        text = response.text
        if any(marker in text[:200].lower() for marker in _EXPIRED_MARKERS):
            raise _SessionExpired(f"Portal refused {action}: {text[:80]!r}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"Invalid response from portal for {action}: {text[:80]!r}") from exc
        if isinstance(payload, dict) and "js" in payload:
            return payload["js"]
        return payload

    async def handshake(self) -> None:
        """
        Obtain a session token: handshake, optional credential login, profile

        Raises:
            AuthError: If the portal refuses the device or the credentials
        """
        self._token = None
        try:
            data = await self._send({"type": "stb", "action": "handshake", "token": "", "prehash": "0"}, include_token=False)
            token = data.get("token") if isinstance(data, dict) else None
            if not token:
                raise AuthError("Portal handshake failed: no token returned")
            self._token = token
            self._token_issued = time.monotonic()

            if self.cfg.username and self.cfg.password:
                auth = await self._send({
                    "type": "stb",
                    "action": "do_auth",
                    "login": self.cfg.username,
                    "password": self.cfg.password,
                })
                if auth in (False, None, 0, "0", ""):
                    raise AuthError("Portal rejected login credentials")

            profile = await self._send({"type": "stb", "action": "get_profile", "hd": "1"})
            if isinstance(profile, dict) and profile.get("token"):
                self._token = profile["token"]
        except _SessionExpired as exc:
            self._token = None
            raise AuthError(f"Portal refused the device during handshake: {exc}") from exc
        except AuthError:
            self._token = None
            raise

        logger.info("Stalker portal session established with %s", self._base)

    def _token_expired(self) -> bool:
        if not self._token:
            return True
        return (time.monotonic() - self._token_issued) >= settings.stalker_token_ttl_sec

    async def _call(self, params: dict[str, str]) -> Any:
        if self._token_expired():
            await self.handshake()
        try:
            return await self._send(params)
        except _SessionExpired as exc:
            if self._refreshes_left <= 0:
                raise SessionError(f"Portal session expired again within one cycle ({exc})") from exc
            self._refreshes_left -= 1
            logger.warning("Portal session expired (%s), re-running handshake once", exc)

        await self.handshake()
        try:
            return await self._send(params)
        except _SessionExpired as exc:
            raise SessionError(f"Portal session expired again right after refresh ({exc})") from exc

    async def get_genres(self) -> list[SourceCategory]:
        data = await self._call({"type": "itv", "action": "get_genres"})
        categories = []
        for position, row in enumerate(data if isinstance(data, list) else []):
            if not isinstance(row, dict):
                continue
            source_id = str(row.get("id") or "").strip()
            title = str(row.get("title") or "").strip()
            if not source_id or source_id == "*" or not title:
                continue
            categories.append(SourceCategory(source_id=source_id, name=title, position=position))
        return categories

    async def get_all_channels(self) -> list[StalkerChannel]:
        """Fetch every live channel, falling back to paginated listing when needed"""
        data = await self._call({"type": "itv", "action": "get_all_channels"})
        rows = data.get("data") if isinstance(data, dict) else None
        if rows:
            return [self._to_channel(row) for row in rows if isinstance(row, dict)]
        logger.info("Portal returned no bulk channel list, falling back to get_ordered_list")
        return await self.get_ordered_channels()

    async def get_ordered_channels(self, genre: str = "*") -> list[StalkerChannel]:
        channels: list[StalkerChannel] = []
        total_items = 0
        page_size = 0
        for page in range(1, _MAX_PAGES + 1):
            data = await self._call({"type": "itv", "action": "get_ordered_list", "genre": genre, "p": str(page)})
            if not isinstance(data, dict):
                break
            rows = [row for row in data.get("data") or [] if isinstance(row, dict)]
            if page == 1:
                total_items = _as_count(data.get("total_items"))
                page_size = _as_count(data.get("max_page_items"))
            channels.extend(self._to_channel(row) for row in rows)
            if not rows:
                break
            if total_items:
                if len(channels) >= total_items:
                    break
            elif page_size and len(rows) < page_size:
                # No total reported; a short page is the last one
                break
        return channels

    def _to_channel(self, row: dict) -> StalkerChannel:
        def text(key: str) -> str | None:
            value = row.get(key)
            value = str(value).strip() if value is not None else ""
            return value or None

        archive_days = None
        if text("tv_archive_duration"):
            try:
                archive_days = max(1, int(row["tv_archive_duration"]) // 24)
            except (TypeError, ValueError):
                archive_days = None

        number = None
        if text("number"):
            try:
                number = int(row["number"])
            except (TypeError, ValueError):
                number = None

        cmd = text("cmd")
        return StalkerChannel(
            channel_id=text("id"),
            name=text("name"),
            cmd=strip_link_prefix(cmd) if cmd else None,
            genre_id=text("tv_genre_id"),
            logo=text("logo"),
            epg_id=text("xmltv_id") or text("epg_id"),
            number=number,
            archive=bool(row.get("archive") or row.get("tv_archive") or row.get("allow_timeshift")),
            archive_days=archive_days,
        )

    async def get_epg_info(self, period_hours: int | None = None) -> list[RawProgram]:
        """Bulk guide for all channels, keyed by portal channel id"""
        data = await self._call({
            "type": "itv",
            "action": "get_epg_info",
            "period": str(period_hours or settings.stalker_epg_period_hours),
        })
        by_channel = data.get("data") if isinstance(data, dict) else None
        programs: list[RawProgram] = []
        if not isinstance(by_channel, dict):
            return programs
        for channel_key, rows in by_channel.items():
            for row in rows or []:
                program = self._to_program(row, str(channel_key))
                if program:
                    programs.append(program)
        return programs

    async def get_short_epg(self, channel_id: str, size: int = 10) -> list[RawProgram]:
        data = await self._call({"type": "itv", "action": "get_short_epg", "ch_id": channel_id, "size": str(size)})
        rows = data if isinstance(data, list) else []
        return [program for program in (self._to_program(row, channel_id) for row in rows) if program]

    def _to_program(self, row: Any, channel_key: str) -> RawProgram | None:
        if not isinstance(row, dict):
            return None
        try:
            if row.get("start_timestamp") and row.get("stop_timestamp"):
                start = from_unix_timestamp(row["start_timestamp"])
                stop = from_unix_timestamp(row["stop_timestamp"])
            else:
                start = parse_local_datetime(str(row.get("time")), self.cfg.timezone)
                stop = parse_local_datetime(str(row.get("time_to")), self.cfg.timezone)
        except DateFormatError:
            return None
        return RawProgram(
            channel_key=channel_key,
            title=(str(row.get("name")).strip() or None) if row.get("name") else None,
            start=start,
            stop=stop,
            description=(str(row.get("descr")).strip() or None) if row.get("descr") else None,
        )

    async def resolve_stream(self, cmd: str) -> str:
        """Exchange a channel command for a playable, usually short-lived, URL"""
        if not cmd:
            raise ProviderError("Channel missing command reference")
        data = await self._call({"type": "itv", "action": "create_link", "cmd": cmd})
        link = data.get("cmd") if isinstance(data, dict) else None
        if not link:
            raise ProviderError("Portal did not return stream URL")
        return strip_link_prefix(link)

    def describe(self) -> str:
        return f"Stalker Portal ({urllib.parse.urlparse(self._base).netloc})"
