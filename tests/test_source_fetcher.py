"""
Tests for fetching raw source material per source kind.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from iptv_ingest.entities import Playlist, SourceKind
from iptv_ingest.exceptions import AuthError, SessionError, ValidationError
from iptv_ingest.services.normalizer_service import normalize
from iptv_ingest.services.source_service import SourceFetcher
from tests.conftest import FAST_POLICY, mock_http


PLAYLIST = b"""#EXTM3U url-tvg="http://guide.example/guide.xml"
#EXTINF:-1 tvg-id="bbc1.uk" group-title="UK",BBC One
http://cdn.example/bbc1.m3u8
#EXTINF:-1 group-title="UK",ITV
http://cdn.example/itv.m3u8
"""

GUIDE = b"""<?xml version="1.0"?>
<tv>
  <channel id="bbc1.uk"><display-name>BBC One</display-name></channel>
  <programme channel="bbc1.uk" start="%(start)s +0000" stop="%(stop)s +0000"><title>News</title></programme>
</tv>
"""


def guide_now() -> bytes:
    now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
    fmt = "%Y%m%d%H%M%S"
    return GUIDE % {
        b"start": now.strftime(fmt).encode(),
        b"stop": (now + timedelta(hours=1)).strftime(fmt).encode(),
    }


def fetch(playlist: Playlist, handler, epg_enabled=True):
    async def main():
        async with mock_http(handler) as http:
            fetcher = SourceFetcher(client=http, policy=FAST_POLICY, epg_enabled=epg_enabled)
            return await fetcher.fetch(playlist)

    return asyncio.run(main())


def m3u_playlist(**kwargs) -> Playlist:
    return Playlist(
        id="pl",
        name="Home",
        source_kind=SourceKind.M3U_URL,
        connection={"url": "http://lists.example/list.m3u"},
        **kwargs,
    )


class TestM3USources:

    def test_url_with_header_guide(self):
        def handler(request):
            if request.url.host == "lists.example":
                return httpx.Response(200, content=PLAYLIST)
            return httpx.Response(200, content=guide_now())

        payload = fetch(m3u_playlist(), handler)

        assert payload.kind == SourceKind.M3U_URL
        assert [r.name for r in payload.m3u.records] == ["BBC One", "ITV"]
        assert payload.guide_failed is False
        assert [p.title for p in payload.guide.programs] == ["News"]

        normalized = normalize("pl", payload)
        assert len(normalized.channels) == 2
        assert len(normalized.epg_entries) == 1

    def test_configured_guide_url_wins(self):
        seen = []

        def handler(request):
            seen.append(request.url.host)
            if request.url.host == "lists.example":
                return httpx.Response(200, content=PLAYLIST)
            return httpx.Response(200, content=guide_now())

        fetch(m3u_playlist(epg_url="http://other.example/epg.xml"), handler)

        assert seen == ["lists.example", "other.example"]

    def test_guide_failure_is_not_fatal(self):
        def handler(request):
            if request.url.host == "lists.example":
                return httpx.Response(200, content=PLAYLIST)
            return httpx.Response(503)

        payload = fetch(m3u_playlist(), handler)

        assert payload.guide is None
        assert payload.guide_failed is True
        assert len(payload.m3u.records) == 2

    def test_guide_disabled(self):
        hosts = []

        def handler(request):
            hosts.append(request.url.host)
            return httpx.Response(200, content=PLAYLIST)

        payload = fetch(m3u_playlist(), handler, epg_enabled=False)

        assert payload.guide is None
        assert hosts == ["lists.example"]

    def test_playlist_401_is_auth_error(self):
        with pytest.raises(AuthError):
            fetch(m3u_playlist(), lambda request: httpx.Response(401))

    def test_local_file(self, tmp_path):
        path = tmp_path / "list.m3u"
        path.write_bytes(PLAYLIST)
        playlist = Playlist(id="pl", name="File", source_kind=SourceKind.M3U_FILE, connection={"path": str(path)})

        payload = fetch(playlist, lambda request: httpx.Response(200, content=guide_now()))

        assert len(payload.m3u.records) == 2

    def test_missing_url(self):
        playlist = Playlist(id="pl", name="Broken", source_kind=SourceKind.M3U_URL, connection={})

        with pytest.raises(ValidationError) as excinfo:
            fetch(playlist, lambda request: httpx.Response(200))
        assert excinfo.value.reason == "invalid_connection"


class TestProtocolSources:

    def test_xtream(self):
        def handler(request):
            if request.url.path.endswith("xmltv.php"):
                return httpx.Response(200, content=guide_now())
            action = request.url.params.get("action")
            if action is None:
                return httpx.Response(200, json={"user_info": {"auth": 1, "status": "Active"}})
            if action == "get_live_categories":
                return httpx.Response(200, json=[{"category_id": "1", "category_name": "UK"}])
            return httpx.Response(200, json=[
                {"stream_id": 101, "name": "BBC One", "category_id": "1", "epg_channel_id": "bbc1.uk"},
            ])

        playlist = Playlist(
            id="pl",
            name="Panel",
            source_kind=SourceKind.XTREAM,
            connection={"base_url": "http://panel.example", "username": "u", "password": "p"},
        )
        payload = fetch(playlist, handler)
        normalized = normalize("pl", payload)

        assert [c.id for c in normalized.channels] == ["pl:ch:101"]
        assert [c.name for c in normalized.categories] == ["UK"]
        assert len(normalized.epg_entries) == 1

    def test_xtream_bad_connection(self):
        playlist = Playlist(id="pl", name="Panel", source_kind=SourceKind.XTREAM, connection={"username": "u"})

        with pytest.raises(ValidationError):
            fetch(playlist, lambda request: httpx.Response(200))

    def test_stalker_session_error_during_guide_is_fatal(self):
        handshakes = []

        def handler(request):
            action = request.url.params["action"]
            if action == "handshake":
                handshakes.append(action)
                return httpx.Response(200, json={"js": {"token": f"t{len(handshakes)}"}})
            if action == "get_profile":
                return httpx.Response(200, json={"js": {}})
            if action == "get_genres":
                return httpx.Response(200, json={"js": [{"id": "1", "title": "UK"}]})
            if action == "get_all_channels":
                return httpx.Response(200, json={"js": {"data": [{"id": "42", "name": "BBC One", "cmd": "http://p/42"}]}})
            return httpx.Response(401)

        playlist = Playlist(
            id="pl",
            name="Portal",
            source_kind=SourceKind.STALKER,
            connection={"portal_url": "http://portal.example/c/", "mac": "00:1A:79:00:00:01"},
        )
        with pytest.raises(SessionError):
            fetch(playlist, handler)
        assert len(handshakes) == 2
