"""
Tests for the Xtream Codes client, using httpx.MockTransport in place of a panel.
"""
import asyncio
import base64
import json

import httpx
import pytest

from iptv_ingest.exceptions import AuthError, ProviderError, TransientNetworkError
from iptv_ingest.services.normalizer_service import normalize_xtream
from iptv_ingest.services.xtream_client import XtreamClient, XtreamConfig
from tests.conftest import FAST_POLICY, mock_http


ACCOUNT = {
    "user_info": {
        "username": "user",
        "auth": 1,
        "status": "Active",
        "exp_date": "1893456000",
        "max_connections": "2",
        "active_cons": "0",
        "allowed_output_formats": ["m3u8", "ts"],
    },
    "server_info": {"timezone": "Europe/London"},
}

CATEGORIES = [
    {"category_id": "1", "category_name": "News", "parent_id": 0},
    {"category_id": "2", "category_name": "Sport", "parent_id": 0},
]

LIVE_STREAMS = [
    {"num": 1, "name": "BBC One", "stream_id": 101, "stream_icon": "http://logo/bbc1.png",
     "epg_channel_id": "bbc1.uk", "category_id": "1", "tv_archive": 1, "tv_archive_duration": "7"},
    {"num": 2, "name": "Sky Sports", "stream_id": 102, "stream_icon": "",
     "epg_channel_id": None, "category_id": "2", "tv_archive": 0},
]


def panel(routes: dict, calls: list):
    """Answer player_api.php by action; a route value may be a callable taking the call count"""
    def handler(request: httpx.Request) -> httpx.Response:
        action = request.url.params.get("action", "auth")
        calls.append(action)
        route = routes[action]
        if callable(route):
            return route(calls.count(action))
        return httpx.Response(200, json=route)
    return handler


def make_client(http: httpx.AsyncClient) -> XtreamClient:
    cfg = XtreamConfig(base_url="panel.example:8080", username="user", password="pass")
    return XtreamClient(cfg, client=http, policy=FAST_POLICY)


def run(routes, scenario):
    calls: list[str] = []

    async def main():
        async with mock_http(panel(routes, calls)) as http:
            return await scenario(make_client(http))

    return asyncio.run(main()), calls


class TestXtreamConfig:

    def test_from_connection(self):
        cfg = XtreamConfig.from_connection({"host": "http://panel", "port": "8080", "username": "u", "password": "p"})

        assert cfg.base_url == "http://panel"
        assert cfg.port == 8080

    def test_incomplete_connection(self):
        with pytest.raises(ValueError):
            XtreamConfig.from_connection({"base_url": "http://panel", "username": "u"})

    def test_base_url_normalized(self):
        client = XtreamClient(XtreamConfig("panel.example:8080/player_api.php", "u", "p"), client=mock_http(lambda r: httpx.Response(200)))

        assert client.base_url == "http://panel.example:8080"
        assert client.stream_url("5") == "http://panel.example:8080/live/u/p/5.ts"


class TestAuthenticate:

    def test_account_details(self):
        account, calls = run({"auth": ACCOUNT}, lambda client: client.authenticate())

        assert account.status == "Active"
        assert account.max_connections == 2
        assert account.allowed_output_formats == ["m3u8", "ts"]
        assert account.server_timezone == "Europe/London"
        assert account.expires_at.year == 2030
        assert calls == ["auth"]

    def test_http_401_is_auth_error_without_retry(self):
        routes = {"auth": lambda n: httpx.Response(401, text="Unauthorized")}

        with pytest.raises(AuthError):
            run(routes, lambda client: client.authenticate())

    def test_http_401_sends_single_request(self):
        calls: list[str] = []
        routes = {"auth": lambda n: httpx.Response(401)}

        async def main():
            async with mock_http(panel(routes, calls)) as http:
                with pytest.raises(AuthError):
                    await make_client(http).authenticate()

        asyncio.run(main())
        assert calls == ["auth"]

    def test_auth_zero_rejected(self):
        rejected = {"user_info": {"auth": 0}}

        with pytest.raises(AuthError):
            run({"auth": rejected}, lambda client: client.authenticate())

    def test_expired_account_rejected(self):
        expired = {"user_info": {"auth": 1, "status": "Expired"}}

        with pytest.raises(AuthError):
            run({"auth": expired}, lambda client: client.authenticate())

    def test_non_account_answer(self):
        with pytest.raises(ProviderError):
            run({"auth": []}, lambda client: client.authenticate())


class TestRetries:

    def test_server_errors_retried(self):
        def flaky(n):
            return httpx.Response(503) if n < 3 else httpx.Response(200, json=ACCOUNT)

        account, calls = run({"auth": flaky}, lambda client: client.authenticate())

        assert account.username == "user"
        assert calls == ["auth"] * 3

    def test_retries_exhausted(self):
        calls: list[str] = []
        routes = {"auth": lambda n: httpx.Response(502)}

        async def main():
            async with mock_http(panel(routes, calls)) as http:
                with pytest.raises(TransientNetworkError):
                    await make_client(http).authenticate()

        asyncio.run(main())
        assert len(calls) == FAST_POLICY.max_retries + 1

    def test_transport_errors_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=ACCOUNT)

        async def main():
            async with mock_http(handler) as http:
                return await make_client(http).authenticate()

        assert asyncio.run(main()).status == "Active"
        assert len(attempts) == 2

    def test_rate_limit_retried_once(self):
        def limited(n):
            return httpx.Response(429, headers={"Retry-After": "0"}) if n == 1 else httpx.Response(200, json=ACCOUNT)

        _, calls = run({"auth": limited}, lambda client: client.authenticate())

        assert calls == ["auth", "auth"]

    def test_rate_limit_twice_gives_up(self):
        calls: list[str] = []
        routes = {"auth": lambda n: httpx.Response(429)}

        async def main():
            async with mock_http(panel(routes, calls)) as http:
                with pytest.raises(TransientNetworkError):
                    await make_client(http).authenticate()

        asyncio.run(main())
        assert calls == ["auth", "auth"]


class TestListings:

    def test_live_categories(self):
        categories, _ = run({"get_live_categories": CATEGORIES}, lambda client: client.get_live_categories())

        assert [(c.source_id, c.name, c.position) for c in categories] == [("1", "News", 0), ("2", "Sport", 1)]

    def test_live_streams_decoded_incrementally(self):
        body = json.dumps(LIVE_STREAMS).encode()

        async def pieces():
            for i in range(0, len(body), 7):
                yield body[i:i + 7]

        def chunked(n):
            return httpx.Response(200, content=pieces())

        async def collect(client):
            return [stream async for stream in client.iter_live_streams()]

        streams, calls = run({"get_live_streams": chunked}, collect)

        assert [s.stream_id for s in streams] == ["101", "102"]
        first = streams[0]
        assert first.stream_url == "http://panel.example:8080/live/user/pass/101.ts"
        assert first.logo == "http://logo/bbc1.png"
        assert first.epg_channel_id == "bbc1.uk"
        assert first.tv_archive is True
        assert first.tv_archive_duration == 7
        assert streams[1].logo is None
        assert calls == ["get_live_streams"]

    def test_streams_keyed_by_id(self):
        keyed = {str(item["stream_id"]): item for item in LIVE_STREAMS}

        async def collect(client):
            return [stream async for stream in client.iter_live_streams()]

        streams, _ = run({"get_live_streams": keyed}, collect)

        assert {s.stream_id for s in streams} == {"101", "102"}

    def test_truncated_listing_is_provider_error(self):
        def truncated(n):
            return httpx.Response(200, content=b'[{"stream_id": 1, "name": "A"}, {"stream_id": 2')

        async def collect(client):
            return [stream async for stream in client.iter_live_streams()]

        with pytest.raises(ProviderError):
            run({"get_live_streams": truncated}, collect)

    def test_channel_ids_stable_across_syncs(self):
        async def fetch(client):
            categories = await client.get_live_categories()
            streams = [stream async for stream in client.iter_live_streams()]
            return normalize_xtream("pl", categories, streams)

        routes = {"get_live_categories": CATEGORIES, "get_live_streams": LIVE_STREAMS}
        first, _ = run(routes, fetch)
        second, _ = run(routes, fetch)

        assert first.channels.ids() == second.channels.ids() == ["pl:ch:101", "pl:ch:102"]

    def test_short_epg_base64(self):
        listing = {
            "epg_listings": [{
                "id": "1",
                "title": base64.b64encode("Evening News".encode()).decode(),
                "description": base64.b64encode("Headlines".encode()).decode(),
                "start": "2024-01-01 18:00:00",
                "end": "2024-01-01 18:30:00",
                "start_timestamp": "1704132000",
                "stop_timestamp": "1704133800",
            }]
        }
        programs, calls = run({"get_short_epg": listing}, lambda client: client.get_short_epg("101", "bbc1.uk"))

        assert len(programs) == 1
        assert programs[0].title == "Evening News"
        assert programs[0].description == "Headlines"
        assert programs[0].channel_key == "bbc1.uk"
        assert programs[0].start.isoformat() == "2024-01-01T18:00:00+00:00"
