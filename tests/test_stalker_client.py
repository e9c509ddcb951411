"""
Tests for the Stalker Portal client: handshake, session refresh and listings.
"""
import asyncio

import httpx
import pytest

from iptv_ingest.exceptions import AuthError, SessionError
from iptv_ingest.services.stalker_client import StalkerClient, StalkerConfig, normalize_mac, strip_link_prefix
from tests.conftest import FAST_POLICY, mock_http


GENRES = [{"id": "*", "title": "All"}, {"id": "10", "title": "News"}, {"id": "11", "title": "Sport"}]

CHANNELS = {
    "total_items": 2,
    "data": [
        {"id": "42", "name": "BBC One", "cmd": "ffmpeg http://portal/ch/42", "tv_genre_id": "10",
         "logo": "http://logo/42.png", "xmltv_id": "bbc1.uk", "number": "1", "tv_archive_duration": "48", "archive": 1},
        {"id": "43", "name": "Sky Sports", "cmd": "auto http://portal/ch/43", "tv_genre_id": "11"},
    ],
}


class Portal:
    """Fake portal answering load.php style requests; `expire` lists actions to answer 401 on"""

    def __init__(self, expire=None, token=True, bulk=CHANNELS, pages=()):
        self.expire = dict(expire or {})
        self.token = token
        self.bulk = bulk
        self.pages = list(pages)
        self.actions: list[str] = []
        self.handshakes = 0
        self.authorization: dict[str, str | None] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        action = request.url.params["action"]
        self.actions.append(action)
        self.authorization[action] = request.headers.get("Authorization")

        if action == "handshake":
            self.handshakes += 1
            js = {"token": f"tok-{self.handshakes}"} if self.token else {}
            return httpx.Response(200, json={"js": js})
        if action == "get_profile":
            return httpx.Response(200, json={"js": {"id": "1"}})

        if self.expire.get(action, 0) > 0:
            self.expire[action] -= 1
            return httpx.Response(401)

        if action == "get_genres":
            return httpx.Response(200, json={"js": GENRES})
        if action == "get_all_channels":
            return httpx.Response(200, json={"js": self.bulk})
        if action == "get_ordered_list":
            page = int(request.url.params["p"])
            js = self.pages[page - 1] if page <= len(self.pages) else {"data": []}
            return httpx.Response(200, json={"js": js})
        if action == "get_epg_info":
            return httpx.Response(200, json={"js": {"data": {"42": [
                {"name": "News", "descr": "Headlines", "start_timestamp": 1704132000, "stop_timestamp": 1704133800},
                {"name": "Broken", "time": "garbage", "time_to": "garbage"},
            ]}}})
        return httpx.Response(404)


def run(portal: Portal, scenario):
    async def main():
        async with mock_http(portal) as http:
            cfg = StalkerConfig(base_url="http://portal.example/c/", mac="00-1a-79-00-00-01")
            client = StalkerClient(cfg, client=http, policy=FAST_POLICY)
            client.begin_cycle()
            return await scenario(client)

    return asyncio.run(main())


class TestHelpers:

    def test_normalize_mac(self):
        assert normalize_mac("001a79000001") == "00:1A:79:00:00:01"
        assert normalize_mac("00-1a-79-00-00-01") == "00:1A:79:00:00:01"

    def test_invalid_mac(self):
        with pytest.raises(ValueError):
            normalize_mac("not-a-mac")

    def test_strip_link_prefix(self):
        assert strip_link_prefix("ffmpeg http://a/b") == "http://a/b"
        assert strip_link_prefix("auto http://a/b") == "http://a/b"
        assert strip_link_prefix("http://a/b") == "http://a/b"

    def test_from_connection(self):
        cfg = StalkerConfig.from_connection({"portal_url": "http://portal", "mac": "00:1a:79:00:00:01"})

        assert cfg.mac == "00:1A:79:00:00:01"
        assert cfg.timezone == "UTC"

    def test_connection_without_mac(self):
        with pytest.raises(ValueError):
            StalkerConfig.from_connection({"portal_url": "http://portal"})


class TestSession:

    def test_token_sent_as_bearer(self):
        portal = Portal()

        genres = run(portal, lambda client: client.get_genres())

        assert [(g.source_id, g.name) for g in genres] == [("10", "News"), ("11", "Sport")]
        assert portal.authorization["handshake"] is None
        assert portal.authorization["get_genres"] == "Bearer tok-1"
        assert portal.handshakes == 1

    def test_single_expiry_recovers(self):
        portal = Portal(expire={"get_genres": 1})

        genres = run(portal, lambda client: client.get_genres())

        assert len(genres) == 2
        assert portal.handshakes == 2
        assert portal.authorization["get_genres"] == "Bearer tok-2"

    def test_expiry_after_refresh_is_session_error(self):
        portal = Portal(expire={"get_genres": 2})

        with pytest.raises(SessionError):
            run(portal, lambda client: client.get_genres())
        assert portal.handshakes == 2

    def test_second_expiry_in_cycle_is_session_error(self):
        portal = Portal(expire={"get_genres": 1, "get_all_channels": 1})

        async def scenario(client):
            await client.get_genres()
            await client.get_all_channels()

        with pytest.raises(SessionError):
            run(portal, scenario)

    def test_new_cycle_restores_refresh(self):
        portal = Portal(expire={"get_genres": 1, "get_all_channels": 1})

        async def scenario(client):
            await client.get_genres()
            client.begin_cycle()
            return await client.get_all_channels()

        channels = run(portal, scenario)

        assert len(channels) == 2
        assert portal.handshakes == 3

    def test_handshake_without_token(self):
        portal = Portal(token=False)

        with pytest.raises(AuthError):
            run(portal, lambda client: client.get_genres())


class TestListings:

    def test_channels(self):
        channels = run(Portal(), lambda client: client.get_all_channels())

        first, second = channels
        assert first.channel_id == "42"
        assert first.cmd == "http://portal/ch/42"
        assert first.epg_id == "bbc1.uk"
        assert first.genre_id == "10"
        assert first.number == 1
        assert first.archive is True
        assert first.archive_days == 2
        assert second.cmd == "http://portal/ch/43"
        assert second.archive is False

    def test_epg_info_keyed_by_portal_channel(self):
        programs = run(Portal(), lambda client: client.get_epg_info())

        assert len(programs) == 1
        program = programs[0]
        assert program.channel_key == "42"
        assert program.title == "News"
        assert program.description == "Headlines"
        assert program.start.isoformat() == "2024-01-01T18:00:00+00:00"


def row(channel_id):
    return {"id": channel_id, "name": f"Channel {channel_id}", "cmd": f"ffmpeg http://portal/ch/{channel_id}"}


class TestOrderedListing:

    def test_pages_until_empty_without_total(self):
        portal = Portal(bulk={"data": []}, pages=[{"data": [row("1")]}, {"data": [row("2")]}])

        channels = run(portal, lambda client: client.get_all_channels())

        assert [c.channel_id for c in channels] == ["1", "2"]
        assert portal.actions.count("get_ordered_list") == 3

    def test_short_page_ends_listing_without_total(self):
        portal = Portal(bulk={"data": []}, pages=[
            {"max_page_items": "2", "data": [row("1"), row("2")]},
            {"max_page_items": "2", "data": [row("3")]},
            {"max_page_items": "2", "data": [row("4")]},
        ])

        channels = run(portal, lambda client: client.get_ordered_channels())

        assert [c.channel_id for c in channels] == ["1", "2", "3"]
        assert portal.actions.count("get_ordered_list") == 2

    def test_total_items_stops_paging(self):
        portal = Portal(pages=[
            {"total_items": 3, "data": [row("1"), row("2")]},
            {"total_items": 3, "data": [row("3")]},
            {"total_items": 3, "data": [row("4")]},
        ])

        channels = run(portal, lambda client: client.get_ordered_channels())

        assert [c.channel_id for c in channels] == ["1", "2", "3"]
        assert portal.actions.count("get_ordered_list") == 2
