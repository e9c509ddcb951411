"""
HTTP API tests; the store and sync engine are swapped via dependency overrides.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from iptv_ingest.dependencies import get_engine, get_store
from iptv_ingest.entities import SourceKind
from iptv_ingest.exceptions import AuthError
from iptv_ingest.main import app
from iptv_ingest.services.fetch_types import GuidePayload, M3UParseResult, M3URecord, RawProgram, SourcePayload
from iptv_ingest.services.persistence import MemoryPlaylistStore
from iptv_ingest.services.sync_service import SyncEngine


class StaticFetcher:

    def __init__(self, outcome):
        self.outcome = outcome

    async def fetch(self, playlist):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def live_payload() -> SourcePayload:
    now = datetime.now(timezone.utc)
    return SourcePayload(
        kind=SourceKind.M3U_URL,
        m3u=M3UParseResult(records=[
            M3URecord(name="BBC One", url="http://cdn.example/bbc1.m3u8", tvg_id="bbc1.uk", group="UK"),
            M3URecord(name="ITV", url="http://cdn.example/itv.m3u8", group="UK"),
        ]),
        guide=GuidePayload(programs=[
            RawProgram(channel_key="bbc1.uk", title="Now Showing", start=now - timedelta(minutes=10), stop=now + timedelta(minutes=20)),
            RawProgram(channel_key="bbc1.uk", title="Up Next", start=now + timedelta(minutes=20), stop=now + timedelta(minutes=80)),
        ]),
    )


@pytest.fixture
def store():
    return MemoryPlaylistStore()


@pytest.fixture
def client(store):
    engine = SyncEngine(store, StaticFetcher(live_payload()))
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_m3u(client) -> str:
    response = client.post("/playlists", json={
        "name": "Home",
        "source_kind": "m3u-url",
        "connection": {"url": "http://lists.example/get.php?username=u&password=secret"},
    })
    assert response.status_code == 201
    return response.json()["id"]


class TestPlaylists:

    def test_service_info(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_create_and_list(self, client):
        playlist_id = create_m3u(client)

        listed = client.get("/playlists").json()

        assert [p["id"] for p in listed] == [playlist_id]
        assert listed[0]["sync_status"] == "idle"
        assert "secret" not in listed[0]["source"]

    def test_xtream_requires_credentials(self, client):
        response = client.post("/playlists", json={
            "name": "Panel",
            "source_kind": "xtream",
            "connection": {"base_url": "http://panel.example", "username": "u"},
        })

        assert response.status_code == 422

    def test_blank_name_rejected(self, client):
        response = client.post("/playlists", json={"name": "  ", "source_kind": "m3u-url", "connection": {"url": "http://x/y.m3u"}})

        assert response.status_code == 422

    def test_delete(self, client):
        playlist_id = create_m3u(client)

        assert client.delete(f"/playlists/{playlist_id}").status_code == 204
        assert client.delete(f"/playlists/{playlist_id}").status_code == 404


class TestSyncAndChannels:

    def test_sync_then_browse(self, client):
        playlist_id = create_m3u(client)

        sync = client.post(f"/playlists/{playlist_id}/sync")
        channels = client.get(f"/playlists/{playlist_id}/channels").json()

        assert sync.status_code == 200
        body = sync.json()
        assert body["status"] == "idle"
        assert body["changes"]["channels"] == {"added": 2, "updated": 0, "removed": 0}
        assert body["error"] is None
        assert [c["name"] for c in channels] == ["BBC One", "ITV"]
        assert all(c["favorite"] is False for c in channels)

    def test_sync_error_reported(self, client, store):
        failing = SyncEngine(store, StaticFetcher(AuthError("bad password")))
        app.dependency_overrides[get_engine] = lambda: failing
        playlist_id = create_m3u(client)

        body = client.post(f"/playlists/{playlist_id}/sync").json()
        listed = client.get("/playlists").json()

        assert body["status"] == "error"
        assert body["error_type"] == "AuthError"
        assert listed[0]["last_error"] == "AuthError: bad password"

    def test_sync_unknown_playlist(self, client):
        assert client.post("/playlists/missing/sync").status_code == 404

    def test_favorites(self, client):
        playlist_id = create_m3u(client)
        client.post(f"/playlists/{playlist_id}/sync")
        channel_id = client.get(f"/playlists/{playlist_id}/channels").json()[0]["id"]

        assert client.put(f"/playlists/{playlist_id}/favorites/{channel_id}").status_code == 204
        favorites = client.get(f"/playlists/{playlist_id}/channels", params={"favorites_only": True}).json()
        assert [c["id"] for c in favorites] == [channel_id]
        assert favorites[0]["favorite"] is True

        assert client.delete(f"/playlists/{playlist_id}/favorites/{channel_id}").status_code == 204
        assert client.delete(f"/playlists/{playlist_id}/favorites/{channel_id}").status_code == 404
        assert client.put(f"/playlists/{playlist_id}/favorites/nope").status_code == 404

    def test_now_next(self, client):
        playlist_id = create_m3u(client)
        client.post(f"/playlists/{playlist_id}/sync")
        channels = client.get(f"/playlists/{playlist_id}/channels").json()
        bbc = next(c for c in channels if c["name"] == "BBC One")
        itv = next(c for c in channels if c["name"] == "ITV")

        response = client.get(f"/playlists/{playlist_id}/channels/{bbc['id']}/now-next", params={"timezone": "Asia/Tokyo"})
        unmapped = client.get(f"/playlists/{playlist_id}/channels/{itv['id']}/now-next").json()

        assert response.status_code == 200
        body = response.json()
        assert body["current"]["title"] == "Now Showing"
        assert body["next"]["title"] == "Up Next"
        assert body["current"]["start_time"].endswith("+09:00")
        assert unmapped["current"] is None and unmapped["next"] is None

    def test_now_next_invalid_timezone(self, client):
        playlist_id = create_m3u(client)

        response = client.get(f"/playlists/{playlist_id}/channels/x/now-next", params={"timezone": "Mars/Olympus"})

        assert response.status_code == 422

    def test_unknown_playlist_channels(self, client):
        assert client.get("/playlists/missing/channels").status_code == 404
