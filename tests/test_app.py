import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from greenviva import app as app_module
from greenviva.app import (
    app,
    get_daily_cache,
    get_gmail_client,
    get_monthly_cache,
    get_sync_coordinator,
    get_tip_store,
    get_viewer,
)
from greenviva.session import session_key
from greenviva.tools.cache import PeriodCache
from greenviva.tools.gmail import AuthenticationExpired, GmailError, RateLimited
from greenviva.tools.mirror import TipMirror
from greenviva.tools.sync import SyncCoordinator
from greenviva.tools.tips import TipStore
from fakes import TZ, FakeGmailClient, transfer_message


class FailingClient(FakeGmailClient):
    def __init__(self, exc):
        super().__init__()
        self.exc = exc

    async def list_message_ids(self, query, max_results=500):
        raise self.exc


@pytest.fixture
def gmail():
    return FakeGmailClient({
        "m1": transfer_message("m1", amount="25.00", date_header="Fri, 21 Mar 2025 09:00:00 +0200"),
        "m2": transfer_message("m2", amount="7.50", sender="John Smith",
                               date_header="Fri, 21 Mar 2025 18:30:00 +0200"),
    })


@pytest.fixture
def store(tmp_path):
    return TipStore(tmp_path / "tips.json", tz=TZ)


@pytest.fixture
def client(tmp_path, gmail, store):
    coordinator = SyncCoordinator(store, TipMirror(gmail))
    app.dependency_overrides[get_gmail_client] = lambda: gmail
    app.dependency_overrides[get_daily_cache] = lambda: PeriodCache(tmp_path / "daily.json", ttl=300)
    app.dependency_overrides[get_monthly_cache] = lambda: PeriodCache(tmp_path / "monthly.json", ttl=86400)
    app.dependency_overrides[get_tip_store] = lambda: store
    app.dependency_overrides[get_sync_coordinator] = lambda: coordinator
    with TestClient(app) as test_client:
        yield test_client
        test_client.portal.call(coordinator.drain)
    app.dependency_overrides.clear()


def _use_client(fake):
    app.dependency_overrides[get_gmail_client] = lambda: fake


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------

def test_daily_transfers(client):
    resp = client.get("/api/gmail", params={"date": "2025-03-21"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["date"] == "2025-03-21"
    assert body["count"] == 2
    assert body["total_amount"] == 32.5
    assert [t["sender"] for t in body["transfers"]] == ["John Smith", "Jane Doe"]


def test_monthly_totals(client):
    body = client.get("/api/gmail/monthly", params={"year": 2025}).json()
    assert body["year"] == 2025
    assert len(body["monthly_totals"]) == 12
    assert body["monthly_totals"][2] == {"period": "March 2025", "total_amount": 32.5, "count": 2}


def test_monthly_stream_emits_progress_then_data(client):
    resp = client.get("/api/gmail/monthly/stream", params={"year": 2025})
    assert resp.status_code == 200
    events = [json.loads(line) for line in resp.text.splitlines() if line]

    assert events[0] == {"type": "progress", "current": 0, "total": 2}
    assert events[-2] == {"type": "progress", "current": 2, "total": 2}
    assert events[-1]["type"] == "data"
    assert events[-1]["monthly_totals"][2]["count"] == 2


def test_monthly_stream_reports_errors_in_band(client):
    _use_client(FailingClient(RateLimited("slow down", status_code=429)))
    events = [json.loads(line) for line in client.get("/api/gmail/monthly/stream?year=2025").text.splitlines()]
    assert events == [{"type": "error", "status": 429, "error": app_module.RATE_LIMITED_MESSAGE}]


def test_summary_includes_tips(client, store):
    store.add(7.5, "2025-03-21T20:00:00")
    body = client.get("/api/summary", params={"date": "2025-03-21", "goal": 50}).json()
    assert body["total"] == 40.0
    assert body["tip_count"] == 1
    assert body["progress_percent"] == 80.0


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("exc, status", [
    (AuthenticationExpired("expired", status_code=401), 401),
    (RateLimited("quota", status_code=429), 429),
    (GmailError("connection reset"), 503),
])
def test_gmail_errors_map_to_status(client, exc, status):
    _use_client(FailingClient(exc))
    resp = client.get("/api/gmail", params={"date": "2025-03-21"})
    assert resp.status_code == status
    assert "error" in resp.json()


def test_session_expired_message(client):
    _use_client(FailingClient(AuthenticationExpired("expired")))
    resp = client.get("/api/gmail/monthly", params={"year": 2025})
    assert resp.json() == {"error": app_module.SESSION_EXPIRED_MESSAGE}


def test_ended_session_is_rejected(client):
    del app.dependency_overrides[get_gmail_client]
    app_module._sessions.end("stale-token")

    resp = client.get("/api/gmail", params={"date": "2025-03-21"},
                      headers={"Authorization": "Bearer stale-token"})
    assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Tips
# ---------------------------------------------------------------------------

def test_add_list_and_delete_tip(client, store):
    resp = client.post("/api/tips", json={"amount": 5, "date": "2025-03-21T12:00:00", "note": "table 2"})
    assert resp.status_code == 201
    tip = resp.json()
    assert tip["note"] == "table 2"
    assert store.get(tip["id"]) is not None

    listed = client.get("/api/tips", params={"date": "2025-03-21"}).json()
    assert [t["id"] for t in listed["tips"]] == [tip["id"]]
    assert listed["total_amount"] == 5.0

    assert client.delete(f"/api/tips/{tip['id']}").status_code == 200
    assert client.delete(f"/api/tips/{tip['id']}").status_code == 404


@pytest.mark.parametrize("payload", [
    {"amount": -1, "date": "2025-03-21"},
    {"amount": 1, "date": "yesterday"},
    {"date": "2025-03-21"},
])
def test_invalid_tip_is_rejected(client, payload):
    assert client.post("/api/tips", json=payload).status_code == 422


def test_tips_monthly(client, store):
    store.add(2, "2025-01-10T12:00:00")
    store.add(3, "2025-01-20T12:00:00")
    body = client.get("/api/tips/monthly", params={"year": 2025}).json()
    assert body["monthly_totals"][0] == {"period": "January 2025", "total_amount": 5.0, "count": 2}


def test_push_syncs_local_tips(client, store, gmail):
    store.add(2, "2025-03-21T12:00:00")
    resp = client.post("/api/tips/push")
    assert resp.json() == {"status": "synced", "count": 1}
    assert store.list_unsynced() == []
    assert len(gmail.drafts) == 1


def test_mirror_save_then_load(client):
    tips = [{"id": "x1", "amount": 4.0, "date": "2025-03-21T12:00:00", "note": None, "synced": True}]
    assert client.post("/api/tips/sync", json=tips).json() == {"success": True}
    assert client.get("/api/tips/sync").json() == {"tips": tips}


def test_initialize_merges_remote(client, store):
    client.post("/api/tips/sync", json=[{"id": "r1", "amount": 6.0, "date": "2025-03-21"}])
    store.add(1, "2025-03-22")

    body = client.post("/api/tips/initialize").json()
    assert {t["id"] for t in body["tips"]} >= {"r1"}
    assert len(body["tips"]) == 2
    assert all(t["synced"] for t in body["tips"])


def test_one_coordinator_per_store_follows_latest_credential(store, monkeypatch):
    monkeypatch.setattr(app_module, "_coordinators", {})
    first, second = FakeGmailClient(token="a"), FakeGmailClient(token="b")

    coordinator = get_sync_coordinator(client=first, store=store)
    assert get_sync_coordinator(client=second, store=store) is coordinator
    assert coordinator.mirror.client is second


# ---------------------------------------------------------------------------
# Stale monthly streams
# ---------------------------------------------------------------------------

class GatedClient(FakeGmailClient):
    """Holds the first listing until ``release`` is set."""

    def __init__(self, messages):
        super().__init__(messages)
        self.release = asyncio.Event()
        self.listings = 0

    async def list_message_ids(self, query, max_results=500):
        self.listings += 1
        if self.listings == 1:
            await self.release.wait()
        return await super().list_message_ids(query, max_results)


@pytest.mark.asyncio
async def test_older_stream_is_superseded_by_newer_year(tmp_path, monkeypatch):
    monkeypatch.setattr(app_module, "_views", {})
    gmail = GatedClient({"m1": transfer_message("m1", date_header="Fri, 21 Mar 2025 09:00:00 +0200")})
    app.dependency_overrides[get_gmail_client] = lambda: gmail
    app.dependency_overrides[get_monthly_cache] = lambda: PeriodCache(tmp_path / "monthly.json", ttl=86400)
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            older = asyncio.create_task(http.get("/api/gmail/monthly/stream", params={"year": 2024}))
            while gmail.listings < 1:
                await asyncio.sleep(0)
            newer = await http.get("/api/gmail/monthly/stream", params={"year": 2025})
            gmail.release.set()
            older = await older
    finally:
        app.dependency_overrides.clear()

    newer_events = [json.loads(line) for line in newer.text.splitlines()]
    older_events = [json.loads(line) for line in older.text.splitlines()]
    assert newer_events[-1]["type"] == "data"
    assert newer_events[-1]["year"] == 2025
    assert older_events[-1] == {"type": "superseded", "year": 2024}


def test_viewer_key_per_bearer_token():
    assert get_viewer("Bearer tok") == session_key("tok")
    assert get_viewer(None) == "local"


def test_ended_session_drops_its_view(monkeypatch):
    monkeypatch.setattr(app_module, "_views", {})
    key = session_key("idle-token")
    app_module._monthly_view(key)
    app_module._monthly_view("local")

    app_module._sessions.end("idle-token")

    assert list(app_module._views) == ["local"]
