import time

from fastapi.testclient import TestClient

from setlistsync.api import create_app
from setlistsync.config import build_config
from setlistsync.engine import SyncEngine
from setlistsync.models import NormalizedRecord
from setlistsync.storage import get_entity_row, init_db, upsert_artist


class FakeSpotify:
    source = "spotify"

    def __init__(self):
        self.calls = []

    def fetch(self, resource, external_id):
        self.calls.append(external_id)
        return NormalizedRecord("spotify", resource, external_id, {"popularity": 61})


def _client(db_path, clients=None, background_workers=False):
    config = build_config({"executor": {"background_workers": background_workers, "poll_seconds": 0.1}})

    def _factory():
        return SyncEngine(config, connect=lambda: init_db(db_path), clients=clients or {})

    return TestClient(create_app(_factory))


def test_health(db_path):
    with _client(db_path) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_cron_requires_bearer_secret(db_path, monkeypatch):
    monkeypatch.setenv("SS_CRON_SECRET", "s3cret")
    with _client(db_path) as client:
        assert client.post("/api/cron/freshness").status_code == 401
        wrong = client.post("/api/cron/freshness", headers={"Authorization": "Bearer nope"})
        assert wrong.status_code == 401
        ok = client.post("/api/cron/freshness", headers={"Authorization": "Bearer s3cret"})
    assert ok.status_code == 200
    assert ok.json()["success"] is True


def test_cron_returns_report(conn, db_path, monkeypatch):
    monkeypatch.delenv("SS_CRON_SECRET", raising=False)
    upsert_artist(conn, {"id": "a1", "name": "Artist"})
    upsert_artist(conn, {"id": "a2", "name": "Other"})
    with _client(db_path) as client:
        response = client.post("/api/cron/freshness")
        stats = client.get("/api/freshness/stats").json()

    body = response.json()
    assert response.status_code == 200
    assert body["report"]["total_entities"] == 2
    assert body["report"]["staleness_rate"] == 100.0
    assert set(body["report"]["by_type"]) == {"artist", "show", "venue"}
    assert stats["last_check"] == body["report"]["timestamp"]


def test_cron_reports_errors_with_200(db_path, monkeypatch):
    monkeypatch.delenv("SS_CRON_SECRET", raising=False)

    def _explode(self):
        raise RuntimeError("evaluator crashed")

    monkeypatch.setattr(SyncEngine, "run_pass", _explode)
    with _client(db_path) as client:
        response = client.post("/api/cron/freshness")

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is False
    assert body["report"]["errors"] == ["evaluator crashed"]
    assert body["report"]["total_entities"] == 0


def test_force_refresh_endpoint(db_path, monkeypatch):
    monkeypatch.delenv("SS_CRON_SECRET", raising=False)
    with _client(db_path) as client:
        first = client.post("/api/freshness/force-refresh", json={"entity_kind": "show", "entity_id": "s1"})
        second = client.post("/api/freshness/force-refresh", json={"entity_kind": "show", "entity_id": "s1"})
        bad = client.post("/api/freshness/force-refresh", json={"entity_kind": "festival", "entity_id": "f1"})
        queue = client.get("/api/queue/stats").json()

    assert first.json() == {"enqueued": True}
    assert second.json() == {"enqueued": False}
    assert bad.status_code == 400
    assert queue["counts"]["waiting"] == 1


def test_drain_endpoint(db_path, monkeypatch):
    monkeypatch.delenv("SS_CRON_SECRET", raising=False)
    with _client(db_path) as client:
        client.post("/api/freshness/force-refresh", json={"entity_kind": "venue", "entity_id": "v404"})
        drained = client.post("/api/sync/drain", json={"max_jobs": 5}).json()
        runs = client.get("/api/sync/runs", params={"status": "failed"}).json()

    assert drained["processed"] == 1
    assert drained["queue"]["exhausted"] == 1
    assert runs[0]["entity_id"] == "v404"


def test_protected_endpoints_share_secret(db_path, monkeypatch):
    monkeypatch.setenv("SS_CRON_SECRET", "s3cret")
    with _client(db_path) as client:
        assert client.get("/api/queue/stats").status_code == 401
        assert client.get("/api/freshness/stats").status_code == 401
        assert client.post("/api/sync/drain").status_code == 401
        assert client.get("/health").status_code == 200


def test_cron_scheduled_jobs_run_without_drain(conn, db_path, monkeypatch):
    monkeypatch.delenv("SS_CRON_SECRET", raising=False)
    upsert_artist(conn, {"id": "a1", "name": "Trending", "trending_score": 80, "spotify_id": "sp1"})
    spotify = FakeSpotify()
    with _client(db_path, clients={"spotify": spotify}, background_workers=True) as client:
        response = client.post("/api/cron/freshness")
        assert response.json()["report"]["scheduled_syncs"] == 1
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline and not spotify.calls:
            time.sleep(0.02)
        counts = client.get("/api/queue/stats").json()["counts"]

    assert spotify.calls == ["sp1"]
    assert get_entity_row(conn, "artist", "a1")["popularity"] == 61
    assert counts["waiting"] == 0
