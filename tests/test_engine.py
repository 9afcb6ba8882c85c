import time

import pytest

from setlistsync.config import build_config
from setlistsync.engine import PASS_ALREADY_RUNNING, PASS_LEASE_NAME, SyncEngine
from setlistsync.models import NormalizedRecord
from setlistsync.storage import get_entity_row, init_db, try_acquire_lease, upsert_artist


class FakeSpotify:
    source = "spotify"

    def __init__(self):
        self.calls = []

    def fetch(self, resource, external_id):
        self.calls.append(external_id)
        return NormalizedRecord("spotify", resource, external_id, {"popularity": 42})


def _engine(db_path, clock, overrides=None, clients=None, workers=False):
    config = build_config(overrides or {})
    engine = SyncEngine(
        config,
        connect=lambda: init_db(db_path),
        clients=clients if clients is not None else {},
        clock=clock.utc,
    )
    engine.init(workers=workers)
    return engine


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_run_pass_caches_report_for_statistics(conn, db_path, clock):
    upsert_artist(conn, {"id": "a1", "name": "Artist"})
    engine = _engine(db_path, clock)

    report = engine.run_pass()
    stats = engine.get_freshness_statistics()

    assert report.skipped is False
    assert stats["last_check"] == report.timestamp
    assert stats["report"]["total_entities"] == 1
    assert len(stats["rules"]) == 10


def test_cached_report_survives_restart_until_ttl(conn, db_path, clock):
    upsert_artist(conn, {"id": "a1", "name": "Artist"})
    _engine(db_path, clock).run_pass()

    restarted = _engine(db_path, clock, {"report": {"cache_ttl_seconds": 60}})
    assert restarted.latest_report()["total_entities"] == 1

    clock.advance(61)
    assert restarted.latest_report() is None
    assert restarted.get_freshness_statistics()["last_check"] is None


def test_overlapping_pass_in_process_is_skipped(db_path, clock):
    engine = _engine(db_path, clock)
    engine._pass_lock.acquire()
    try:
        report = engine.run_pass()
    finally:
        engine._pass_lock.release()

    assert report.skipped is True
    assert report.errors == [PASS_ALREADY_RUNNING]
    assert report.to_dict()["by_type"]["venue"] == {"total": 0, "stale": 0, "scheduled": 0}


def test_pass_held_by_other_process_is_skipped(conn, db_path, clock):
    assert try_acquire_lease(conn, PASS_LEASE_NAME, "other-host", 600) is True
    engine = _engine(db_path, clock)

    report = engine.run_pass()

    assert report.skipped is True


def test_pass_releases_lease(conn, db_path, clock):
    engine = _engine(db_path, clock)
    engine.run_pass()
    assert try_acquire_lease(conn, PASS_LEASE_NAME, "other-host", 600) is True


def test_pass_then_drain_syncs_trending_artist(conn, db_path, clock):
    upsert_artist(conn, {"id": "a1", "name": "Trending", "trending_score": 75, "spotify_id": "sp1"})
    client = FakeSpotify()
    engine = _engine(db_path, clock, clients={"spotify": client})

    report = engine.run_pass()
    processed = engine.drain()

    assert report.scheduled_syncs == 1
    assert processed == 1
    assert client.calls == ["sp1"]
    assert get_entity_row(conn, "artist", "a1")["popularity"] == 42
    assert engine.queue_stats()["counts"]["completed"] == 1
    assert engine.recent_runs()[0]["status"] == "succeeded"


def test_force_refresh_and_exhausted_listing(conn, db_path, clock):
    engine = _engine(db_path, clock)
    assert engine.force_refresh("artist", "missing") is True
    engine.drain()

    stats = engine.queue_stats()
    assert stats["counts"]["exhausted"] == 1
    assert stats["exhausted"][0]["entity_id"] == "missing"


def test_shutdown_closes_queue(db_path, clock):
    engine = _engine(db_path, clock)
    engine.shutdown()
    assert engine.queue.closed is True


def test_lease_released_when_pass_raises(conn, db_path, clock, monkeypatch):
    engine = _engine(db_path, clock)

    def _explode():
        raise RuntimeError("store went away")

    monkeypatch.setattr(engine.evaluator, "check_and_schedule_syncs", _explode)
    with pytest.raises(RuntimeError):
        engine.run_pass()

    assert try_acquire_lease(conn, PASS_LEASE_NAME, "other-host", 600) is True
    assert engine._pass_lock.acquire(blocking=False) is True
    engine._pass_lock.release()


def test_background_workers_run_scheduled_jobs(conn, db_path, clock):
    upsert_artist(conn, {"id": "a1", "name": "Trending", "trending_score": 75, "spotify_id": "sp1"})
    client = FakeSpotify()
    engine = _engine(
        db_path,
        clock,
        {"executor": {"poll_seconds": 0.1}},
        clients={"spotify": client},
        workers=True,
    )
    try:
        assert engine.workers_running is True
        report = engine.run_pass()
        assert report.scheduled_syncs == 1
        assert _wait_for(lambda: engine.queue.stats()["completed"] == 1)
    finally:
        engine.shutdown()

    assert client.calls == ["sp1"]
    assert engine.workers_running is False
    assert get_entity_row(conn, "artist", "a1")["popularity"] == 42
