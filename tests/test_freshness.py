from datetime import timedelta

import pytest

from setlistsync.config import build_config
from setlistsync.freshness import FreshnessEvaluator
from setlistsync.scheduler import SyncQueue
from setlistsync.storage import init_db, upsert_artist, upsert_show, upsert_venue
from setlistsync.utils import isoformat_utc


def _evaluator(db_path, clock, overrides=None):
    config = build_config(overrides or {})
    queue = SyncQueue.from_config(config.queue, clock=clock.time)
    queue.start()
    evaluator = FreshnessEvaluator(config, queue, connect=lambda: init_db(db_path), clock=clock.utc)
    return evaluator, queue


def _seed(conn, clock):
    now = clock.now
    upsert_artist(conn, {"id": "a1", "name": "Trending", "trending_score": 80, "spotify_id": "sp1"})
    upsert_artist(
        conn,
        {
            "id": "a2",
            "name": "Fresh",
            "spotify_id": "sp2",
            "last_synced_at": isoformat_utc(now - timedelta(hours=1)),
        },
    )
    upsert_venue(conn, {"id": "v1", "name": "Hall", "tm_venue_id": "KovZ1"})
    upsert_show(
        conn,
        {
            "id": "s1",
            "artist_id": "a2",
            "venue_id": "v1",
            "tm_event_id": "ev1",
            "date": isoformat_utc(now + timedelta(days=3)),
            "last_synced_at": isoformat_utc(now - timedelta(hours=5)),
        },
    )


def test_check_and_schedule_syncs_reports_each_kind(conn, db_path, clock):
    _seed(conn, clock)
    evaluator, queue = _evaluator(db_path, clock)

    report = evaluator.check_and_schedule_syncs()

    assert report.errors == []
    assert report.by_type["artist"].total == 2
    assert report.by_type["artist"].stale == 1
    assert report.by_type["show"].stale == 1
    assert report.by_type["venue"].total == 1
    assert report.total_entities == 4
    assert report.stale_entities == 3
    assert report.scheduled_syncs == 3

    waiting = {(job.entity_id, job.sync_type): job for job in queue.waiting_jobs()}
    assert waiting[("a1", "spotify-sync")].priority == 9
    assert waiting[("s1", "ticketmaster-sync")].priority == 8
    assert waiting[("a1", "spotify-sync")].reason == "Trending artists need frequent updates"


def test_second_pass_does_not_duplicate_jobs(conn, db_path, clock):
    _seed(conn, clock)
    evaluator, queue = _evaluator(db_path, clock)

    evaluator.check_and_schedule_syncs()
    report = evaluator.check_and_schedule_syncs()

    assert report.stale_entities == 3
    assert report.scheduled_syncs == 0
    assert queue.stats()["waiting"] == 3


def test_failing_venue_query_does_not_abort_pass(conn, db_path, clock, monkeypatch):
    _seed(conn, clock)
    evaluator, _ = _evaluator(db_path, clock)

    def _boom(conn):
        raise RuntimeError("venues table unavailable")

    monkeypatch.setattr("setlistsync.freshness.list_venue_candidates", _boom)

    report = evaluator.check_and_schedule_syncs()

    venue = report.to_dict()["by_type"]["venue"]
    assert venue == {"total": 0, "stale": 0, "scheduled": 0}
    assert report.by_type["artist"].total == 2
    assert report.by_type["show"].total == 1
    assert report.errors == ["venue: venues table unavailable"]


def test_store_unavailable_yields_empty_report(db_path, clock):
    config = build_config()
    queue = SyncQueue.from_config(config.queue, clock=clock.time)
    queue.start()

    def _connect():
        raise OSError("disk unavailable")

    evaluator = FreshnessEvaluator(config, queue, connect=_connect, clock=clock.utc)
    report = evaluator.check_and_schedule_syncs()

    assert report.total_entities == 0
    assert set(report.by_type) == {"artist", "show", "venue"}
    assert report.errors == ["store: disk unavailable"]


def test_batch_limit_keeps_highest_priorities(conn, db_path, clock):
    stale = isoformat_utc(clock.now - timedelta(days=8))
    for index in range(4):
        upsert_artist(conn, {"id": f"quiet{index}", "name": "Quiet", "last_synced_at": stale})
    upsert_artist(conn, {"id": "hot", "name": "Hot", "trending_score": 90, "last_synced_at": stale})
    evaluator, queue = _evaluator(db_path, clock, {"freshness": {"batch_limits": {"artist": 2}}})

    report = evaluator.check_and_schedule_syncs()

    assert report.by_type["artist"].stale == 5
    assert report.by_type["artist"].scheduled == 2
    priorities = sorted((job.priority for job in queue.waiting_jobs()), reverse=True)
    assert priorities == [9, 3]


def test_created_at_fallback_can_be_enabled(conn, db_path, clock):
    upsert_artist(conn, {"id": "new", "name": "New", "created_at": isoformat_utc(clock.now - timedelta(hours=1))})

    strict, _ = _evaluator(db_path, clock)
    assert strict.check_and_schedule_syncs().stale_entities == 1

    lenient, _ = _evaluator(db_path, clock, {"freshness": {"never_synced_uses_created_at": True}})
    assert lenient.check_and_schedule_syncs().stale_entities == 0


def test_force_refresh_enqueues_with_default_sync_type(db_path, clock):
    evaluator, queue = _evaluator(db_path, clock)

    assert evaluator.force_refresh("artist", "a1") is True
    assert evaluator.force_refresh("artist", "a1") is False

    job = queue.claim()
    assert job.sync_type == "spotify-sync"
    assert job.priority == 10
    assert job.force_refresh is True


def test_force_refresh_rejects_bad_input(db_path, clock):
    evaluator, _ = _evaluator(db_path, clock)
    with pytest.raises(ValueError):
        evaluator.force_refresh("festival", "f1")
    with pytest.raises(ValueError):
        evaluator.force_refresh("show", "s1", sync_type="spotify-sync")
