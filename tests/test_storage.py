import sqlite3
from datetime import datetime, timedelta, timezone

from setlistsync.migrations import _get_migrations, apply_migrations
from setlistsync.models import JobOutcome
from setlistsync.storage import (
    apply_sync_result,
    get_entity_row,
    get_setting,
    list_artist_candidates,
    list_show_candidates,
    list_sync_runs,
    list_venue_candidates,
    record_sync_run,
    release_lease,
    set_setting,
    try_acquire_lease,
    upsert_artist,
    upsert_show,
    upsert_venue,
)
from setlistsync.utils import isoformat_utc

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _iso(delta_hours: float) -> str:
    return isoformat_utc(NOW + timedelta(hours=delta_hours))


def test_apply_migrations_idempotent(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    apply_migrations(conn)
    apply_migrations(conn)

    versions = [row[0] for row in conn.execute("SELECT version FROM schema_migrations").fetchall()]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)


def test_apply_sync_result_sets_attributes_and_timestamp(conn):
    upsert_artist(conn, {"id": "a1", "name": "Old Name", "spotify_id": "sp1"})
    changed = apply_sync_result(
        conn,
        "artist",
        "a1",
        {"name": "New Name", "popularity": 71, "trending_score": 99},
        _iso(0),
    )
    assert changed is True
    row = get_entity_row(conn, "artist", "a1")
    assert row["name"] == "New Name"
    assert row["popularity"] == 71
    assert row["trending_score"] == 0
    assert row["last_synced_at"] == _iso(0)


def test_apply_sync_result_never_moves_timestamp_backwards(conn):
    upsert_artist(conn, {"id": "a1", "name": "Artist"})
    assert apply_sync_result(conn, "artist", "a1", {"popularity": 80}, _iso(0)) is True
    assert apply_sync_result(conn, "artist", "a1", {"popularity": 10}, _iso(-1)) is False

    row = get_entity_row(conn, "artist", "a1")
    assert row["last_synced_at"] == _iso(0)
    assert row["popularity"] == 80


def test_apply_sync_result_normalizes_show_dates(conn):
    upsert_show(conn, {"id": "s1", "artist_id": "a1", "date": "2025-06-10T20:00:00Z"})
    apply_sync_result(conn, "show", "s1", {"date": "2025-06-11T20:00:00Z", "status": "upcoming"}, _iso(0))
    row = get_entity_row(conn, "show", "s1")
    assert row["date"] == "2025-06-11T20:00:00.000000+00:00"


def test_artist_candidates_count_upcoming_and_recent_shows(conn):
    upsert_artist(conn, {"id": "a1", "name": "Touring", "trending_score": 75})
    upsert_artist(conn, {"id": "a2", "name": "Idle"})
    upsert_show(conn, {"id": "s1", "artist_id": "a1", "date": _iso(48)})
    upsert_show(conn, {"id": "s2", "artist_id": "a1", "date": _iso(-12), "status": "completed"})
    upsert_show(conn, {"id": "s3", "artist_id": "a1", "date": _iso(-24 * 30), "status": "completed"})

    artists = {artist.id: artist for artist in list_artist_candidates(conn, NOW, recent_show_days=2)}
    assert artists["a1"].upcoming_show_count == 1
    assert artists["a1"].recent_show_count == 1
    assert artists["a1"].trending_score == 75
    assert artists["a2"].upcoming_show_count == 0


def test_show_candidates_skip_finished_shows(conn):
    upsert_show(conn, {"id": "s1", "artist_id": "a1", "date": _iso(72)})
    upsert_show(conn, {"id": "s2", "artist_id": "a1", "date": _iso(72), "status": "cancelled"})
    upsert_show(conn, {"id": "s3", "artist_id": "a1", "date": _iso(1), "status": "ongoing"})

    shows = list_show_candidates(conn, NOW)
    assert [show.id for show in shows] == ["s1", "s3"]
    assert shows[0].days_until_show == 3.0


def test_venue_candidates_require_a_show(conn):
    upsert_venue(conn, {"id": "v1", "name": "Busy Hall"})
    upsert_venue(conn, {"id": "v2", "name": "Empty Hall"})
    for index in range(3):
        upsert_show(conn, {"id": f"s{index}", "artist_id": "a1", "venue_id": "v1", "date": _iso(24)})

    venues = list_venue_candidates(conn)
    assert [(venue.id, venue.show_count) for venue in venues] == [("v1", 3)]


def test_get_entity_row_returns_columns(conn):
    upsert_venue(conn, {"id": "v1", "name": "Hall", "tm_venue_id": "KovZ1"})
    row = get_entity_row(conn, "venue", "v1")
    assert row["tm_venue_id"] == "KovZ1"
    assert row["last_synced_at"] is None
    assert get_entity_row(conn, "artist", "missing") is None


def test_sync_runs_are_recorded(conn):
    outcome = JobOutcome(
        job_id="sync_1",
        entity_kind="artist",
        entity_id="a1",
        sync_type="spotify-sync",
        source="spotify",
        status="retry",
        attempt=1,
        duration_ms=12,
        error="spotify http_error 503",
    )
    record_sync_run(conn, outcome)
    runs = list_sync_runs(conn, status="retry")
    assert runs[0]["job_id"] == "sync_1"
    assert runs[0]["error"] == "spotify http_error 503"
    assert list_sync_runs(conn, status="succeeded") == []


def test_settings_round_trip(conn):
    assert get_setting(conn, "missing", {"default": True}) == {"default": True}
    set_setting(conn, "report", {"total": 3})
    set_setting(conn, "report", {"total": 4})
    assert get_setting(conn, "report", None) == {"total": 4}


def test_lease_is_exclusive_until_released(conn):
    assert try_acquire_lease(conn, "freshness-pass", "worker-a", 600) is True
    assert try_acquire_lease(conn, "freshness-pass", "worker-b", 600) is False
    assert try_acquire_lease(conn, "freshness-pass", "worker-a", 600) is True
    assert release_lease(conn, "freshness-pass", "worker-a") is True
    assert try_acquire_lease(conn, "freshness-pass", "worker-b", 600) is True


def test_expired_lease_can_be_taken_over(conn):
    assert try_acquire_lease(conn, "freshness-pass", "worker-a", -10) is True
    assert try_acquire_lease(conn, "freshness-pass", "worker-b", 600) is True
    assert release_lease(conn, "freshness-pass", "worker-a") is False
