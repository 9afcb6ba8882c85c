from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

from .db import connect_db
from .models import Artist, JobOutcome, Show, Venue
from .utils import isoformat_utc, json_dumps, parse_iso, utc_now_iso, utc_now_iso_offset

ENTITY_TABLES = {
    "artist": "artists",
    "show": "shows",
    "venue": "venues",
}

SYNCABLE_COLUMNS = {
    "artist": {
        "name",
        "popularity",
        "follower_count",
        "genres_json",
        "image_url",
        "tm_upcoming_events",
        "setlist_count",
        "last_setlist_date",
    },
    "show": {
        "name",
        "date",
        "status",
        "ticket_url",
        "min_price",
        "max_price",
    },
    "venue": {
        "name",
        "city",
        "country",
        "timezone",
        "url",
    },
}


def init_db(path: str | None = None):
    return connect_db(path)


def upsert_artist(conn: Any, artist: dict[str, object]) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO artists
            (id, name, spotify_id, tm_attraction_id, mbid, trending_score, follower_count,
             last_synced_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            spotify_id = excluded.spotify_id,
            tm_attraction_id = excluded.tm_attraction_id,
            mbid = excluded.mbid,
            trending_score = excluded.trending_score,
            follower_count = excluded.follower_count,
            updated_at = excluded.updated_at
        """,
        (
            artist["id"],
            artist["name"],
            artist.get("spotify_id"),
            artist.get("tm_attraction_id"),
            artist.get("mbid"),
            float(artist.get("trending_score") or 0),
            int(artist.get("follower_count") or 0),
            _normalize_timestamp(artist.get("last_synced_at")),
            _normalize_timestamp(artist.get("created_at")) or now,
            now,
        ),
    )
    conn.commit()


def upsert_venue(conn: Any, venue: dict[str, object]) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO venues
            (id, name, tm_venue_id, city, country, last_synced_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            tm_venue_id = excluded.tm_venue_id,
            city = excluded.city,
            country = excluded.country,
            updated_at = excluded.updated_at
        """,
        (
            venue["id"],
            venue["name"],
            venue.get("tm_venue_id"),
            venue.get("city"),
            venue.get("country"),
            _normalize_timestamp(venue.get("last_synced_at")),
            _normalize_timestamp(venue.get("created_at")) or now,
            now,
        ),
    )
    conn.commit()


def upsert_show(conn: Any, show: dict[str, object]) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO shows
            (id, artist_id, venue_id, tm_event_id, name, date, status,
             last_synced_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            artist_id = excluded.artist_id,
            venue_id = excluded.venue_id,
            tm_event_id = excluded.tm_event_id,
            name = excluded.name,
            date = excluded.date,
            status = excluded.status,
            updated_at = excluded.updated_at
        """,
        (
            show["id"],
            show["artist_id"],
            show.get("venue_id"),
            show.get("tm_event_id"),
            show.get("name"),
            _normalize_timestamp(show.get("date")),
            show.get("status") or "upcoming",
            _normalize_timestamp(show.get("last_synced_at")),
            _normalize_timestamp(show.get("created_at")) or now,
            now,
        ),
    )
    conn.commit()


def list_artist_candidates(conn: Any, now: datetime, recent_show_days: int) -> list[Artist]:
    now_iso = isoformat_utc(now)
    recent_iso = isoformat_utc(now - timedelta(days=recent_show_days))
    cursor = conn.execute(
        """
        SELECT a.id, a.name, a.spotify_id, a.tm_attraction_id, a.mbid,
               a.trending_score, a.follower_count,
               (SELECT COUNT(*) FROM shows s
                WHERE s.artist_id = a.id AND s.date >= ?) AS upcoming_show_count,
               (SELECT COUNT(*) FROM shows s
                WHERE s.artist_id = a.id AND s.date < ? AND s.date >= ?) AS recent_show_count,
               a.last_synced_at, a.created_at
        FROM artists a
        ORDER BY a.id
        """,
        (now_iso, now_iso, recent_iso),
    )
    return [_row_to_artist(row) for row in cursor.fetchall()]


def list_show_candidates(conn: Any, now: datetime) -> list[Show]:
    cursor = conn.execute(
        """
        SELECT id, artist_id, venue_id, tm_event_id, date, status, last_synced_at, created_at
        FROM shows
        WHERE status IN ('upcoming', 'ongoing')
        ORDER BY id
        """
    )
    return [_row_to_show(row, now) for row in cursor.fetchall()]


def list_venue_candidates(conn: Any) -> list[Venue]:
    cursor = conn.execute(
        """
        SELECT v.id, v.name, v.tm_venue_id, COUNT(s.id) AS show_count,
               v.last_synced_at, v.created_at
        FROM venues v
        JOIN shows s ON s.venue_id = v.id
        GROUP BY v.id, v.name, v.tm_venue_id, v.last_synced_at, v.created_at
        HAVING COUNT(s.id) > 0
        ORDER BY v.id
        """
    )
    return [_row_to_venue(row) for row in cursor.fetchall()]


def get_entity_row(conn: Any, kind: str, entity_id: str) -> dict[str, object] | None:
    table = _table_for(kind)
    cursor = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (entity_id,))
    row = cursor.fetchone()
    if not row:
        return None
    columns = [item[0] for item in cursor.description]
    return dict(zip(columns, row))


def apply_sync_result(
    conn: Any,
    kind: str,
    entity_id: str,
    attributes: dict[str, object],
    synced_at: str,
) -> bool:
    """Write synchronized attributes and advance last_synced_at.

    The update only lands when ``synced_at`` is newer than the stored value, so
    a late completion from an older fetch never overwrites fresher data.
    """
    table = _table_for(kind)
    allowed = SYNCABLE_COLUMNS[kind]
    attributes = dict(attributes)
    if kind == "show" and "date" in attributes:
        attributes["date"] = _normalize_timestamp(attributes["date"])
        if attributes["date"] is None:
            del attributes["date"]
    columns = sorted(key for key in attributes if key in allowed)
    assignments = [f"{column} = ?" for column in columns]
    assignments.extend(["last_synced_at = ?", "updated_at = ?"])
    params: list[object] = [attributes[column] for column in columns]
    params.extend([synced_at, utc_now_iso(), entity_id, synced_at])
    cursor = conn.execute(
        f"""
        UPDATE {table}
        SET {", ".join(assignments)}
        WHERE id = ? AND (last_synced_at IS NULL OR last_synced_at < ?)
        """,
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def record_sync_run(conn: Any, outcome: JobOutcome) -> None:
    conn.execute(
        """
        INSERT INTO sync_runs
            (job_id, entity_kind, entity_id, sync_type, source, status, attempt,
             duration_ms, error, finished_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            outcome.job_id,
            outcome.entity_kind,
            outcome.entity_id,
            outcome.sync_type,
            outcome.source,
            outcome.status,
            outcome.attempt,
            outcome.duration_ms,
            outcome.error,
            utc_now_iso(),
        ),
    )
    conn.commit()


def list_sync_runs(
    conn: Any,
    limit: int = 50,
    status: str | None = None,
) -> list[dict[str, object]]:
    params: list[object] = []
    where = ""
    if status:
        where = "WHERE status = ?"
        params.append(status)
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT job_id, entity_kind, entity_id, sync_type, source, status, attempt,
               duration_ms, error, finished_at
        FROM sync_runs
        {where}
        ORDER BY id DESC
        LIMIT ?
        """,
        tuple(params),
    )
    keys = (
        "job_id",
        "entity_kind",
        "entity_id",
        "sync_type",
        "source",
        "status",
        "attempt",
        "duration_ms",
        "error",
        "finished_at",
    )
    return [dict(zip(keys, row)) for row in cursor.fetchall()]


def get_setting(conn: Any, key: str, default: object) -> object:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), now),
    )
    conn.commit()


def try_acquire_lease(conn: Any, lease_name: str, holder: str, ttl_seconds: int) -> bool:
    now = utc_now_iso()
    expires_at = utc_now_iso_offset(seconds=ttl_seconds)
    cursor = conn.execute(
        """
        UPDATE leases
        SET holder = ?, expires_at = ?
        WHERE name = ? AND (expires_at < ? OR holder = ?)
        """,
        (holder, expires_at, lease_name, now, holder),
    )
    if cursor.rowcount == 1:
        conn.commit()
        return True
    cursor = conn.execute(
        "INSERT OR IGNORE INTO leases (name, holder, expires_at) VALUES (?, ?, ?)",
        (lease_name, holder, expires_at),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_lease(conn: Any, lease_name: str, holder: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM leases WHERE name = ? AND holder = ?",
        (lease_name, holder),
    )
    conn.commit()
    return cursor.rowcount == 1


def _table_for(kind: str) -> str:
    table = ENTITY_TABLES.get(kind)
    if table is None:
        raise ValueError(f"unknown entity kind {kind}")
    return table


def _normalize_timestamp(value: object) -> str | None:
    parsed = parse_iso(value) if isinstance(value, (str, datetime)) else None
    return isoformat_utc(parsed) if parsed else None


def _row_to_artist(row: tuple) -> Artist:
    (
        artist_id,
        name,
        spotify_id,
        tm_attraction_id,
        mbid,
        trending_score,
        follower_count,
        upcoming_show_count,
        recent_show_count,
        last_synced_at,
        created_at,
    ) = row
    return Artist(
        id=artist_id,
        name=name,
        spotify_id=spotify_id,
        tm_attraction_id=tm_attraction_id,
        mbid=mbid,
        trending_score=float(trending_score or 0),
        follower_count=int(follower_count or 0),
        upcoming_show_count=int(upcoming_show_count or 0),
        recent_show_count=int(recent_show_count or 0),
        last_synced_at=last_synced_at,
        created_at=created_at,
    )


def _row_to_show(row: tuple, now: datetime | None) -> Show:
    (
        show_id,
        artist_id,
        venue_id,
        tm_event_id,
        show_date,
        status,
        last_synced_at,
        created_at,
    ) = row
    days_until = None
    parsed = parse_iso(show_date)
    if parsed is not None and now is not None:
        days_until = (parsed - now).total_seconds() / 86400
    return Show(
        id=show_id,
        artist_id=artist_id,
        venue_id=venue_id,
        tm_event_id=tm_event_id,
        date=show_date,
        status=status,
        days_until_show=days_until,
        last_synced_at=last_synced_at,
        created_at=created_at,
    )


def _row_to_venue(row: tuple) -> Venue:
    venue_id, name, tm_venue_id, show_count, last_synced_at, created_at = row
    return Venue(
        id=venue_id,
        name=name,
        tm_venue_id=tm_venue_id,
        show_count=int(show_count or 0),
        last_synced_at=last_synced_at,
        created_at=created_at,
    )
