from __future__ import annotations

import logging

from .utils import utc_now_iso

PG_BOOTSTRAP_VERSION = "pg_bootstrap_001"


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("setlistsync.migrations")
    conn.execute("BEGIN")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    if PG_BOOTSTRAP_VERSION in applied:
        conn.commit()
        return
    try:
        _bootstrap_schema(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            (PG_BOOTSTRAP_VERSION, utc_now_iso()),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    logger.info("migration_applied version=%s", PG_BOOTSTRAP_VERSION)


def _bootstrap_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS artists (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            spotify_id TEXT NULL,
            tm_attraction_id TEXT NULL,
            mbid TEXT NULL,
            trending_score DOUBLE PRECISION NOT NULL DEFAULT 0,
            follower_count BIGINT NOT NULL DEFAULT 0,
            popularity INTEGER NULL,
            genres_json TEXT NULL,
            image_url TEXT NULL,
            tm_upcoming_events INTEGER NULL,
            setlist_count INTEGER NULL,
            last_setlist_date TEXT NULL,
            last_synced_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS venues (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            tm_venue_id TEXT NULL,
            city TEXT NULL,
            country TEXT NULL,
            timezone TEXT NULL,
            url TEXT NULL,
            last_synced_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS shows (
            id TEXT PRIMARY KEY,
            artist_id TEXT NOT NULL REFERENCES artists(id),
            venue_id TEXT NULL REFERENCES venues(id),
            tm_event_id TEXT NULL,
            name TEXT NULL,
            date TEXT NULL,
            status TEXT NOT NULL DEFAULT 'upcoming',
            ticket_url TEXT NULL,
            min_price DOUBLE PRECISION NULL,
            max_price DOUBLE PRECISION NULL,
            last_synced_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_shows_artist_date ON shows(artist_id, date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_shows_venue ON shows(venue_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_shows_status ON shows(status)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id BIGSERIAL PRIMARY KEY,
            job_id TEXT NOT NULL,
            entity_kind TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            sync_type TEXT NOT NULL,
            source TEXT NULL,
            status TEXT NOT NULL,
            attempt INTEGER NOT NULL DEFAULT 1,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            error TEXT NULL,
            finished_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_runs_entity ON sync_runs(entity_kind, entity_id, finished_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_runs_status ON sync_runs(status, finished_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS leases (
            name TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """
    )
