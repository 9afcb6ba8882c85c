from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("setlistsync.migrations")
    conn.execute("BEGIN IMMEDIATE")
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
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_entities(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS artists (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            spotify_id TEXT NULL,
            tm_attraction_id TEXT NULL,
            mbid TEXT NULL,
            trending_score REAL NOT NULL DEFAULT 0,
            follower_count INTEGER NOT NULL DEFAULT 0,
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
            min_price REAL NULL,
            max_price REAL NULL,
            last_synced_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_shows_artist_date ON shows(artist_id, date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_shows_venue ON shows(venue_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_shows_status ON shows(status)")


def _migration_sync_runs(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
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


def _migration_settings_and_leases(conn: sqlite3.Connection) -> None:
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


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_entities", _migration_entities),
        ("002_sync_runs", _migration_sync_runs),
        ("003_settings_and_leases", _migration_settings_and_leases),
    ]
