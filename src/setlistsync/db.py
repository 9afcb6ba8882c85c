from __future__ import annotations

import logging
import os
import re
import sqlite3
import threading
from typing import Any

from .migrations import apply_migrations
from .migrations_pg import apply_migrations_pg

_MIGRATED: set[str] = set()
_MIGRATION_LOCK = threading.Lock()

# Quoted literals are matched first so placeholders inside them are left alone.
_LITERAL_OR_QMARK = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"|\?")
_INSERT_OR_IGNORE = re.compile(r"^(\s*)INSERT\s+OR\s+IGNORE\b", re.IGNORECASE)

logger = logging.getLogger("setlistsync.db")


def get_db_url() -> str | None:
    url = os.environ.get("SS_DB_URL", "").strip()
    return url or None


def get_state_db_path() -> str:
    data_dir = os.environ.get("SS_DATA_DIR", "/data")
    return os.path.join(data_dir, "state.sqlite3")


def is_postgres_url(url: str | None) -> bool:
    return bool(url) and url.startswith(("postgres://", "postgresql://"))


class DBConn:
    """Store connection shared by the evaluator, executor and engine.

    Storage code is written once in SQLite dialect (``?`` placeholders,
    ``INSERT OR IGNORE``) and translated here when the backend is Postgres.
    """

    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend

    def execute(self, sql: str, params: tuple | list | None = None):
        if self.backend == "postgres":
            sql = to_postgres_sql(sql)
        cursor = self._conn.cursor()
        cursor.execute(sql, params or ())
        return cursor

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "DBConn":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def connect_db(path: str | None = None) -> DBConn:
    url = get_db_url()
    if is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        conn = DBConn(psycopg.connect(url), "postgres")
        _migrate_once(url, lambda: apply_migrations_pg(conn))
        return conn

    path = path or get_state_db_path()
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    # One connection per executor thread, concurrent with pass reads.
    raw = sqlite3.connect(path, timeout=5.0)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    _migrate_once(os.path.abspath(path), lambda: apply_migrations(raw))
    return DBConn(raw, "sqlite")


def to_postgres_sql(sql: str) -> str:
    converted, replaced = _INSERT_OR_IGNORE.subn(r"\1INSERT", sql, count=1)
    if replaced and "ON CONFLICT" not in converted.upper():
        converted = converted.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"
    return _LITERAL_OR_QMARK.sub(
        lambda match: "%s" if match.group(0) == "?" else match.group(0),
        converted,
    )


def _migrate_once(key: str, migrate) -> None:
    with _MIGRATION_LOCK:
        if key in _MIGRATED:
            return
        migrate()
        _MIGRATED.add(key)
    logger.debug("store_migrated key=%s", key)
