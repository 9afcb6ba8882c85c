from setlistsync.db import connect_db, is_postgres_url, to_postgres_sql


def test_postgres_url_detection():
    assert is_postgres_url("postgresql://sync@db/setlists") is True
    assert is_postgres_url("postgres://sync@db/setlists") is True
    assert is_postgres_url("sqlite:///tmp/state.sqlite3") is False
    assert is_postgres_url(None) is False


def test_placeholders_become_pyformat_outside_literals():
    sql = "SELECT id FROM shows WHERE status IN ('upcoming?', 'ongoing') AND date >= ? AND id = ?"
    assert to_postgres_sql(sql) == (
        "SELECT id FROM shows WHERE status IN ('upcoming?', 'ongoing') AND date >= %s AND id = %s"
    )


def test_insert_or_ignore_becomes_on_conflict():
    sql = "INSERT OR IGNORE INTO leases (name, holder, expires_at) VALUES (?, ?, ?)"
    assert to_postgres_sql(sql) == (
        "INSERT INTO leases (name, holder, expires_at) VALUES (%s, %s, %s) ON CONFLICT DO NOTHING"
    )


def test_existing_conflict_clause_is_kept():
    sql = "\n        INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?) ON CONFLICT(key) DO NOTHING"
    converted = to_postgres_sql(sql)
    assert converted.count("ON CONFLICT") == 1
    assert "INSERT INTO settings" in converted


def test_sqlite_connection_is_migrated(db_path):
    with connect_db(db_path) as conn:
        assert conn.backend == "sqlite"
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()}
    assert {"artists", "shows", "venues", "sync_runs", "settings", "leases"} <= tables
