from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from setlistsync.storage import init_db


class FakeClock:
    """Mutable wall clock usable both as ``time.time`` and ``utc_now``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)

    def time(self) -> float:
        return self.now.timestamp()

    def utc(self) -> datetime:
        return self.now


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    data_dir = tmp_path / "data"
    monkeypatch.setenv("SS_DATA_DIR", str(data_dir))
    monkeypatch.delenv("SS_DB_URL", raising=False)
    return str(data_dir / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    conn = init_db(db_path)
    yield conn
    conn.close()


@pytest.fixture
def clock():
    return FakeClock()
