from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Union

ENTITY_KINDS = ("artist", "show", "venue")


@dataclass(frozen=True)
class Artist:
    id: str
    name: str
    spotify_id: str | None = None
    tm_attraction_id: str | None = None
    mbid: str | None = None
    trending_score: float = 0.0
    follower_count: int = 0
    upcoming_show_count: int = 0
    recent_show_count: int = 0
    last_synced_at: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class Show:
    id: str
    artist_id: str
    venue_id: str | None = None
    tm_event_id: str | None = None
    date: str | None = None
    status: str = "upcoming"
    days_until_show: float | None = None
    last_synced_at: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class Venue:
    id: str
    name: str
    tm_venue_id: str | None = None
    show_count: int = 0
    last_synced_at: str | None = None
    created_at: str | None = None


Entity = Union[Artist, Show, Venue]


@dataclass(frozen=True)
class FreshnessRule:
    entity_kind: str
    condition: Callable[[Any], bool]
    max_age: int
    priority: int
    sync_type: str
    description: str


@dataclass(frozen=True)
class FreshnessDecision:
    requires_sync: bool
    priority: int
    reason: str
    sync_type: str | None = None


@dataclass(frozen=True)
class FreshnessCheck:
    entity_kind: str
    entity_id: str
    last_sync_time: str | None
    data_age: float
    requires_sync: bool
    priority: int
    reason: str
    sync_type: str | None = None


@dataclass(frozen=True)
class SyncJob:
    id: str
    entity_kind: str
    entity_id: str
    sync_type: str
    priority: int
    force_refresh: bool = False
    reason: str = "freshness-check"
    delay_seconds: int = 0
    status: str = "pending"
    attempts: int = 0
    enqueued_at: float = 0.0
    ready_at: float = 0.0
    last_error: str | None = None

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.entity_id, self.sync_type)


@dataclass
class KindReport:
    total: int = 0
    stale: int = 0
    scheduled: int = 0


@dataclass
class FreshnessReport:
    timestamp: str
    total_entities: int = 0
    stale_entities: int = 0
    scheduled_syncs: int = 0
    by_type: dict[str, KindReport] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    skipped: bool = False
    duration_ms: int = 0

    def add(self, kind: str, kind_report: KindReport) -> None:
        self.by_type[kind] = kind_report
        self.total_entities += kind_report.total
        self.stale_entities += kind_report.stale
        self.scheduled_syncs += kind_report.scheduled

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "total_entities": self.total_entities,
            "stale_entities": self.stale_entities,
            "scheduled_syncs": self.scheduled_syncs,
            "by_type": {
                kind: {
                    "total": item.total,
                    "stale": item.stale,
                    "scheduled": item.scheduled,
                }
                for kind, item in self.by_type.items()
            },
            "errors": list(self.errors),
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class NormalizedRecord:
    source: str
    resource: str
    external_id: str
    attributes: dict[str, Any]


@dataclass(frozen=True)
class JobOutcome:
    job_id: str
    entity_kind: str
    entity_id: str
    sync_type: str
    source: str | None
    status: str
    attempt: int
    duration_ms: int
    error: str | None = None
    applied: bool = False
