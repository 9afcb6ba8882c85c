from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Iterable

from .config import Config
from .executor import SYNC_ROUTES
from .models import Entity, FreshnessCheck, FreshnessReport, FreshnessRule, KindReport
from .rules import DEFAULT_RULES, FORCE_REFRESH_SYNC_TYPES, data_age_seconds, evaluate, validate_rules
from .scheduler import QueueClosedError, SyncQueue
from .storage import init_db, list_artist_candidates, list_show_candidates, list_venue_candidates
from .utils import isoformat_utc, json_safe_number, log_event, utc_now

FORCE_REFRESH_PRIORITY = 10


class FreshnessEvaluator:
    """Finds stale entities and hands them to the sync queue.

    Kinds are checked one after another on a single store connection. A kind
    whose candidate query or evaluation fails contributes zeros to the report
    and an itemized error; the remaining kinds still run.
    """

    def __init__(
        self,
        config: Config,
        queue: SyncQueue,
        connect: Callable[[], Any] = init_db,
        rules: dict[str, Iterable[FreshnessRule]] | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        rules = rules if rules is not None else DEFAULT_RULES
        validate_rules(rules)
        self.config = config
        self.queue = queue
        self.rules = {kind: tuple(items) for kind, items in rules.items()}
        self._connect = connect
        self._clock = clock
        self.logger = logger or logging.getLogger("setlistsync.freshness")

    def check_and_schedule_syncs(self) -> FreshnessReport:
        started = time.monotonic()
        now = self._clock()
        report = FreshnessReport(timestamp=isoformat_utc(now))
        checks = (
            ("artist", self.check_artists),
            ("show", self.check_shows),
            ("venue", self.check_venues),
        )
        try:
            conn = self._connect()
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.ERROR, "freshness_store_unavailable", error=str(exc))
            for kind, _ in checks:
                report.add(kind, KindReport())
            report.errors.append(f"store: {exc}")
            report.duration_ms = int((time.monotonic() - started) * 1000)
            return report
        try:
            for _, check in checks:
                check(report, conn, now)
        finally:
            conn.close()
        report.duration_ms = int((time.monotonic() - started) * 1000)
        log_event(
            self.logger,
            logging.INFO,
            "freshness_pass_completed",
            total=report.total_entities,
            stale=report.stale_entities,
            scheduled=report.scheduled_syncs,
            errors=len(report.errors),
            duration_ms=report.duration_ms,
        )
        return report

    def check_artists(self, report: FreshnessReport, conn: Any, now: datetime) -> KindReport:
        recent_days = self.config.freshness.recent_show_days
        return self._check_kind(report, "artist", lambda: list_artist_candidates(conn, now, recent_days), now)

    def check_shows(self, report: FreshnessReport, conn: Any, now: datetime) -> KindReport:
        return self._check_kind(report, "show", lambda: list_show_candidates(conn, now), now)

    def check_venues(self, report: FreshnessReport, conn: Any, now: datetime) -> KindReport:
        return self._check_kind(report, "venue", lambda: list_venue_candidates(conn), now)

    def evaluate_entity(self, kind: str, entity: Entity, now: datetime) -> FreshnessCheck:
        age = data_age_seconds(
            entity.last_synced_at,
            entity.created_at,
            now,
            use_created_at=self.config.freshness.never_synced_uses_created_at,
        )
        decision = evaluate(kind, entity, age, self.rules.get(kind, ()))
        return FreshnessCheck(
            entity_kind=kind,
            entity_id=entity.id,
            last_sync_time=entity.last_synced_at,
            data_age=age,
            requires_sync=decision.requires_sync,
            priority=decision.priority,
            reason=decision.reason,
            sync_type=decision.sync_type,
        )

    def force_refresh(
        self,
        entity_kind: str,
        entity_id: str,
        priority: int = FORCE_REFRESH_PRIORITY,
        sync_type: str | None = None,
    ) -> bool:
        if entity_kind not in FORCE_REFRESH_SYNC_TYPES:
            raise ValueError(f"unknown entity kind {entity_kind}")
        sync_type = sync_type or FORCE_REFRESH_SYNC_TYPES[entity_kind]
        route = SYNC_ROUTES.get(sync_type)
        if route is None or route.entity_kind != entity_kind:
            raise ValueError(f"sync type {sync_type} does not apply to {entity_kind}")
        job = self.queue.new_job(
            entity_kind,
            entity_id,
            sync_type,
            priority,
            force_refresh=True,
            reason="force-refresh",
        )
        enqueued = self.queue.enqueue(job)
        log_event(
            self.logger,
            logging.INFO,
            "force_refresh_requested",
            entity_kind=entity_kind,
            entity_id=entity_id,
            sync_type=sync_type,
            priority=priority,
            enqueued=enqueued,
        )
        return enqueued

    def _check_kind(
        self,
        report: FreshnessReport,
        kind: str,
        load: Callable[[], list[Entity]],
        now: datetime,
    ) -> KindReport:
        try:
            entities = load()
            checks = [self.evaluate_entity(kind, entity, now) for entity in entities]
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.ERROR, "freshness_check_failed", kind=kind, error=str(exc))
            report.errors.append(f"{kind}: {exc}")
            result = KindReport()
            report.add(kind, result)
            return result

        stale = [check for check in checks if check.requires_sync]
        limit = self.config.freshness.batch_limits.get(kind, len(stale))
        batch = sorted(stale, key=lambda check: check.priority, reverse=True)[:limit]
        scheduled = self._schedule(report, batch)
        result = KindReport(total=len(entities), stale=len(stale), scheduled=scheduled)
        report.add(kind, result)
        log_event(
            self.logger,
            logging.INFO,
            "freshness_kind_checked",
            kind=kind,
            total=result.total,
            stale=result.stale,
            scheduled=result.scheduled,
            truncated=max(0, len(stale) - limit),
        )
        return result

    def _schedule(self, report: FreshnessReport, batch: list[FreshnessCheck]) -> int:
        scheduled = 0
        for check in batch:
            job = self.queue.new_job(
                check.entity_kind,
                check.entity_id,
                check.sync_type or FORCE_REFRESH_SYNC_TYPES[check.entity_kind],
                check.priority,
                reason=check.reason,
            )
            try:
                if self.queue.enqueue(job):
                    scheduled += 1
            except QueueClosedError as exc:
                log_event(self.logger, logging.ERROR, "enqueue_rejected", kind=check.entity_kind, error=str(exc))
                report.errors.append(f"{check.entity_kind}: {exc}")
                break
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.ERROR,
                    "enqueue_failed",
                    kind=check.entity_kind,
                    entity_id=check.entity_id,
                    data_age=json_safe_number(check.data_age),
                    error=str(exc),
                )
                report.errors.append(f"{check.entity_kind} {check.entity_id}: {exc}")
        return scheduled
