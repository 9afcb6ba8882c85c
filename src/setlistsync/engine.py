from __future__ import annotations

import dataclasses
import logging
import os
import socket
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable

from .clients import HttpJsonClient, build_default_clients
from .config import Config
from .executor import SyncExecutor
from .freshness import FORCE_REFRESH_PRIORITY, FreshnessEvaluator
from .models import ENTITY_KINDS, FreshnessReport, FreshnessRule, KindReport
from .ratelimit import FixedWindowRateLimiter
from .rules import describe_rules
from .scheduler import SyncQueue
from .storage import (
    get_setting,
    init_db,
    list_sync_runs,
    release_lease,
    set_setting,
    try_acquire_lease,
)
from .utils import isoformat_utc, log_event, parse_iso, utc_now

PASS_LEASE_NAME = "freshness-pass"
REPORT_SETTING_KEY = "freshness.report.latest"
PASS_ALREADY_RUNNING = "pass_already_running"


class SyncEngine:
    """Process-wide owner of the queue, rate limiter, evaluator and executor.

    One instance is built at process start. ``init()`` opens the queue and, when
    asked, starts a background thread that drains it; ``shutdown()`` stops that
    thread and then closes the queue. Overlapping freshness passes are refused both
    inside the process (a non-blocking lock) and across processes (a lease row
    in the store).
    """

    def __init__(
        self,
        config: Config,
        connect: Callable[[], Any] | None = None,
        clients: dict[str, HttpJsonClient] | None = None,
        rules: dict[str, Iterable[FreshnessRule]] | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._connect = connect or init_db
        self._clock = clock
        self.logger = logger or logging.getLogger("setlistsync.engine")
        self.queue = SyncQueue.from_config(config.queue)
        self.limiter = FixedWindowRateLimiter.from_config(config.rate_limits)
        self.clients = clients if clients is not None else build_default_clients(config)
        self.evaluator = FreshnessEvaluator(config, self.queue, self._connect, rules, clock)
        self.executor = SyncExecutor(
            config,
            self.queue,
            self.limiter,
            self.clients,
            connect=self._connect,
            clock=clock,
        )
        self.holder = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._pass_lock = threading.Lock()
        self._last_report: dict[str, object] | None = None
        self._stop_event = threading.Event()
        self._worker_thread: threading.Thread | None = None

    def init(self, workers: bool = False) -> None:
        self.queue.start()
        if workers:
            self._start_workers()
        log_event(
            self.logger,
            logging.INFO,
            "engine_started",
            holder=self.holder,
            sources=",".join(sorted(self.clients)) or "none",
            workers=self._worker_thread is not None,
        )

    @property
    def workers_running(self) -> bool:
        return self._worker_thread is not None and self._worker_thread.is_alive()

    def shutdown(self) -> None:
        self._stop_workers()
        self.queue.shutdown()
        log_event(self.logger, logging.INFO, "engine_stopped", holder=self.holder)

    def run_pass(self) -> FreshnessReport:
        if not self._pass_lock.acquire(blocking=False):
            log_event(self.logger, logging.WARNING, "freshness_pass_skipped", reason="local_lock")
            return self._skipped_report()
        conn = None
        lease_held = False
        try:
            try:
                conn = self._connect()
                lease_held = try_acquire_lease(
                    conn,
                    PASS_LEASE_NAME,
                    self.holder,
                    self.config.report.pass_lease_seconds,
                )
                if not lease_held:
                    log_event(self.logger, logging.WARNING, "freshness_pass_skipped", reason="lease_held")
                    return self._skipped_report()
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.WARNING, "pass_lease_unavailable", error=str(exc))
            report = self.evaluator.check_and_schedule_syncs()
            self._cache_report(conn, report)
            return report
        finally:
            if lease_held:
                try:
                    release_lease(conn, PASS_LEASE_NAME, self.holder)
                except Exception as exc:  # noqa: BLE001
                    log_event(self.logger, logging.WARNING, "pass_lease_release_failed", error=str(exc))
            if conn is not None:
                conn.close()
            self._pass_lock.release()

    def force_refresh(
        self,
        entity_kind: str,
        entity_id: str,
        priority: int = FORCE_REFRESH_PRIORITY,
        sync_type: str | None = None,
    ) -> bool:
        return self.evaluator.force_refresh(entity_kind, entity_id, priority, sync_type)

    def drain(self, max_jobs: int | None = None, include_delayed: bool = False) -> int:
        return self.executor.run_pending(max_jobs, include_delayed)

    def latest_report(self) -> dict[str, object] | None:
        cached = self._last_report
        if cached is None:
            try:
                conn = self._connect()
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.WARNING, "report_cache_unavailable", error=str(exc))
                return None
            try:
                cached = get_setting(conn, REPORT_SETTING_KEY, None)
            finally:
                conn.close()
        if not isinstance(cached, dict):
            return None
        cached_at = parse_iso(cached.get("cached_at"))
        if cached_at is None:
            return None
        age = (self._clock() - cached_at).total_seconds()
        if age > self.config.report.cache_ttl_seconds:
            return None
        return cached.get("report")

    def get_freshness_statistics(self) -> dict[str, object]:
        report = self.latest_report()
        return {
            "last_check": report.get("timestamp") if report else None,
            "report": report,
            "rules": describe_rules(self.evaluator.rules),
        }

    def queue_stats(self) -> dict[str, object]:
        return {
            "counts": self.queue.stats(),
            "exhausted": [dataclasses.asdict(job) for job in self.queue.exhausted_jobs()],
        }

    def recent_runs(self, limit: int = 50, status: str | None = None) -> list[dict[str, object]]:
        conn = self._connect()
        try:
            return list_sync_runs(conn, limit=limit, status=status)
        finally:
            conn.close()

    def _cache_report(self, conn: Any, report: FreshnessReport) -> None:
        cached = {"cached_at": isoformat_utc(self._clock()), "report": report.to_dict()}
        self._last_report = cached
        if conn is None:
            return
        try:
            set_setting(conn, REPORT_SETTING_KEY, cached)
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.WARNING, "report_cache_failed", error=str(exc))

    def _start_workers(self) -> None:
        if self.workers_running:
            return
        self._stop_event.clear()
        self._worker_thread = threading.Thread(
            target=self.executor.run_forever,
            args=(self._stop_event,),
            name="setlistsync-executor",
            daemon=True,
        )
        self._worker_thread.start()

    def _stop_workers(self) -> None:
        thread = self._worker_thread
        if thread is None:
            return
        self._stop_event.set()
        self.queue.wake()
        thread.join()
        self._worker_thread = None

    def _skipped_report(self) -> FreshnessReport:
        report = FreshnessReport(timestamp=isoformat_utc(self._clock()), skipped=True)
        for kind in ENTITY_KINDS:
            report.add(kind, KindReport())
        report.errors.append(PASS_ALREADY_RUNNING)
        return report
