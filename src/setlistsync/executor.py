from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .clients.base import HttpJsonClient, PermanentFetchError, TransientFetchError
from .config import Config
from .models import JobOutcome, SyncJob
from .ratelimit import FixedWindowRateLimiter, RateLimitExceeded
from .rules import FULL_SYNC, SETLIST_SYNC, SPOTIFY_SYNC, TICKETMASTER_SYNC, VENUE_SYNC
from .scheduler import SyncQueue
from .storage import apply_sync_result, get_entity_row, init_db, record_sync_run
from .utils import isoformat_utc, log_event, parse_iso, utc_now


@dataclass(frozen=True)
class SyncRoute:
    entity_kind: str
    source: str
    resource: str
    external_id_field: str


SYNC_ROUTES: dict[str, SyncRoute] = {
    SPOTIFY_SYNC: SyncRoute("artist", "spotify", "artists", "spotify_id"),
    FULL_SYNC: SyncRoute("artist", "ticketmaster", "attractions", "tm_attraction_id"),
    SETLIST_SYNC: SyncRoute("artist", "setlistfm", "artist_setlists", "mbid"),
    TICKETMASTER_SYNC: SyncRoute("show", "ticketmaster", "events", "tm_event_id"),
    VENUE_SYNC: SyncRoute("venue", "ticketmaster", "venues", "tm_venue_id"),
}


class SyncExecutor:
    """Claims jobs from the queue and applies upstream data to storage.

    Every job ends in exactly one queue transition (complete or fail) and one
    ``sync_runs`` row. Permanent fetch errors exhaust the job immediately;
    everything else is retried with backoff until ``max_attempts``.
    """

    def __init__(
        self,
        config: Config,
        queue: SyncQueue,
        limiter: FixedWindowRateLimiter,
        clients: dict[str, HttpJsonClient],
        connect: Callable[[], Any] = init_db,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.queue = queue
        self.limiter = limiter
        self.clients = clients
        self._connect = connect
        self._clock = clock
        self._sleep = sleep
        self.logger = logger or logging.getLogger("setlistsync.executor")

    def process_job(self, job: SyncJob) -> JobOutcome:
        started = time.monotonic()
        route = SYNC_ROUTES.get(job.sync_type)
        source = route.source if route else None
        error: str | None = None
        applied = False
        conn = None
        try:
            try:
                conn = self._connect()
                applied, status = self._sync(conn, job, route)
                self.queue.complete(job.id)
            except PermanentFetchError as exc:
                error = str(exc)
                self.queue.fail(job.id, error, permanent=True)
                status = "failed"
            except RateLimitExceeded as exc:
                error = str(exc)
                retry_after = max(0.0, exc.reset_at - self._clock().timestamp())
                status = self.queue.fail(job.id, error, retry_after=retry_after)
            except TransientFetchError as exc:
                error = str(exc)
                status = self.queue.fail(job.id, error, retry_after=exc.retry_after)
            except Exception as exc:  # noqa: BLE001
                error = f"{type(exc).__name__}: {exc}"
                status = self.queue.fail(job.id, error)
            outcome = JobOutcome(
                job_id=job.id,
                entity_kind=job.entity_kind,
                entity_id=job.entity_id,
                sync_type=job.sync_type,
                source=source,
                status=status,
                attempt=job.attempts,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=error,
                applied=applied,
            )
            if conn is not None:
                try:
                    record_sync_run(conn, outcome)
                except Exception as exc:  # noqa: BLE001
                    log_event(self.logger, logging.ERROR, "sync_run_record_failed", job_id=job.id, error=str(exc))
        finally:
            if conn is not None:
                conn.close()
        self._log_outcome(outcome)
        return outcome

    def run_pending(self, max_jobs: int | None = None, include_delayed: bool = False) -> int:
        """Process every job that is ready now and return how many ran."""
        processed = 0
        max_workers = max(1, self.config.executor.concurrency)
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = set()
            while True:
                while len(futures) < max_workers:
                    if max_jobs is not None and processed + len(futures) >= max_jobs:
                        break
                    job = self.queue.claim(include_delayed)
                    if not job:
                        break
                    futures.add(pool.submit(self.process_job, job))
                if not futures:
                    break
                done, futures = wait(futures, return_when=FIRST_COMPLETED)
                for future in done:
                    processed += 1
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(self.logger, logging.ERROR, "job_thread_error", error=str(exc))
        return processed

    def run_forever(self, stop_event: threading.Event) -> None:
        poll_seconds = self.config.executor.poll_seconds
        log_event(self.logger, logging.INFO, "executor_started", concurrency=self.config.executor.concurrency)
        while not stop_event.is_set():
            try:
                if self.run_pending():
                    continue
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "executor_loop_error", error=str(exc))
            self.queue.wait_for_work(poll_seconds, stop_event)
        log_event(self.logger, logging.INFO, "executor_stopped")

    def _sync(self, conn: Any, job: SyncJob, route: SyncRoute | None) -> tuple[bool, str]:
        if route is None:
            raise PermanentFetchError(f"unknown sync type {job.sync_type}")
        if route.entity_kind != job.entity_kind:
            raise PermanentFetchError(f"{job.sync_type} does not apply to {job.entity_kind}")
        row = get_entity_row(conn, job.entity_kind, job.entity_id)
        if row is None:
            raise PermanentFetchError(f"{job.entity_kind} {job.entity_id} not found")
        if not job.force_refresh and self._recently_synced(row.get("last_synced_at")):
            return False, "skipped"
        external_id = row.get(route.external_id_field)
        if not external_id:
            raise PermanentFetchError(f"{job.entity_kind} {job.entity_id} has no {route.external_id_field}")
        client = self.clients.get(route.source)
        if client is None:
            raise PermanentFetchError(f"no client configured for {route.source}")
        limit = self.config.rate_limits.sources.get(route.source)
        if limit is not None:
            self.limiter.acquire(
                route.source,
                limit,
                wait_seconds=self.config.executor.rate_limit_wait_seconds,
                max_waits=self.config.executor.rate_limit_max_waits,
                sleep=self._sleep,
                logger=self.logger,
            )
        fetch_started = isoformat_utc(self._clock())
        record = client.fetch(route.resource, str(external_id))
        applied = apply_sync_result(conn, job.entity_kind, job.entity_id, record.attributes, fetch_started)
        return applied, "succeeded" if applied else "superseded"

    def _recently_synced(self, last_synced_at: object) -> bool:
        window = self.config.executor.recent_sync_skip_seconds
        if window <= 0:
            return False
        synced = parse_iso(last_synced_at) if isinstance(last_synced_at, (str, datetime)) else None
        if synced is None:
            return False
        return (self._clock() - synced).total_seconds() < window

    def _log_outcome(self, outcome: JobOutcome) -> None:
        fields = {
            "job_id": outcome.job_id,
            "entity_kind": outcome.entity_kind,
            "entity_id": outcome.entity_id,
            "sync_type": outcome.sync_type,
            "source": outcome.source,
            "attempt": outcome.attempt,
            "duration_ms": outcome.duration_ms,
        }
        if outcome.status in {"succeeded", "superseded", "skipped"}:
            log_event(self.logger, logging.INFO, f"job_{outcome.status}", applied=outcome.applied, **fields)
        elif outcome.status == "retry":
            log_event(self.logger, logging.WARNING, "job_retry", error=outcome.error, **fields)
        else:
            log_event(self.logger, logging.ERROR, f"job_{outcome.status}", error=outcome.error, **fields)
