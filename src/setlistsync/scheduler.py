"""In-process priority queue for sync jobs.

The dedup index maps (entity id, sync type) to the ids of jobs that are still
waiting or running. Every mutation happens under one lock, so the dedup check
and the insert form a single claim on the key.
"""

from __future__ import annotations

import heapq
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import replace
from typing import Callable, Iterable

from .config import QueueConfig
from .models import SyncJob
from .utils import log_event

DEFAULT_DELAY_BANDS: tuple[tuple[int, int], ...] = (
    (9, 0),
    (7, 60),
    (5, 300),
    (3, 900),
)
DEFAULT_FALLBACK_DELAY_SECONDS = 1800

PENDING = "pending"
ACTIVE = "active"
EXHAUSTED = "exhausted"


class QueueClosedError(RuntimeError):
    pass


def delay_for_priority(
    priority: int,
    bands: Iterable[tuple[int, int]] = DEFAULT_DELAY_BANDS,
    fallback: int = DEFAULT_FALLBACK_DELAY_SECONDS,
) -> int:
    for threshold, delay in bands:
        if priority >= threshold:
            return delay
    return fallback


def backoff_seconds(attempt: int, base: float, maximum: float) -> float:
    return min(base * (2 ** max(attempt - 1, 0)), maximum)


def new_job_id() -> str:
    return f"sync_{uuid.uuid4().hex}"


class SyncQueue:
    def __init__(
        self,
        max_attempts: int = 4,
        backoff_base_seconds: float = 30.0,
        backoff_max_seconds: float = 3600.0,
        delay_bands: Iterable[tuple[int, int]] = DEFAULT_DELAY_BANDS,
        fallback_delay_seconds: int = DEFAULT_FALLBACK_DELAY_SECONDS,
        exhausted_history: int = 100,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.delay_bands = tuple(delay_bands)
        self.fallback_delay_seconds = fallback_delay_seconds
        self._clock = clock
        self._logger = logger or logging.getLogger("setlistsync.scheduler")
        self._lock = threading.Lock()
        self._work = threading.Condition(self._lock)
        self._heap: list[tuple[int, float, int, str]] = []
        self._seq = 0
        self._jobs: dict[str, SyncJob] = {}
        self._index: dict[tuple[str, str], set[str]] = {}
        self._exhausted: deque[SyncJob] = deque(maxlen=exhausted_history)
        self._counts = {"completed": 0, "retried": 0, "exhausted": 0, "deduplicated": 0}
        self._closed = True

    @classmethod
    def from_config(
        cls,
        config: QueueConfig,
        clock: Callable[[], float] = time.time,
    ) -> "SyncQueue":
        return cls(
            max_attempts=config.max_attempts,
            backoff_base_seconds=config.backoff_base_seconds,
            backoff_max_seconds=config.backoff_max_seconds,
            delay_bands=config.delay_bands,
            fallback_delay_seconds=config.fallback_delay_seconds,
            exhausted_history=config.exhausted_history,
            clock=clock,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        with self._lock:
            self._closed = False
        log_event(self._logger, logging.INFO, "queue_started")

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            pending = sum(1 for job in self._jobs.values() if job.status == PENDING)
            active = sum(1 for job in self._jobs.values() if job.status == ACTIVE)
            self._work.notify_all()
        log_event(self._logger, logging.INFO, "queue_shutdown", pending=pending, active=active)

    def delay_for(self, priority: int) -> int:
        return delay_for_priority(priority, self.delay_bands, self.fallback_delay_seconds)

    def new_job(
        self,
        entity_kind: str,
        entity_id: str,
        sync_type: str,
        priority: int,
        force_refresh: bool = False,
        reason: str = "freshness-check",
    ) -> SyncJob:
        return SyncJob(
            id=new_job_id(),
            entity_kind=entity_kind,
            entity_id=str(entity_id),
            sync_type=sync_type,
            priority=priority,
            force_refresh=force_refresh,
            reason=reason,
        )

    def enqueue(self, job: SyncJob) -> bool:
        key = job.dedup_key
        with self._lock:
            if self._closed:
                raise QueueClosedError("sync queue is not running")
            outstanding = self._index.get(key, set())
            if outstanding and not self._admits_duplicate(job, outstanding):
                self._counts["deduplicated"] += 1
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "enqueue_deduplicated",
                    entity_id=job.entity_id,
                    sync_type=job.sync_type,
                )
                return False
            now = self._clock()
            delay = 0 if job.force_refresh else self.delay_for(job.priority)
            queued = replace(
                job,
                status=PENDING,
                attempts=0,
                delay_seconds=delay,
                enqueued_at=now,
                ready_at=now + delay,
            )
            self._jobs[queued.id] = queued
            self._index.setdefault(key, set()).add(queued.id)
            self._push(queued)
            self._work.notify_all()
        log_event(
            self._logger,
            logging.DEBUG,
            "job_enqueued",
            job_id=queued.id,
            entity_kind=queued.entity_kind,
            entity_id=queued.entity_id,
            sync_type=queued.sync_type,
            priority=queued.priority,
            delay=delay,
        )
        return True

    def claim(self, include_delayed: bool = False) -> SyncJob | None:
        """Pop the best ready job and mark it active.

        With ``include_delayed`` a job that has never been attempted is claimable
        before its priority delay runs out. Retry backoff is always honoured.
        """
        with self._lock:
            if self._closed:
                return None
            now = self._clock()
            deferred: list[tuple[int, float, int, str]] = []
            claimed: SyncJob | None = None
            while self._heap:
                entry = heapq.heappop(self._heap)
                job = self._jobs.get(entry[3])
                if job is None or job.status != PENDING or job.ready_at != entry[1]:
                    continue
                if job.ready_at > now and not (include_delayed and job.attempts == 0):
                    deferred.append(entry)
                    continue
                claimed = replace(job, status=ACTIVE, attempts=job.attempts + 1)
                self._jobs[claimed.id] = claimed
                break
            for entry in deferred:
                heapq.heappush(self._heap, entry)
            return claimed

    def complete(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != ACTIVE:
                return False
            self._discard(job)
            self._counts["completed"] += 1
            return True

    def fail(
        self,
        job_id: str,
        error: str,
        permanent: bool = False,
        retry_after: float | None = None,
    ) -> str:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != ACTIVE:
                return "unknown"
            if permanent or job.attempts >= self.max_attempts:
                self._discard(job)
                self._exhausted.append(replace(job, status=EXHAUSTED, last_error=error))
                self._counts["exhausted"] += 1
                return EXHAUSTED
            delay = backoff_seconds(job.attempts, self.backoff_base_seconds, self.backoff_max_seconds)
            if retry_after is not None:
                delay = max(delay, float(retry_after))
            retry = replace(job, status=PENDING, ready_at=self._clock() + delay, last_error=error)
            self._jobs[job_id] = retry
            self._push(retry)
            self._counts["retried"] += 1
            self._work.notify_all()
            return "retry"

    def is_outstanding(self, entity_id: str, sync_type: str) -> bool:
        with self._lock:
            return bool(self._index.get((str(entity_id), sync_type)))

    def get(self, job_id: str) -> SyncJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def waiting_jobs(self) -> list[SyncJob]:
        with self._lock:
            jobs = [job for job in self._jobs.values() if job.status == PENDING]
        return sorted(jobs, key=lambda job: (-job.priority, job.ready_at))

    def exhausted_jobs(self) -> list[SyncJob]:
        with self._lock:
            return list(self._exhausted)

    def next_ready_in(self) -> float | None:
        with self._lock:
            ready_times = [job.ready_at for job in self._jobs.values() if job.status == PENDING]
            if not ready_times:
                return None
            return max(0.0, min(ready_times) - self._clock())

    def wait_for_work(self, timeout: float, stop_event: threading.Event | None = None) -> None:
        """Block until a job may be ready, the queue changes, or ``timeout`` passes."""
        with self._lock:
            if self._closed or (stop_event is not None and stop_event.is_set()):
                return
            ready_times = [job.ready_at for job in self._jobs.values() if job.status == PENDING]
            if ready_times:
                timeout = min(timeout, min(ready_times) - self._clock())
            if timeout > 0:
                self._work.wait(timeout)

    def wake(self) -> None:
        with self._lock:
            self._work.notify_all()

    def stats(self) -> dict[str, int]:
        with self._lock:
            now = self._clock()
            pending = [job for job in self._jobs.values() if job.status == PENDING]
            stats = {
                "waiting": len(pending),
                "ready": sum(1 for job in pending if job.ready_at <= now),
                "active": sum(1 for job in self._jobs.values() if job.status == ACTIVE),
            }
            stats.update(self._counts)
            return stats

    def _admits_duplicate(self, job: SyncJob, outstanding: set[str]) -> bool:
        if not job.force_refresh:
            return False
        if len(outstanding) >= 2:
            return False
        return not any(self._jobs[job_id].force_refresh for job_id in outstanding)

    def _push(self, job: SyncJob) -> None:
        self._seq += 1
        heapq.heappush(self._heap, (-job.priority, job.ready_at, self._seq, job.id))

    def _discard(self, job: SyncJob) -> None:
        self._jobs.pop(job.id, None)
        ids = self._index.get(job.dedup_key)
        if ids is not None:
            ids.discard(job.id)
            if not ids:
                del self._index[job.dedup_key]
