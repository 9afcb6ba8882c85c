from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable

from .config import RateLimitConfig, SourceLimit
from .utils import log_event


class RateLimitExceeded(RuntimeError):
    def __init__(self, source: str, reset_at: float) -> None:
        super().__init__(f"rate limit exceeded for {source}")
        self.source = source
        self.reset_at = reset_at


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float


class FixedWindowRateLimiter:
    """Counts requests per key inside fixed windows.

    The first request for a key opens a window of ``window_ms``. Requests are
    admitted until ``max_requests`` is reached; the count resets once the
    window's reset time has passed. ``jitter_ms`` pushes each new window's
    reset time out by a random amount so that workers blocked on the same key
    do not all wake at once.
    """

    def __init__(
        self,
        jitter_ms: int = 0,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.jitter_ms = max(0, int(jitter_ms))
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[int, float]] = {}

    @classmethod
    def from_config(cls, config: RateLimitConfig, clock: Callable[[], float] = time.time):
        return cls(jitter_ms=config.jitter_ms, clock=clock)

    def check_limit(self, key: str, max_requests: int, window_ms: int) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count = 0
                reset_at = now + window_ms / 1000.0
                if self.jitter_ms:
                    reset_at += self._rng.uniform(0, self.jitter_ms) / 1000.0
            if count >= max_requests:
                self._windows[key] = (count, reset_at)
                return RateLimitDecision(allowed=False, remaining=0, reset_at=reset_at)
            count += 1
            self._windows[key] = (count, reset_at)
            return RateLimitDecision(
                allowed=True,
                remaining=max_requests - count,
                reset_at=reset_at,
            )

    def acquire(
        self,
        source: str,
        limit: SourceLimit,
        wait_seconds: float,
        max_waits: int,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> RateLimitDecision:
        """Block until a slot for ``source`` is granted or ``max_waits`` runs out."""
        logger = logger or logging.getLogger("setlistsync.ratelimit")
        waits = 0
        while True:
            decision = self.check_limit(source, limit.max_requests, limit.window_ms)
            if decision.allowed:
                return decision
            if waits >= max_waits:
                log_event(
                    logger,
                    logging.WARNING,
                    "rate_limit_exhausted",
                    source=source,
                    waits=waits,
                    reset_at=round(decision.reset_at, 3),
                )
                raise RateLimitExceeded(source, decision.reset_at)
            waits += 1
            pause = min(wait_seconds, max(0.0, decision.reset_at - self._clock()))
            log_event(logger, logging.DEBUG, "rate_limit_wait", source=source, wait=round(pause, 3))
            sleep(pause)
