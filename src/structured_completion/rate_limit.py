"""
Call-rate discipline against a shared, rate-limited upstream.

A sliding 60 second window counts recorded calls against a per-minute budget.
Every read prunes expired records first, so nothing depends on a background
timer. Usage bands (percent of budget):

    < warning            no delay, refresh multiplier 1
    warning..critical    0.5 s delay, multiplier 2
    critical..hard       2 s delay, multiplier 4
    >= hard              non-essential calls blocked, essential calls 5 s, multiplier 8
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import structlog

from .dedup import RequestDeduplicator
from .errors import RateLimitExceeded
from .metrics import rate_limiter_decisions_total

log = structlog.get_logger()

T = TypeVar("T")

WINDOW_SECONDS = 60.0

RateLimitListener = Callable[[int, int], None]


@dataclass(frozen=True)
class CallRecord:
    timestamp: float
    endpoint: str


class RateLimitLevel(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    BLOCKED = "blocked"


_LEVEL_MESSAGES = {
    RateLimitLevel.OK: "API usage normal",
    RateLimitLevel.WARNING: "Approaching rate limit - requests slowing",
    RateLimitLevel.CRITICAL: "Near rate limit - heavy throttling active",
    RateLimitLevel.BLOCKED: "At rate limit - non-essential requests blocked",
}


@dataclass(frozen=True)
class RateLimitStatus:
    calls_per_minute: int
    limit: int
    percent_used: int
    level: RateLimitLevel
    message: str


class RateLimiter:
    def __init__(
        self,
        limit_per_minute: int = 100,
        *,
        warning_pct: int = 70,
        critical_pct: int = 85,
        hard_pct: int = 95,
        deduplicator: RequestDeduplicator | None = None,
        clock: Callable[[], float] | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
    ):
        if limit_per_minute <= 0:
            raise ValueError("limit_per_minute must be > 0")
        if not (0 < warning_pct <= critical_pct <= hard_pct):
            raise ValueError("thresholds must satisfy 0 < warning <= critical <= hard")
        self.limit_per_minute = limit_per_minute
        self.warning_pct = warning_pct
        self.critical_pct = critical_pct
        self.hard_pct = hard_pct
        self.deduplicator = deduplicator or RequestDeduplicator()
        self._clock = clock or time.monotonic
        self._sleep = sleeper or asyncio.sleep
        self._window: deque[CallRecord] = deque()
        self._listeners: list[RateLimitListener] = []

    def _prune(self) -> None:
        cutoff = self._clock() - WINDOW_SECONDS
        while self._window and self._window[0].timestamp <= cutoff:
            self._window.popleft()

    def recent_calls(self) -> list[CallRecord]:
        self._prune()
        return list(self._window)

    def calls_per_minute(self) -> int:
        self._prune()
        return len(self._window)

    def percent_used(self) -> int:
        return math.floor(self.calls_per_minute() * 100 / self.limit_per_minute + 0.5)

    def level(self) -> RateLimitLevel:
        pct = self.percent_used()
        if pct < self.warning_pct:
            return RateLimitLevel.OK
        if pct < self.critical_pct:
            return RateLimitLevel.WARNING
        if pct < self.hard_pct:
            return RateLimitLevel.CRITICAL
        return RateLimitLevel.BLOCKED

    def should_throttle(self) -> bool:
        return self.level() is not RateLimitLevel.OK

    def should_block(self) -> bool:
        return self.level() is RateLimitLevel.BLOCKED

    def throttle_delay(self) -> float:
        """Seconds to wait before the next call."""
        return {
            RateLimitLevel.OK: 0.0,
            RateLimitLevel.WARNING: 0.5,
            RateLimitLevel.CRITICAL: 2.0,
            RateLimitLevel.BLOCKED: 5.0,
        }[self.level()]

    def refresh_multiplier(self) -> int:
        """Advisory factor for pollers to stretch their own interval."""
        return {
            RateLimitLevel.OK: 1,
            RateLimitLevel.WARNING: 2,
            RateLimitLevel.CRITICAL: 4,
            RateLimitLevel.BLOCKED: 8,
        }[self.level()]

    def optimal_batch_size(self, requested: int) -> int:
        if requested <= 0:
            return 0
        remaining = self.limit_per_minute - self.calls_per_minute()
        # Half of what is left stays free for other callers.
        available = max(1, math.floor(remaining * 0.5))
        level = self.level()
        if level is RateLimitLevel.BLOCKED:
            return min(5, requested)
        if level is RateLimitLevel.CRITICAL:
            return min(10, requested, available)
        if level is RateLimitLevel.WARNING:
            return min(20, requested, available)
        return min(available, requested)

    def seconds_until_unblocked(self) -> float:
        self._prune()
        if not self.should_block():
            return 0.0
        # Oldest records expire first; find the one whose expiry drops usage under the hard limit.
        max_allowed = math.ceil(self.hard_pct * self.limit_per_minute / 100) - 1
        excess = len(self._window) - max_allowed
        record = self._window[max(0, excess - 1)]
        return max(0.0, record.timestamp + WINDOW_SECONDS - self._clock())

    def record(self, endpoint: str) -> None:
        self._window.append(CallRecord(timestamp=self._clock(), endpoint=endpoint))
        calls = self.calls_per_minute()
        pct = self.percent_used()
        for listener in list(self._listeners):
            try:
                listener(calls, pct)
            except Exception:
                log.exception("rate_limit_listener_failed", endpoint=endpoint)

    def subscribe(self, listener: RateLimitListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def status(self) -> RateLimitStatus:
        level = self.level()
        return RateLimitStatus(
            calls_per_minute=self.calls_per_minute(),
            limit=self.limit_per_minute,
            percent_used=self.percent_used(),
            level=level,
            message=_LEVEL_MESSAGES[level],
        )

    async def call(
        self,
        endpoint: str,
        fn: Callable[[], Awaitable[T]],
        *,
        essential: bool = False,
        dedupe_key: str | None = None,
    ) -> T:
        """
        Run ``fn`` under the call budget.

        A caller whose ``dedupe_key`` is already in flight joins that request
        without spending budget. Otherwise non-essential calls at the hard
        limit raise RateLimitExceeded; all others wait the throttle delay,
        are recorded, and run.
        """
        if dedupe_key is not None and self.deduplicator.in_flight(dedupe_key):
            return await self.deduplicator.run(dedupe_key, fn)

        if not essential and self.should_block():
            rate_limiter_decisions_total.labels(decision="blocked").inc()
            log.warning("rate_limit_blocked", endpoint=endpoint, percent_used=self.percent_used())
            raise RateLimitExceeded(retry_after_seconds=self.seconds_until_unblocked())

        delay = self.throttle_delay()
        if delay > 0:
            rate_limiter_decisions_total.labels(decision="throttled").inc()
            log.debug("rate_limit_throttled", endpoint=endpoint, delay_seconds=delay)
            await self._sleep(delay)
        else:
            rate_limiter_decisions_total.labels(decision="allowed").inc()

        async def _execute() -> T:
            self.record(endpoint)
            return await fn()

        if dedupe_key is not None:
            return await self.deduplicator.run(dedupe_key, _execute)
        return await _execute()

    def reset(self) -> None:
        self._window.clear()
        self._listeners.clear()
        self.deduplicator.reset()
