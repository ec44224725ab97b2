"""Throughput pacing driven by backend-reported consumed capacity."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from .errors import ConfigError

logger = logging.getLogger("index_violation.rate_limit")


class RateLimiter:
    """Per-worker permit throttle.

    The rate is ``capacity_units * percent / 100 / worker_count`` permits per
    second. Callers report what each request actually consumed; whole units
    are acquired once the running total passes 1.0 and the fractional
    remainder is carried forward. An acquire is charged to the schedule, so
    it is the following acquire that waits for it. Instances are not shared
    between workers.
    """

    def __init__(
        self,
        capacity_units: float,
        percent: float,
        worker_count: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if worker_count <= 0:
            raise ConfigError("RATE_LIMIT_INVALID", f"worker count {worker_count} must be positive")
        rate = float(capacity_units) * float(percent) / 100.0 / worker_count
        if rate <= 0:
            raise ConfigError(
                "RATE_LIMIT_INVALID",
                f"capacity units {capacity_units} or percent {percent} too low to read or write the table",
            )
        self.permits_per_second = rate
        self._accumulated = 0.0
        self._clock = clock
        self._sleep = sleep
        self._next_free = clock()

    @property
    def accumulated(self) -> float:
        return self._accumulated

    def consume(self, capacity_units: float | None) -> float:
        """Account for consumed capacity; returns the seconds spent blocked."""
        self._accumulated += float(capacity_units or 0.0)
        if self._accumulated <= 1.0:
            return 0.0
        permits = int(self._accumulated)
        waited = self._acquire(permits)
        self._accumulated -= permits
        return waited

    def consume_all(self, capacities: Iterable[float]) -> float:
        return sum(self.consume(units) for units in capacities)

    def _acquire(self, permits: int) -> float:
        now = self._clock()
        wait = max(0.0, self._next_free - now)
        self._next_free = max(self._next_free, now) + permits / self.permits_per_second
        if wait > 0:
            logger.debug("Rate limiter wait permits=%s seconds=%.3f", permits, wait)
            self._sleep(wait)
        return wait
