"""Rate limiting shared by the GPS stream and geocoding clients."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Mapping

from ..config import (
    RATE_LIMIT_JITTER_RANGE,
    RATE_LIMIT_MAX_CONCURRENT,
    RATE_LIMIT_NEAR_LIMIT_BUFFER,
    RATE_LIMIT_THROTTLE_SECONDS,
)

__all__ = ["RateLimiter"]


class RateLimiter:
    """Concurrency cap with a minimum request spacing, throttle and jitter.

    ``min_interval`` spaces request starts (1.0 gives at most one request per
    second). A 429 response, or usage headers close to the short-window limit,
    pause all callers for ``throttle_seconds``.
    """

    def __init__(
        self,
        max_concurrent: int = RATE_LIMIT_MAX_CONCURRENT,
        jitter_range: tuple[float, float] = RATE_LIMIT_JITTER_RANGE,
        min_interval: float = 0.0,
        throttle_seconds: float = RATE_LIMIT_THROTTLE_SECONDS,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._max_allowed = max_concurrent
        self._in_flight = 0
        self._throttle_until = 0.0
        self._next_slot = 0.0
        self._min_interval = max(0.0, min_interval)
        self._throttle_seconds = throttle_seconds
        self._jitter_range = jitter_range
        self._near_limit_buffer = RATE_LIMIT_NEAR_LIMIT_BUFFER
        self._log = logging.getLogger(self.__class__.__name__)

    def resize(self, new_max: int) -> None:
        """Adjust maximum concurrent requests at runtime."""

        if new_max < 1:
            raise ValueError("new_max must be >= 1")
        with self._cond:
            old = self._max_allowed
            self._max_allowed = new_max
            self._cond.notify_all()
        self._log.info("RateLimiter resized from %s to %s", old, new_max)

    def before_request(self) -> None:
        with self._cond:
            while self._in_flight >= self._max_allowed:
                self._cond.wait()
            self._in_flight += 1
            now = time.monotonic()
            start_at = max(now, self._throttle_until, self._next_slot)
            self._next_slot = start_at + self._min_interval
            wait_for = start_at - now
        if wait_for > 0:
            time.sleep(wait_for)
        lo, hi = self._jitter_range
        if hi > 0:
            # Jitter only smooths bursts; not security sensitive.
            time.sleep(random.uniform(lo, hi))  # nosec B311

    def after_response(
        self, headers: Mapping[str, object] | None, status_code: int | None
    ) -> None:
        throttle_for = 0.0
        if status_code == 429:
            throttle_for = self._retry_after(headers) or self._throttle_seconds
            self._log.warning("Rate limit: 429. Throttling %ss.", throttle_for)
        elif self._near_short_limit(headers):
            throttle_for = self._throttle_seconds
        with self._cond:
            if throttle_for > 0:
                self._throttle_until = max(
                    self._throttle_until, time.monotonic() + throttle_for
                )
            self._in_flight = max(0, self._in_flight - 1)
            if self._in_flight < self._max_allowed:
                self._cond.notify()

    def snapshot(self) -> dict[str, float | int]:
        """Current limiter stats (used by tests and diagnostics)."""

        with self._lock:
            return {
                "max_allowed": self._max_allowed,
                "in_flight": self._in_flight,
                "throttle_remaining": max(0.0, self._throttle_until - time.monotonic()),
            }

    def _near_short_limit(self, headers: Mapping[str, object] | None) -> bool:
        if not headers:
            return False
        usage = headers.get("X-RateLimit-Usage")
        limit = headers.get("X-RateLimit-Limit")
        if not usage or not limit:
            return False
        try:
            short_used = int(str(usage).split(",")[0])
            short_limit = int(str(limit).split(",")[0])
        except (ValueError, TypeError) as exc:
            self._log.debug(
                "Failed to parse rate limit headers usage=%s limit=%s: %s",
                usage,
                limit,
                exc,
            )
            return False
        if short_used >= max(short_limit - self._near_limit_buffer, 0):
            self._log.info(
                "Approaching short-window limit (%s/%s). Throttling %ss.",
                short_used,
                short_limit,
                self._throttle_seconds,
            )
            return True
        return False

    @staticmethod
    def _retry_after(headers: Mapping[str, object] | None) -> float:
        if not headers:
            return 0.0
        value = headers.get("Retry-After")
        try:
            return max(0.0, float(str(value))) if value is not None else 0.0
        except ValueError:
            return 0.0
