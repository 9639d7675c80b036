"""
Fixed-window rate limiter for front-door admission control.

Each admission key owns a window holding a request count and the instant the
window resets. Distinct policies coexist under distinct keys, e.g.
``subscription:<ip>`` and ``sample:<ip>``.

The key -> window table is guarded by a table lock; every window carries its
own lock that is held for the whole read-modify-write of a check.
"""
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict

import structlog

from .event_models import RateLimitConfig, RateLimitResult

log = structlog.get_logger()

SUBSCRIPTION_LIMIT = RateLimitConfig(limit=100, window_ms=3_600_000)
SAMPLE_LIMIT = RateLimitConfig(limit=60, window_ms=60_000)


@dataclass
class RateWindow:
    reset_at: int
    count: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class RateLimiter:
    """
    Per-key fixed-window admission counter.

    Args:
        clock: Returns the current time in seconds (defaults to time.time)
        events_limit: Policy used by check_events()
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        events_limit: RateLimitConfig | None = None,
    ):
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._table_lock = threading.Lock()
        self.events_limit = events_limit or RateLimitConfig(limit=1000, window_ms=60_000)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _lock_window(self, key: str, now: int, config: RateLimitConfig) -> RateWindow:
        """Fetch or create the window for ``key`` and return it locked."""
        # Lock order is always table then window
        with self._table_lock:
            window = self._windows.get(key)
            if window is None:
                window = RateWindow(reset_at=now + config.window_ms)
                self._windows[key] = window
            window.lock.acquire()
            return window

    @staticmethod
    def _retry_after(reset_at: int, now: int, config: RateLimitConfig) -> int:
        seconds = math.ceil((reset_at - now) / 1000)
        return min(max(seconds, 1), math.ceil(config.window_ms / 1000))

    def check(
        self,
        key: str,
        config: RateLimitConfig,
        correlation_id: str | None = None,
    ) -> RateLimitResult:
        """
        Count one request against ``key`` and decide whether it is admitted.

        Args:
            key: Admission key (policy discriminator plus source)
            config: Limit and window length for this policy
            correlation_id: Request correlation ID for logging

        Returns:
            RateLimitResult; ``retry_after`` is set only on rejection
        """
        now = self._now_ms()
        window = self._lock_window(key, now, config)
        try:
            if now >= window.reset_at:
                window.count = 0
                window.reset_at = now + config.window_ms
            # The (limit+1)-th check is rejected and not counted further
            if window.count <= config.limit:
                window.count += 1
            count = window.count
            reset_at = window.reset_at
        finally:
            window.lock.release()

        if count <= config.limit:
            remaining = config.limit - count
            log.debug(
                "rate_limit.passed",
                correlation_id=correlation_id,
                key=key,
                limit=config.limit,
                remaining=remaining,
            )
            return RateLimitResult(
                allowed=True,
                remaining=remaining,
                limit=config.limit,
                reset_at=reset_at,
            )

        retry_after = self._retry_after(reset_at, now, config)
        log.warning(
            "rate_limit.exceeded",
            correlation_id=correlation_id,
            key=key,
            limit=config.limit,
            window_ms=config.window_ms,
            retry_after_seconds=retry_after,
        )
        return RateLimitResult(
            allowed=False,
            remaining=0,
            limit=config.limit,
            reset_at=reset_at,
            retry_after=retry_after,
        )

    def get_status(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Report the state of ``key`` without counting a request."""
        now = self._now_ms()
        with self._table_lock:
            window = self._windows.get(key)

        if window is None:
            count, reset_at = 0, now + config.window_ms
        else:
            with window.lock:
                count, reset_at = window.count, window.reset_at
            if now >= reset_at:
                count, reset_at = 0, now + config.window_ms

        allowed = count < config.limit
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.limit - count),
            limit=config.limit,
            reset_at=reset_at,
            retry_after=None if allowed else self._retry_after(reset_at, now, config),
        )

    def reset(self, key: str) -> None:
        with self._table_lock:
            self._windows.pop(key, None)
        log.info("rate_limit.reset", key=key)

    def reset_all(self) -> None:
        with self._table_lock:
            self._windows.clear()
        log.info("rate_limit.reset_all")

    def cleanup(self) -> int:
        """
        Delete windows whose reset instant has passed.

        Windows currently locked by a concurrent check are left alone. Safe to
        call at any time.

        Returns:
            Number of windows removed
        """
        now = self._now_ms()
        cleaned = 0
        with self._table_lock:
            for key, window in list(self._windows.items()):
                if not window.lock.acquire(blocking=False):
                    continue
                try:
                    if now >= window.reset_at:
                        del self._windows[key]
                        cleaned += 1
                finally:
                    window.lock.release()
            remaining = len(self._windows)

        if cleaned:
            log.debug("rate_limit.cleanup", entries_cleaned=cleaned, entries_remaining=remaining)
        return cleaned

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._windows)

    def check_subscription(self, ip: str, correlation_id: str | None = None) -> RateLimitResult:
        """Subscription policy: 100 requests per IP per hour."""
        return self.check(f"subscription:{ip}", SUBSCRIPTION_LIMIT, correlation_id)

    def check_sample(self, ip: str, correlation_id: str | None = None) -> RateLimitResult:
        """Sample policy: 60 requests per IP per minute."""
        return self.check(f"sample:{ip}", SAMPLE_LIMIT, correlation_id)

    def check_events(self, ip: str, correlation_id: str | None = None) -> RateLimitResult:
        return self.check(f"events:{ip}", self.events_limit, correlation_id)
