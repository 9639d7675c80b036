"""Tests for the fixed-window rate limiter."""
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

from eventgate.event_models import RateLimitConfig
from eventgate.rate_limiter import SAMPLE_LIMIT, SUBSCRIPTION_LIMIT, RateLimiter


def test_admits_up_to_limit_then_rejects(limiter):
    """Test limit=2: two admitted with decreasing remaining, third rejected."""
    config = RateLimitConfig(limit=2, window_ms=1000)

    first = limiter.check("k", config)
    second = limiter.check("k", config)
    third = limiter.check("k", config)

    assert first.allowed and first.remaining == 1
    assert second.allowed and second.remaining == 0
    assert third.allowed is False
    assert third.remaining == 0
    assert third.retry_after == 1
    assert first.retry_after is None


def test_remaining_is_monotonic_within_window(limiter):
    """Test remaining never increases inside one window."""
    config = RateLimitConfig(limit=5, window_ms=60_000)
    remaining = [limiter.check("k", config).remaining for _ in range(8)]

    assert remaining == sorted(remaining, reverse=True)
    assert remaining[:5] == [4, 3, 2, 1, 0]


def test_keys_are_isolated(limiter):
    """Test exhausting one key does not affect another."""
    config = RateLimitConfig(limit=1, window_ms=60_000)
    limiter.check("a", config)
    assert limiter.check("a", config).allowed is False

    result = limiter.check("b", config)
    assert result.allowed is True
    assert result.remaining == 0


def test_window_resets_after_expiry(limiter, clock):
    """Test a rejected key is admitted again once the window has elapsed."""
    config = RateLimitConfig(limit=2, window_ms=1000)
    for _ in range(3):
        limiter.check("k", config)

    clock.advance(1.0)
    result = limiter.check("k", config)

    assert result.allowed is True
    assert result.remaining == 1
    assert result.reset_at == int(clock() * 1000) + 1000


def test_rejected_checks_do_not_grow_count(limiter):
    """Test the stored count stops at limit + 1."""
    config = RateLimitConfig(limit=3, window_ms=60_000)
    for _ in range(10):
        limiter.check("k", config)

    assert limiter._windows["k"].count == 4


def test_reset_at_stays_fixed_within_window(limiter, clock):
    """Test checks inside a window do not move its reset instant."""
    config = RateLimitConfig(limit=10, window_ms=60_000)
    first = limiter.check("k", config)
    clock.advance(30)
    second = limiter.check("k", config)

    assert first.reset_at == second.reset_at


def test_retry_after_counts_down(limiter, clock):
    """Test retry_after reflects the time left in the window."""
    config = RateLimitConfig(limit=1, window_ms=60_000)
    limiter.check("k", config)
    clock.advance(15)
    result = limiter.check("k", config)

    assert result.allowed is False
    assert result.retry_after == 45


def test_get_status_does_not_count(limiter):
    """Test status lookups are pure."""
    config = RateLimitConfig(limit=3, window_ms=60_000)

    statuses = [limiter.get_status("k", config) for _ in range(5)]
    assert all(s.allowed and s.remaining == 3 for s in statuses)
    assert len(limiter) == 0

    limiter.check("k", config)
    assert limiter.get_status("k", config).remaining == 2
    assert limiter.get_status("k", config).remaining == 2
    assert limiter.check("k", config).remaining == 1


def test_get_status_reports_exhausted_window(limiter):
    """Test status of an exhausted key carries retry_after."""
    config = RateLimitConfig(limit=1, window_ms=10_000)
    limiter.check("k", config)

    status = limiter.get_status("k", config)

    assert status.allowed is False
    assert status.remaining == 0
    assert status.retry_after == 10


def test_get_status_after_expiry_reports_fresh_window(limiter, clock):
    """Test an expired window is reported as fresh without being replaced."""
    config = RateLimitConfig(limit=2, window_ms=1000)
    limiter.check("k", config)
    limiter.check("k", config)
    clock.advance(2)

    status = limiter.get_status("k", config)

    assert status.allowed is True
    assert status.remaining == 2
    assert limiter._windows["k"].count == 2


def test_cleanup_removes_only_expired_windows(limiter, clock):
    """Test cleanup deletes expired windows and keeps live ones."""
    short = RateLimitConfig(limit=5, window_ms=1000)
    long = RateLimitConfig(limit=5, window_ms=60_000)
    limiter.check("short-1", short)
    limiter.check("short-2", short)
    limiter.check("long", long)

    clock.advance(2)
    removed = limiter.cleanup()

    assert removed == 2
    assert len(limiter) == 1
    assert limiter.get_status("long", long).remaining == 4
    assert limiter.cleanup() == 0


def test_cleanup_after_expiry_does_not_change_admission(limiter, clock):
    """Test an expired window gives the same answer whether or not it was cleaned up."""
    config = RateLimitConfig(limit=1, window_ms=1000)
    limiter.check("k", config)
    limiter.check("k", config)
    clock.advance(1)
    limiter.cleanup()

    assert limiter.check("k", config).allowed is True


def test_cleanup_during_check_keeps_the_counted_window(limiter, clock):
    """Test a sweep landing while a check holds an expired window cannot drop its increment."""
    config = RateLimitConfig(limit=1, window_ms=1000)
    limiter.check("k", config)
    clock.advance(2)
    lock_window = limiter._lock_window

    def lock_then_sweep(*args):
        window = lock_window(*args)
        assert limiter.cleanup() == 0
        return window

    with patch.object(limiter, "_lock_window", side_effect=lock_then_sweep):
        first = limiter.check("k", config)
    second = limiter.check("k", config)

    assert first.allowed is True
    assert second.allowed is False
    assert len(limiter) == 1


def test_cleanup_skips_windows_held_by_a_check(limiter, clock):
    """Test cleanup leaves a locked window in place even once it has expired."""
    config = RateLimitConfig(limit=5, window_ms=1000)
    limiter.check("k", config)
    clock.advance(2)

    window = limiter._lock_window("k", limiter._now_ms(), config)
    try:
        assert limiter.cleanup() == 0
    finally:
        window.lock.release()

    assert limiter.cleanup() == 1


def test_reset_and_reset_all(limiter):
    """Test reset removes one window and reset_all removes every window."""
    config = RateLimitConfig(limit=1, window_ms=60_000)
    limiter.check("a", config)
    limiter.check("b", config)

    limiter.reset("a")
    assert limiter.check("a", config).allowed is True
    assert limiter.check("b", config).allowed is False

    limiter.reset_all()
    assert len(limiter) == 0
    assert limiter.check("b", config).allowed is True


def test_subscription_policy(limiter):
    """Test the subscription policy admits 100 per IP per hour."""
    results = [limiter.check_subscription("10.0.0.1") for _ in range(101)]

    assert all(r.allowed for r in results[:100])
    assert results[99].remaining == 0
    assert results[100].allowed is False
    assert results[100].retry_after == 3600
    assert limiter.get_status("subscription:10.0.0.1", SUBSCRIPTION_LIMIT).allowed is False


def test_sample_policy_is_separate_from_subscription(limiter):
    """Test the two policies keep distinct windows for the same IP."""
    for _ in range(60):
        assert limiter.check_sample("10.0.0.2").allowed
    assert limiter.check_sample("10.0.0.2").allowed is False

    assert limiter.check_subscription("10.0.0.2").allowed is True
    assert limiter.get_status("sample:10.0.0.2", SAMPLE_LIMIT).remaining == 0


def test_events_policy_uses_configured_limit(clock):
    """Test check_events honours the injected policy."""
    limiter = RateLimiter(clock=clock, events_limit=RateLimitConfig(limit=2, window_ms=5000))

    assert limiter.check_events("ip").remaining == 1
    assert limiter.check_events("ip").remaining == 0
    rejected = limiter.check_events("ip")
    assert rejected.allowed is False
    assert rejected.retry_after == 5


def test_concurrent_checks_are_not_lost():
    """Test concurrent checks on one key are each counted exactly once."""
    limiter = RateLimiter()
    config = RateLimitConfig(limit=10_000, window_ms=3_600_000)

    def burst():
        for _ in range(50):
            limiter.check("shared", config)

    with ThreadPoolExecutor(max_workers=8) as pool:
        for _ in range(16):
            pool.submit(burst)

    assert limiter.get_status("shared", config).remaining == 10_000 - 800


def test_concurrent_over_limit_admits_exactly_limit():
    """Test exactly `limit` requests are admitted under contention."""
    limiter = RateLimiter()
    config = RateLimitConfig(limit=100, window_ms=3_600_000)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: limiter.check("shared", config), range(400)))

    assert sum(r.allowed for r in results) == 100
