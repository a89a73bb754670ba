from __future__ import annotations

import pytest

from crm_auth.auth.errors import RateLimitedError
from crm_auth.auth.rate_limiter import RateLimiter, limiter_key
from crm_auth.core.config import RateLimitRule
from tests.auth_fixtures import FakeClock

RULE = RateLimitRule(name="login", max_attempts=2, window_seconds=300)


def test_rate_limiter_blocks_after_threshold_without_counting() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    key = limiter_key(RULE, "127.0.0.1", "test@example.com")

    limiter.check(key, RULE)
    limiter.check(key, RULE)
    clock.advance(100)
    with pytest.raises(RateLimitedError) as exc:
        limiter.check(key, RULE)
    with pytest.raises(RateLimitedError):
        limiter.check(key, RULE)

    assert exc.value.status_code == 429
    assert exc.value.retry_after == 200
    assert exc.value.headers == {"Retry-After": "200"}
    assert "AUTH_RATE_LIMITED" in str(exc.value.detail)


def test_rate_limiter_restarts_window_after_elapsed() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    key = limiter_key(RULE, "127.0.0.1", "ok@example.com")
    limiter.check(key, RULE)
    limiter.check(key, RULE)

    clock.advance(300)

    limiter.check(key, RULE)
    limiter.check(key, RULE)


def test_rate_limiter_keys_are_independent_and_resettable() -> None:
    limiter = RateLimiter(clock=FakeClock())
    first = limiter_key(RULE, "10.0.0.1", "a@example.com")
    second = limiter_key(RULE, "10.0.0.2", "a@example.com")
    limiter.check(first, RULE)
    limiter.check(first, RULE)

    limiter.check(second, RULE)
    limiter.reset(first)
    limiter.check(first, RULE)


def test_rate_limiter_sweep_drops_elapsed_windows() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limiter.check("a", RULE)
    clock.advance(200)
    limiter.check("b", RULE)
    clock.advance(150)

    assert limiter.sweep() == 1
    assert len(limiter) == 1
