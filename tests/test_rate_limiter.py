"""
Tests for RateLimiter — window keys, per-user and per-tenant ceilings.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from ai_governance.errors import RateLimitExceededError
from ai_governance.rate_limiter import RateLimiter, compute_window_key

from fakes import FixedClock


@pytest.mark.parametrize("ts,expected", [
    (datetime(2026, 3, 1, 14, 37, 22, tzinfo=timezone.utc), "2026-03-01T14:30"),
    (datetime(2026, 3, 1, 14, 59, 59, tzinfo=timezone.utc), "2026-03-01T14:50"),
    (datetime(2026, 3, 1, 0, 0, 0, tzinfo=timezone.utc), "2026-03-01T00:00"),
])
def test_window_key(ts, expected):
    assert compute_window_key(ts) == expected


def test_31st_user_call_rejected():
    limiter = RateLimiter(clock=FixedClock())
    for _ in range(30):
        limiter.check_and_increment("t1", "u1")
    with pytest.raises(RateLimitExceededError) as exc:
        limiter.check_and_increment("t1", "u1")
    assert exc.value.scope == "user"
    assert exc.value.status == 429
    # other users of the same tenant are unaffected
    limiter.check_and_increment("t1", "u2")


def test_tenant_ceiling():
    limiter = RateLimiter(per_user=100, per_tenant=5, clock=FixedClock())
    for i in range(5):
        limiter.check_and_increment("t1", f"u{i}")
    with pytest.raises(RateLimitExceededError) as exc:
        limiter.check_and_increment("t1", "u9")
    assert exc.value.scope == "tenant"
    limiter.check_and_increment("t2", "u9")


def test_rejected_calls_are_not_counted():
    limiter = RateLimiter(per_user=1, clock=FixedClock())
    limiter.check_and_increment("t1", "u1")
    for _ in range(3):
        with pytest.raises(RateLimitExceededError):
            limiter.check_and_increment("t1", "u1")
    assert limiter.usage("t1", "u1") == {"tenant": 1, "user": 1}


def test_counters_reset_in_next_window():
    clock = FixedClock(datetime(2026, 3, 1, 14, 39, tzinfo=timezone.utc))
    limiter = RateLimiter(per_user=1, clock=clock)
    limiter.check_and_increment("t1", "u1")
    clock.advance(minutes=1)
    assert limiter.check_and_increment("t1", "u1") == "2026-03-01T14:40"
