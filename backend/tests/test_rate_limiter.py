from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from app.core.config import Settings
from app.services import rate_limiter as rate_limiter_module
from app.services.rate_limiter import (
    DEFAULT_RATE_LIMITS,
    InMemoryRateLimiter,
    NoopRateLimiter,
    RateLimitDecision,
    RateLimitRule,
    check_limit,
    get_default_rate_limit,
    rate_limit_key,
)


def test_allows_up_to_limit_then_blocks():
    limiter = InMemoryRateLimiter()

    decisions = [limiter.check("k", 3, 60, now=1000 + i) for i in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]
    assert decisions[-1].reset_at == datetime.fromtimestamp(1060, tz=timezone.utc)


def test_window_slides_rather_than_resetting():
    limiter = InMemoryRateLimiter()
    limiter.check("k", 2, 60, now=0)
    limiter.check("k", 2, 60, now=30)

    assert limiter.check("k", 2, 60, now=59).allowed is False
    # The first request has left the window; the second still counts.
    assert limiter.check("k", 2, 60, now=61).allowed is True
    assert limiter.check("k", 2, 60, now=62).allowed is False


def test_blocked_requests_do_not_consume_budget():
    limiter = InMemoryRateLimiter()
    limiter.check("k", 1, 10, now=0)
    for t in range(1, 10):
        assert limiter.check("k", 1, 10, now=t).allowed is False
    assert limiter.check("k", 1, 10, now=10.5).allowed is True


def test_keys_are_isolated_per_action():
    limiter = InMemoryRateLimiter()
    org_key = rate_limit_key("org-manage", "ip:1.2.3.4")
    pay_key = rate_limit_key("payments", "ip:1.2.3.4")
    assert org_key != pay_key

    assert limiter.check(org_key, 1, 60, now=0).allowed is True
    assert limiter.check(org_key, 1, 60, now=1).allowed is False
    assert limiter.check(pay_key, 1, 60, now=1).allowed is True


def test_compact_drops_idle_keys():
    limiter = InMemoryRateLimiter()
    limiter.check("old", 5, 10, now=0)
    limiter.check("fresh", 5, 10, now=95)

    assert limiter.compact(now=100) == 1
    assert limiter.check("fresh", 1, 10, now=100).allowed is False


def test_retry_after_is_rounded_up_with_floor_of_one():
    reset = datetime.fromtimestamp(100.2, tz=timezone.utc)
    decision = RateLimitDecision(allowed=False, remaining=0, reset_at=reset)
    assert decision.retry_after_seconds(now=90) == 11
    assert decision.retry_after_seconds(now=100.5) == 1
    assert RateLimitDecision(allowed=True, remaining=1, reset_at=None).retry_after_seconds() is None


def test_check_limit_fails_open_when_backend_errors(caplog):
    class _Broken:
        def check(self, key, max_requests, window_seconds, *, now=None):
            raise ConnectionError("store unreachable")

    decision = check_limit("org-manage:ip:1.2.3.4", 10, 60, limiter=_Broken())

    assert decision == RateLimitDecision(allowed=True, remaining=10, reset_at=None)
    assert "failing open" in caplog.text


def test_default_rules():
    assert get_default_rate_limit("org-invite").max_requests == 10
    assert get_default_rate_limit("org-onboard").window_seconds == 3600
    assert DEFAULT_RATE_LIMITS["subscription-manage"] == RateLimitRule(20, 60)
    # Unlisted actions use RATE_LIMIT_DEFAULT_MAX_REQUESTS / RATE_LIMIT_DEFAULT_WINDOW_SECONDS.
    assert get_default_rate_limit("unknown-action") == RateLimitRule(60, 60)


def test_noop_limiter_always_allows():
    decision = NoopRateLimiter().check("k", 7, 60)
    assert decision.allowed
    assert decision.remaining == 7


@pytest.mark.parametrize(
    ("overrides", "expected"),
    [
        ({"RATE_LIMIT_ENABLED": False}, NoopRateLimiter),
        ({"RATE_LIMIT_ENABLED": True, "RATE_LIMIT_BACKEND": "memory"}, InMemoryRateLimiter),
        ({"RATE_LIMIT_ENABLED": True, "RATE_LIMIT_BACKEND": "dynamodb", "DDB_RATE_LIMIT_TABLE": ""}, NoopRateLimiter),
        (
            {"RATE_LIMIT_ENABLED": True, "RATE_LIMIT_BACKEND": "dynamodb", "DDB_RATE_LIMIT_TABLE": "t", "AWS_REGION": ""},
            NoopRateLimiter,
        ),
    ],
)
def test_build_rate_limiter_selects_backend(overrides, expected):
    limiter = rate_limiter_module._build_rate_limiter(replace(Settings(), **overrides))
    assert isinstance(limiter, expected)


def test_build_rate_limiter_uses_dynamodb_when_configured():
    from app.services.rate_limiter_dynamo import DynamoRateLimiter

    settings = replace(
        Settings(),
        RATE_LIMIT_ENABLED=True,
        RATE_LIMIT_BACKEND="dynamodb",
        DDB_RATE_LIMIT_TABLE="billing-rate-limits",
        AWS_REGION="us-east-1",
    )
    limiter = rate_limiter_module._build_rate_limiter(settings)
    assert isinstance(limiter, DynamoRateLimiter)
    assert limiter.table_name == "billing-rate-limits"
