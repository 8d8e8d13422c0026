from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import boto3

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: datetime | None

    def retry_after_seconds(self, now: float | None = None) -> int | None:
        """Whole seconds until ``reset_at``, never below 1. ``None`` without a reset time."""
        if self.reset_at is None:
            return None
        now_ts = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at.timestamp() - now_ts))

    @property
    def reset_at_iso(self) -> str | None:
        if self.reset_at is None:
            return None
        return self.reset_at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_seconds: int


DEFAULT_RATE_LIMITS: dict[str, RateLimitRule] = {
    "org-invite": RateLimitRule(10, 60),
    "org-onboard": RateLimitRule(5, 3600),
    "org-manage": RateLimitRule(20, 60),
    "payments": RateLimitRule(20, 60),
    "subscription-manage": RateLimitRule(20, 60),
    "stripe-webhook": RateLimitRule(100, 60),
}


def get_default_rate_limit(action: str) -> RateLimitRule:
    rule = DEFAULT_RATE_LIMITS.get(action)
    if rule is not None:
        return rule
    settings = get_settings()
    return RateLimitRule(settings.RATE_LIMIT_DEFAULT_MAX_REQUESTS, settings.RATE_LIMIT_DEFAULT_WINDOW_SECONDS)


def rate_limit_key(action: str, identifier: str) -> str:
    """Namespaced bucket key. Different actions never share a budget."""
    return f"{action}:{identifier}"


class RateLimiter(Protocol):
    def check(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
        *,
        now: float | None = None,
    ) -> RateLimitDecision:
        ...

    def compact(self, now: float | None = None) -> int:
        ...


class NoopRateLimiter:
    """
    Disabled limiter that always allows requests. Used when rate limiting is turned off
    or configuration is incomplete.
    """

    def check(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
        *,
        now: float | None = None,
    ) -> RateLimitDecision:
        return RateLimitDecision(allowed=True, remaining=max(0, max_requests), reset_at=None)

    def compact(self, now: float | None = None) -> int:
        return 0


class InMemoryRateLimiter:
    """
    Sliding-window log per key: a bounded deque of request timestamps.

    A request is allowed when fewer than ``max_requests`` timestamps fall inside
    ``(now - window, now]``. Old timestamps are trimmed lazily for the key being
    checked; ``compact`` drops keys that have gone idle. Process-local, so only
    suitable for a single instance (dev, tests).
    """

    def __init__(self) -> None:
        self._log: dict[str, deque[float]] = {}
        self._windows: dict[str, int] = {}
        self._lock = threading.Lock()

    def check(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
        *,
        now: float | None = None,
    ) -> RateLimitDecision:
        now_ts = time.time() if now is None else float(now)
        if max_requests <= 0 or window_seconds <= 0:
            return RateLimitDecision(allowed=True, remaining=0, reset_at=None)

        with self._lock:
            entries = self._log.get(key)
            if entries is None or entries.maxlen != max_requests:
                entries = deque(entries or (), maxlen=max_requests)
                self._log[key] = entries
            self._windows[key] = window_seconds

            horizon = now_ts - window_seconds
            while entries and entries[0] <= horizon:
                entries.popleft()

            if len(entries) >= max_requests:
                reset_at = entries[0] + window_seconds
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=datetime.fromtimestamp(reset_at, tz=timezone.utc),
                )

            entries.append(now_ts)
            reset_at = entries[0] + window_seconds
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, max_requests - len(entries)),
                reset_at=datetime.fromtimestamp(reset_at, tz=timezone.utc),
            )

    def compact(self, now: float | None = None) -> int:
        """Drop keys whose newest entry has left its window. Returns the number removed."""
        now_ts = time.time() if now is None else float(now)
        removed = 0
        with self._lock:
            for key in list(self._log):
                entries = self._log[key]
                window = self._windows.get(key, 0)
                if not entries or entries[-1] <= now_ts - window:
                    del self._log[key]
                    self._windows.pop(key, None)
                    removed += 1
        return removed


def check_limit(
    key: str,
    max_requests: int,
    window_seconds: int,
    *,
    limiter: RateLimiter | None = None,
    now: float | None = None,
) -> RateLimitDecision:
    """
    Admission decision for ``key``. Any backend failure fails open: the request is
    allowed with the full budget and no reset time.
    """
    try:
        backend = limiter or get_rate_limiter()
        return backend.check(key, max_requests, window_seconds, now=now)
    except Exception:
        logger.exception("Rate limit check failed for %s; failing open", key)
        return RateLimitDecision(allowed=True, remaining=max_requests, reset_at=None)


_limiter: RateLimiter | None = None
_lock = threading.Lock()


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is not None:
        return _limiter
    with _lock:
        if _limiter is None:
            _limiter = _build_rate_limiter(get_settings())
    return _limiter


def reset_rate_limiter() -> None:
    """
    Test helper to ensure a fresh limiter instance is constructed after settings change.
    """

    global _limiter
    with _lock:
        _limiter = None


def _build_rate_limiter(settings: Settings) -> RateLimiter:
    if not settings.RATE_LIMIT_ENABLED:
        logger.info("Rate limiting disabled via RATE_LIMIT_ENABLED=false; using NoopRateLimiter")
        return NoopRateLimiter()

    if settings.RATE_LIMIT_BACKEND == "memory":
        logger.info("Rate limiting enabled using the in-process sliding window log")
        return InMemoryRateLimiter()

    table_name = settings.DDB_RATE_LIMIT_TABLE
    region = settings.AWS_REGION
    if not table_name:
        logger.warning("RATE_LIMIT_ENABLED=true but DDB_RATE_LIMIT_TABLE is unset; disabling limiter")
        return NoopRateLimiter()
    if not region:
        logger.warning("RATE_LIMIT_ENABLED=true but AWS_REGION is unset; disabling limiter")
        return NoopRateLimiter()

    from app.services.rate_limiter_dynamo import DynamoRateLimiter

    client = boto3.client("dynamodb", region_name=region)
    logger.info("Rate limiting enabled using DynamoDB table %s in %s", table_name, region)
    return DynamoRateLimiter(client, table_name=table_name)
