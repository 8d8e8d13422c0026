from __future__ import annotations

import json
import logging
from typing import Callable

from fastapi import HTTPException, Request, Response, status

from app.services.rate_limiter import (
    RateLimitDecision,
    check_limit,
    get_default_rate_limit,
    rate_limit_key,
)

logger = logging.getLogger(__name__)


def require_rate_limit(
    action: str,
    *,
    limit: int | None = None,
    window_seconds: int | None = None,
) -> Callable:
    """
    Dependency factory gating a mutating endpoint on the ``action`` budget.

    Allowed responses carry ``X-RateLimit-Remaining``/``X-RateLimit-Reset``; rejected
    ones are 429 with the same headers plus ``Retry-After``.
    """
    rule = get_default_rate_limit(action)
    resolved_limit = max(1, limit or rule.max_requests)
    resolved_window = max(1, window_seconds or rule.window_seconds)

    async def dependency(request: Request, response: Response) -> None:
        key = rate_limit_key(action, _resolve_identifier(request))
        decision = check_limit(key, resolved_limit, resolved_window)
        _log_decision(request=request, decision=decision, key=key, limit=resolved_limit)
        headers = _rate_limit_headers(decision)
        if decision.allowed:
            response.headers.update(headers)
            return

        retry_after = decision.retry_after_seconds() or resolved_window
        headers["Retry-After"] = str(max(1, retry_after))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "message": "Rate limit exceeded. Please try again later.",
                "details": {
                    "remaining": decision.remaining,
                    "resetAt": decision.reset_at_iso,
                    "retry_after_seconds": max(1, retry_after),
                },
            },
            headers=headers,
        )

    return dependency


def _rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    headers = {"X-RateLimit-Remaining": str(decision.remaining)}
    if decision.reset_at_iso:
        headers["X-RateLimit-Reset"] = decision.reset_at_iso
    return headers


def _resolve_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return f"ip:{first}"

    client = request.client
    host = (client.host if client else None) or "unknown"
    return f"ip:{host}"


def _log_decision(*, request: Request, decision: RateLimitDecision, key: str, limit: int) -> None:
    payload = {
        "route": request.url.path,
        "http_method": request.method,
        "limiter_key": key,
        "limit": limit,
        "remaining": decision.remaining,
        "reset_at": decision.reset_at_iso,
        "decision": "allow" if decision.allowed else "block",
    }
    logger.info(json.dumps(payload, separators=(",", ":")))
