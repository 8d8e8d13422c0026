from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from botocore.client import BaseClient

from app.services.rate_limiter import RateLimitDecision


@dataclass(frozen=True)
class DynamoRateLimiter:
    """
    Sliding-window counter backed by DynamoDB.

    Requests are counted in fixed windows (one item per key and window start). The
    decision weights the previous window by the fraction of it still inside the
    sliding interval, so a burst straddling a boundary is still counted against
    the budget. Items expire through the table's TTL on ``expires_at``.
    """

    client: BaseClient
    table_name: str
    ttl_buffer_seconds: int = 5

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

        now_int = int(now_ts)
        window_start = now_int - (now_int % window_seconds)
        previous_start = window_start - window_seconds
        # Keep each item alive while it can still be the "previous" window.
        expires_at = window_start + 2 * window_seconds + self.ttl_buffer_seconds

        current = self._increment_window(
            key=key,
            window_start=window_start,
            window_seconds=window_seconds,
            expires_at=expires_at,
        )
        previous = self._read_window(key=key, window_start=previous_start, window_seconds=window_seconds)

        elapsed_fraction = (now_ts - window_start) / window_seconds
        estimate = previous * (1.0 - elapsed_fraction) + current
        allowed = estimate <= max_requests
        remaining = max(0, int(math.floor(max_requests - estimate)))
        reset_at = datetime.fromtimestamp(window_start + window_seconds, tz=timezone.utc)
        return RateLimitDecision(allowed=allowed, remaining=remaining if allowed else 0, reset_at=reset_at)

    def _increment_window(
        self,
        *,
        key: str,
        window_start: int,
        window_seconds: int,
        expires_at: int,
    ) -> int:
        response = self.client.update_item(
            TableName=self.table_name,
            Key=self._item_key(key, window_seconds, window_start),
            UpdateExpression="SET expires_at = :expires_at ADD #count :inc",
            ExpressionAttributeNames={"#count": "count"},
            ExpressionAttributeValues={
                ":expires_at": {"N": str(expires_at)},
                ":inc": {"N": "1"},
            },
            ReturnValues="ALL_NEW",
        )
        attributes: dict[str, Any] = response.get("Attributes", {})
        return int(attributes.get("count", {}).get("N", "0"))

    def _read_window(self, *, key: str, window_start: int, window_seconds: int) -> int:
        response = self.client.get_item(
            TableName=self.table_name,
            Key=self._item_key(key, window_seconds, window_start),
            ConsistentRead=True,
        )
        item = response.get("Item") or {}
        return int(item.get("count", {}).get("N", "0"))

    @staticmethod
    def _item_key(key: str, window_seconds: int, window_start: int) -> dict[str, Any]:
        return {"pk": {"S": key}, "sk": {"S": f"window:{window_seconds}:{window_start}"}}

    def compact(self, now: float | None = None) -> int:
        # DynamoDB TTL removes expired windows.
        return 0
