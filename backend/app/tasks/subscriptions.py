from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.celery_app import celery_app
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.services.lifecycle_sweep import SubscriptionSweep
from app.services.rate_limiter import get_rate_limiter


logger = logging.getLogger(__name__)


def _with_db_session() -> Session:
    return SessionLocal()


@celery_app.task(name="subscriptions.run_lifecycle_sweep")
def run_lifecycle_sweep(now_iso: str | None = None) -> dict[str, int]:
    """Scheduled counterpart of POST /internal/subscriptions/sweep."""
    now = datetime.fromisoformat(now_iso) if now_iso else None
    db = _with_db_session()
    try:
        result = SubscriptionSweep(db, get_settings()).run(now)
    finally:
        db.close()
    return {
        "expiredTrials": result.expired_trials,
        "pastDueSubscriptions": result.past_due_subscriptions,
        "canceledAfterGrace": result.canceled_after_grace,
    }


@celery_app.task(name="rate_limits.compact")
def compact_rate_limits() -> int:
    removed = get_rate_limiter().compact()
    if removed:
        logger.info("Compacted %s idle rate limit key(s)", removed)
    return removed
