from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.billing_transitions import merge_metadata

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    expired_trials: int
    past_due_subscriptions: int
    canceled_after_grace: int

    @property
    def total(self) -> int:
        return self.expired_trials + self.past_due_subscriptions + self.canceled_after_grace


class SubscriptionSweep:
    """
    Time-driven subscription transitions.

    Each step selects rows by current status and an absolute timestamp, then updates
    them one by one with the same predicate in the WHERE clause. Re-running at the
    same ``now`` changes nothing, a late run still converges, and a row that a
    webhook cancels in between is skipped because ``canceled`` is never a source
    status here.
    """

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.grace_period = timedelta(days=max(0, settings.SUBSCRIPTION_GRACE_PERIOD_DAYS))

    def run(self, now: datetime | None = None) -> SweepResult:
        now = now or datetime.now(timezone.utc)
        try:
            expired = self._transition(
                action="trial_expired",
                source=SubscriptionStatus.TRIALING,
                target=SubscriptionStatus.EXPIRED,
                deadline_column=Subscription.trial_end,
                cutoff=now,
                now=now,
            )
            past_due = self._transition(
                action="period_ended",
                source=SubscriptionStatus.ACTIVE,
                target=SubscriptionStatus.PAST_DUE,
                deadline_column=Subscription.current_period_end,
                cutoff=now,
                now=now,
            )
            canceled = self._transition(
                action="grace_period_elapsed",
                source=SubscriptionStatus.PAST_DUE,
                target=SubscriptionStatus.CANCELED,
                deadline_column=Subscription.current_period_end,
                cutoff=now - self.grace_period,
                now=now,
                extra_values={"canceled_at": now},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Subscription sweep at %s failed", now.isoformat())
            raise

        result = SweepResult(
            expired_trials=expired,
            past_due_subscriptions=past_due,
            canceled_after_grace=canceled,
        )
        payload = {"event": "subscription_sweep", "run_at": now.isoformat(), **asdict(result)}
        logger.info(json.dumps(payload, separators=(",", ":")))
        return result

    def _transition(
        self,
        *,
        action: str,
        source: SubscriptionStatus,
        target: SubscriptionStatus,
        deadline_column: Any,
        cutoff: datetime,
        now: datetime,
        extra_values: dict[str, Any] | None = None,
    ) -> int:
        candidates = (
            self.db.query(Subscription.id, Subscription.subscription_metadata)
            .filter(
                Subscription.status == source.value,
                deadline_column.isnot(None),
                deadline_column < cutoff,
            )
            .all()
        )
        changed = 0
        for sub_id, metadata in candidates:
            values: dict[str, Any] = {
                "status": target.value,
                "updated_at": now,
                "subscription_metadata": merge_metadata(
                    metadata,
                    {"sweepRunAt": now.isoformat(), "sweepAction": action},
                ),
            }
            if extra_values:
                values.update(extra_values)
            stmt = (
                update(Subscription)
                .where(
                    Subscription.id == sub_id,
                    Subscription.status == source.value,
                    deadline_column < cutoff,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            changed += self.db.execute(stmt).rowcount or 0
        if changed:
            logger.info("Sweep %s: %s subscription(s) %s -> %s", action, changed, source.value, target.value)
        return changed
