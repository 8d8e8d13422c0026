from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.stripe_event import StripeWebhookEvent

logger = logging.getLogger(__name__)


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


class EventLedgerError(Exception):
    """The ledger could not be written for an infrastructure reason."""


class EventLedger:
    """
    Idempotency ledger for provider events.

    ``claim`` inserts the ledger row and lets the unique constraint on ``event_id``
    decide the race. It only flushes: the caller commits the claim together with
    the state change it guards, so a failed transition rolls the claim back too.
    """

    def __init__(self, db: Session):
        self.db = db

    def claim(self, event_id: str, event_type: str, metadata: dict[str, Any] | None = None) -> ClaimResult:
        if not event_id:
            raise ValueError("event_id is required")
        record = StripeWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            event_metadata=dict(metadata or {}),
        )
        try:
            self.db.add(record)
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            if self._is_unique_violation(exc):
                logger.info("Stripe event %s already claimed", event_id)
                return ClaimResult.ALREADY_CLAIMED
            raise EventLedgerError(f"Failed to record Stripe event {event_id}") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise EventLedgerError(f"Failed to record Stripe event {event_id}") from exc
        return ClaimResult.CLAIMED

    def exists(self, event_id: str) -> bool:
        return (
            self.db.query(StripeWebhookEvent.id)
            .filter(StripeWebhookEvent.event_id == event_id)
            .first()
            is not None
        )

    def _is_unique_violation(self, exc: IntegrityError) -> bool:
        orig = getattr(exc, "orig", None)
        pgcode = getattr(orig, "pgcode", None)
        if pgcode == "23505":
            return True
        message = str(orig or exc)
        return (
            "uq_stripe_webhook_events_event_id" in message
            or "stripe_webhook_events_event_id_key" in message
            or "UNIQUE constraint failed: stripe_webhook_events.event_id" in message
        )
