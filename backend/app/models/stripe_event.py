from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint, func

from app.core.base import Base


class StripeWebhookEvent(Base):
    """
    Idempotency ledger. One row per Stripe event id, written in the same transaction
    as the state change it caused. Rows are never updated or deleted.
    """

    __tablename__ = "stripe_webhook_events"
    __table_args__ = (UniqueConstraint("event_id", name="uq_stripe_webhook_events_event_id"),)

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    # "metadata" is reserved on declarative classes.
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)
