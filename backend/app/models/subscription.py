from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, func

from app.core.base import Base


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"


ACTIVE_FAMILY_STATUSES = frozenset(
    {
        SubscriptionStatus.TRIALING.value,
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.PAST_DUE.value,
    }
)

# No automatic transition leaves these.
TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED.value, SubscriptionStatus.EXPIRED.value})


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(String(64), unique=True, nullable=False, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    plan = Column(String(50), nullable=True)
    status = Column(
        String(20),
        nullable=False,
        server_default=SubscriptionStatus.TRIALING.value,
        default=SubscriptionStatus.TRIALING.value,
        index=True,
    )
    trial_end = Column(DateTime(timezone=True), nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, server_default="false", default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    subscription_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
