from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, func

from app.core.base import Base


class PaymentRequestStatus(str, Enum):
    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentRequest(Base):
    __tablename__ = "payment_requests"

    # Caller-supplied correlation id.
    id = Column(String(255), primary_key=True)
    org_id = Column(String(64), nullable=True, index=True)
    project_id = Column(String(64), nullable=True)
    amount_cents = Column(Integer, nullable=False, server_default="0", default=0)
    currency = Column(String(10), nullable=False, server_default="usd", default="usd")
    description = Column(Text, nullable=True)
    status = Column(
        String(20),
        nullable=False,
        server_default=PaymentRequestStatus.PENDING.value,
        default=PaymentRequestStatus.PENDING.value,
    )
    # Provider correlation keys: checkoutSessionId, stripePaymentIntentId, stripeChargeId, ...
    request_metadata = Column("metadata", JSON, nullable=False, default=dict)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(timezone.utc),
    )
