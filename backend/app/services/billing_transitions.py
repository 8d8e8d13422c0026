"""
Pure state transitions for payment requests and subscriptions.

Each function takes the event payload and the row as currently stored and returns
a ``Transition`` (column values plus a metadata patch) or ``None`` when the row
must be left alone. Nothing here touches the database; the webhook service and
the lifecycle sweep apply the result with a status-scoped conditional update.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.models.payment_request import PaymentRequest, PaymentRequestStatus
from app.models.subscription import ACTIVE_FAMILY_STATUSES, Subscription, SubscriptionStatus
from app.schemas.stripe_events import ChargeObject, CheckoutSessionObject, InvoiceObject, SubscriptionObject

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP: dict[str, str] = {
    "active": SubscriptionStatus.ACTIVE.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "trialing": SubscriptionStatus.TRIALING.value,
    "incomplete": SubscriptionStatus.INCOMPLETE.value,
    "incomplete_expired": SubscriptionStatus.EXPIRED.value,
}


@dataclass(frozen=True)
class Transition:
    values: dict[str, Any] = field(default_factory=dict)
    metadata_patch: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str | None:
        return self.values.get("status")


def merge_metadata(current: dict[str, Any] | None, patch: dict[str, Any]) -> dict[str, Any]:
    """Read-modify-merge: keys outside ``patch`` are preserved, ``None`` values are not written."""
    merged = dict(current or {})
    for key, value in patch.items():
        if value is None:
            continue
        merged[key] = value
    return merged


def map_stripe_status(provider_status: str | None) -> str | None:
    if not provider_status:
        return None
    mapped = STRIPE_STATUS_MAP.get(provider_status)
    if mapped is None:
        logger.warning("Unknown Stripe subscription status %r; storing as-is", provider_status)
        return provider_status
    return mapped


def from_unix(ts: int | None) -> datetime | None:
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (OverflowError, ValueError, OSError):
        logger.warning("Ignoring out-of-range Stripe timestamp %r", ts)
        return None


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# ----------------------------------------------------------------------
# Payment requests
# ----------------------------------------------------------------------
def checkout_completed(
    payment: PaymentRequest,
    session: CheckoutSessionObject,
    *,
    event_id: str,
    now: datetime,
) -> Transition | None:
    if payment.status == PaymentRequestStatus.REFUNDED.value:
        logger.warning(
            "Checkout completion %s for refunded payment request %s ignored", event_id, payment.id
        )
        return None

    values: dict[str, Any] = {"status": PaymentRequestStatus.PAID.value, "updated_at": now}
    # A redelivered completion keeps the original payment time.
    if payment.status != PaymentRequestStatus.PAID.value or payment.paid_at is None:
        values["paid_at"] = now
    return Transition(
        values=values,
        metadata_patch={
            "stripeEvent": "checkout.session.completed",
            "stripeEventId": event_id,
            "stripePaymentIntentId": session.payment_intent,
        },
    )


def charge_refunded(
    payment: PaymentRequest,
    charge: ChargeObject,
    *,
    event_id: str,
    now: datetime,
) -> Transition:
    return Transition(
        values={"status": PaymentRequestStatus.REFUNDED.value, "updated_at": now},
        metadata_patch={
            "stripeEvent": "charge.refunded",
            "stripeEventId": event_id,
            "stripeChargeId": charge.id,
            "refundedAt": _iso(now),
            "refundAmount": charge.amount_refunded,
        },
    )


# ----------------------------------------------------------------------
# Subscriptions
# ----------------------------------------------------------------------
def payment_failed(
    subscription: Subscription,
    invoice: InvoiceObject,
    *,
    event_id: str,
    now: datetime,
) -> Transition | None:
    if subscription.status not in ACTIVE_FAMILY_STATUSES:
        logger.info(
            "invoice.payment_failed %s: subscription %s is %s; not moving to past_due",
            event_id,
            subscription.id,
            subscription.status,
        )
        return None
    return Transition(
        values={"status": SubscriptionStatus.PAST_DUE.value, "updated_at": now},
        metadata_patch={
            "lastPaymentFailed": _iso(now),
            "stripeEventId": event_id,
            "stripeInvoiceId": invoice.id,
        },
    )


def subscription_deleted(
    subscription: Subscription,
    obj: SubscriptionObject,
    *,
    event_id: str,
    now: datetime,
) -> Transition | None:
    if subscription.is_terminal:
        logger.info(
            "customer.subscription.deleted %s: subscription %s already %s",
            event_id,
            subscription.id,
            subscription.status,
        )
        return None
    return Transition(
        values={
            "status": SubscriptionStatus.CANCELED.value,
            "canceled_at": now,
            "updated_at": now,
        },
        metadata_patch={
            "stripeEvent": "customer.subscription.deleted",
            "stripeEventId": event_id,
            "stripeSubscriptionId": obj.id,
        },
    )


def subscription_updated(
    subscription: Subscription,
    obj: SubscriptionObject,
    *,
    event_id: str,
    now: datetime,
) -> Transition | None:
    if subscription.is_terminal:
        logger.warning(
            "customer.subscription.updated %s would change terminal subscription %s (%s -> %s); ignored",
            event_id,
            subscription.id,
            subscription.status,
            obj.status,
        )
        return None

    values: dict[str, Any] = {"updated_at": now}
    mapped = map_stripe_status(obj.status)
    if mapped:
        values["status"] = mapped
        if mapped == SubscriptionStatus.CANCELED.value:
            values["canceled_at"] = now
    period_start = from_unix(obj.current_period_start)
    period_end = from_unix(obj.current_period_end)
    if period_start is not None:
        values["current_period_start"] = period_start
    if period_end is not None:
        values["current_period_end"] = period_end
    if obj.cancel_at_period_end is not None:
        values["cancel_at_period_end"] = bool(obj.cancel_at_period_end)
    # Rows created by subscription checkout learn their Stripe ids here.
    if not subscription.stripe_subscription_id and obj.id:
        values["stripe_subscription_id"] = obj.id
    if not subscription.stripe_customer_id and obj.customer:
        values["stripe_customer_id"] = obj.customer
    return Transition(
        values=values,
        metadata_patch={
            "stripeEvent": "customer.subscription.updated",
            "stripeEventId": event_id,
            "stripeStatus": obj.status,
        },
    )
