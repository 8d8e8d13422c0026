from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.models.billing_info import BillingInfo
from app.models.payment_request import PaymentRequest
from app.models.subscription import ACTIVE_FAMILY_STATUSES, Subscription
from app.schemas.stripe_events import ChargeObject, CheckoutSessionObject

logger = logging.getLogger(__name__)


class EntityResolver:
    """
    Locate the local row a Stripe object refers to.

    Lookups run in a fixed order and the first hit wins: direct Stripe identifiers,
    then the checkout session id stamped at request creation, then the customer-level
    join through ``billing_info``. Direct ids are more specific; a customer can have
    had several subscriptions over time.
    """

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Payment requests
    # ------------------------------------------------------------------
    def payment_for_checkout(self, session: CheckoutSessionObject) -> PaymentRequest | None:
        if session.payment_intent:
            found = self._payment_by_metadata("stripePaymentIntentId", session.payment_intent)
            if found:
                return found
        if session.id:
            found = self._payment_by_metadata("checkoutSessionId", session.id)
            if found:
                return found
        request_id = session.metadata.get("request_id") or session.client_reference_id
        if request_id:
            return self.db.get(PaymentRequest, str(request_id))
        return None

    def payment_for_charge(self, charge: ChargeObject) -> PaymentRequest | None:
        if charge.payment_intent:
            found = self._payment_by_metadata("stripePaymentIntentId", charge.payment_intent)
            if found:
                return found
        if charge.id:
            found = self._payment_by_metadata("stripeChargeId", charge.id)
            if found:
                return found
        checkout_session_id = charge.metadata.get("checkout_session_id")
        if checkout_session_id:
            return self._payment_by_metadata("checkoutSessionId", str(checkout_session_id))
        return None

    def _payment_by_metadata(self, key: str, value: str) -> PaymentRequest | None:
        return (
            self.db.query(PaymentRequest)
            .filter(PaymentRequest.request_metadata[key].as_string() == value)
            .order_by(PaymentRequest.created_at.desc())
            .first()
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscription_for(
        self,
        *,
        subscription_id: str | None,
        customer_id: str | None,
    ) -> Subscription | None:
        if subscription_id:
            found = (
                self.db.query(Subscription)
                .filter(Subscription.stripe_subscription_id == subscription_id)
                .first()
            )
            if found:
                return found
        if customer_id:
            org_id = self.org_for_customer(customer_id)
            if org_id:
                return (
                    self.db.query(Subscription)
                    .filter(
                        Subscription.org_id == org_id,
                        Subscription.status.in_(sorted(ACTIVE_FAMILY_STATUSES)),
                    )
                    .first()
                )
            logger.info("No billing_info row for Stripe customer %s", customer_id)
        return None

    def org_for_customer(self, customer_id: str) -> str | None:
        row = (
            self.db.query(BillingInfo.org_id)
            .filter(BillingInfo.stripe_customer_id == customer_id)
            .first()
        )
        return row[0] if row else None
