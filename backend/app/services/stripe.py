from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import stripe
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.models.billing_info import BillingInfo
from app.models.payment_request import PaymentRequest, PaymentRequestStatus
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.billing_transitions import merge_metadata
from app.services.stripe_webhooks import StripeServiceError

logger = logging.getLogger(__name__)

SUBSCRIPTION_TRIAL_DAYS = 14


class StripeApiError(StripeServiceError):
    """The Stripe API call itself failed."""


class StripeService:
    """
    Stripe integration facade. All direct Stripe SDK calls live here.

    Responsibilities:
    - Create Checkout Sessions for payment requests and stamp the session id on the row
      (the webhook resolver matches on it later)
    - Create or reuse the Stripe customer for an org and link it in billing_info
    - Create subscription Checkout Sessions and billing portal sessions
    - Toggle cancel-at-period-end on subscriptions and mirror the flag locally
    """

    def __init__(self, db: Session, settings: Settings, stripe_client: Any | None = None):
        self.db = db
        self.settings = settings
        self.currency = settings.STRIPE_DEFAULT_CURRENCY or "usd"
        self.stripe = stripe_client or stripe
        if settings.STRIPE_SECRET_KEY:
            self.stripe.api_key = settings.STRIPE_SECRET_KEY

    # ------------------------------------------------------------------
    # Checkout creation
    # ------------------------------------------------------------------
    def create_checkout_session(
        self,
        *,
        request_id: str,
        amount_cents: int,
        currency: str | None = None,
        description: str | None = None,
        org_id: str | None = None,
        project_id: str | None = None,
    ) -> Any:
        """Create a Stripe Checkout Session for ``request_id`` and mark it pending_payment."""
        if amount_cents <= 0:
            raise StripeServiceError("Valid amount is required")
        stripe_client = self._require_sdk()
        normalized_currency = (currency or self.currency).strip().lower() or self.currency

        payment = self.db.get(PaymentRequest, request_id)
        if payment is None:
            payment = PaymentRequest(
                id=request_id,
                org_id=org_id,
                project_id=project_id,
                amount_cents=amount_cents,
                currency=normalized_currency,
                description=description,
                status=PaymentRequestStatus.PENDING.value,
                request_metadata={},
            )
            self.db.add(payment)
        elif payment.status in {PaymentRequestStatus.PAID.value, PaymentRequestStatus.REFUNDED.value}:
            raise StripeServiceError(f"Payment request {request_id} is already {payment.status}")

        metadata = {"request_id": request_id}
        if org_id:
            metadata["org_id"] = org_id
        if project_id:
            metadata["project_id"] = project_id

        logger.info(
            "Creating Stripe checkout session: request=%s org=%s amount=%s %s",
            request_id,
            org_id,
            amount_cents,
            normalized_currency,
        )
        try:
            session = stripe_client.checkout.Session.create(
                mode="payment",
                success_url=self._success_url(),
                cancel_url=self._cancel_url(),
                client_reference_id=request_id,
                line_items=[
                    {
                        "quantity": 1,
                        "price_data": {
                            "currency": normalized_currency,
                            "unit_amount": amount_cents,
                            "product_data": {"name": description or "Payment request"},
                        },
                    }
                ],
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout creation failed for request %s", request_id)
            raise StripeApiError(f"Stripe error: {exc}") from exc
        session_id = session.get("id")
        if not session_id:
            raise StripeServiceError("Stripe did not return a checkout session id")

        payment.request_metadata = merge_metadata(
            payment.request_metadata,
            {
                "provider": "stripe",
                "checkoutUrl": session.get("url"),
                "checkoutSessionId": session_id,
            },
        )
        payment.status = PaymentRequestStatus.PENDING_PAYMENT.value
        payment.updated_at = self._now()
        self.db.commit()
        return session

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------
    def ensure_customer(self, org_id: str, *, email: str | None = None, name: str | None = None) -> str:
        """Create or reuse the Stripe customer for ``org_id`` and link it to the org."""
        if not org_id:
            raise StripeServiceError("org_id is required")
        stripe_client = self._require_sdk()

        billing = self.db.get(BillingInfo, org_id)
        subscription = self._subscription_for_org(org_id)
        customer_id = (billing.stripe_customer_id if billing else None) or (
            subscription.stripe_customer_id if subscription else None
        )

        if not customer_id:
            try:
                customer = stripe_client.Customer.create(
                    email=email,
                    name=name,
                    metadata={"org_id": org_id},
                )
            except stripe.StripeError as exc:
                logger.exception("Stripe customer creation failed for org %s", org_id)
                raise StripeApiError(f"Stripe error: {exc}") from exc
            customer_id = customer.get("id")
            if not customer_id:
                raise StripeServiceError("Stripe did not return a customer id")
            logger.info("Created Stripe customer %s for org %s", customer_id, org_id)

        # The webhook resolver maps customers to orgs through billing_info.
        if billing is None:
            self.db.add(BillingInfo(org_id=org_id, stripe_customer_id=customer_id))
        elif billing.stripe_customer_id != customer_id:
            billing.stripe_customer_id = customer_id
        if subscription is not None and subscription.stripe_customer_id != customer_id:
            subscription.stripe_customer_id = customer_id
            subscription.updated_at = self._now()
        self.db.commit()
        return customer_id

    def create_subscription_checkout(
        self,
        *,
        org_id: str,
        price_id: str,
        plan_id: str | None = None,
        email: str | None = None,
        name: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> Any:
        """Start a subscription Checkout Session for ``org_id`` on ``price_id``."""
        if not price_id:
            raise StripeServiceError("price_id is required")
        customer_id = self.ensure_customer(org_id, email=email, name=name)
        stripe_client = self._require_sdk()

        metadata = {"org_id": org_id}
        if plan_id:
            metadata["plan_id"] = plan_id
        subscription_data: dict[str, Any] = {"metadata": metadata}
        # Orgs already on their trial do not get a second one.
        existing = self._subscription_for_org(org_id)
        if existing is None or existing.status != SubscriptionStatus.TRIALING.value:
            subscription_data["trial_period_days"] = SUBSCRIPTION_TRIAL_DAYS

        logger.info(
            "Creating Stripe subscription checkout: org=%s customer=%s price=%s",
            org_id,
            customer_id,
            price_id,
        )
        try:
            session = stripe_client.checkout.Session.create(
                mode="subscription",
                customer=customer_id,
                success_url=success_url or self._success_url(),
                cancel_url=cancel_url or self._cancel_url(),
                client_reference_id=org_id,
                line_items=[{"price": price_id, "quantity": 1}],
                subscription_data=subscription_data,
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe subscription checkout failed for org %s", org_id)
            raise StripeApiError(f"Stripe error: {exc}") from exc
        if not session.get("id"):
            raise StripeServiceError("Stripe did not return a checkout session id")
        return session

    def create_portal_session(self, org_id: str, *, return_url: str | None = None) -> Any:
        billing = self.db.get(BillingInfo, org_id)
        subscription = self._subscription_for_org(org_id)
        customer_id = (billing.stripe_customer_id if billing else None) or (
            subscription.stripe_customer_id if subscription else None
        )
        if not customer_id:
            raise LookupError(f"No Stripe customer for org {org_id}")

        stripe_client = self._require_sdk()
        try:
            portal = stripe_client.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url or self._portal_return_url(),
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe billing portal session failed for org %s", org_id)
            raise StripeApiError(f"Stripe error: {exc}") from exc
        logger.info("Opened billing portal for org %s (customer %s)", org_id, customer_id)
        return portal

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------
    def set_cancel_at_period_end(self, org_id: str, cancel: bool) -> Subscription:
        subscription = self._subscription_for_org(org_id)
        if subscription is None:
            raise LookupError(f"No subscription found for org {org_id}")
        if not subscription.stripe_subscription_id:
            raise StripeServiceError("No active Stripe subscription")
        if subscription.is_terminal:
            raise StripeServiceError(f"Subscription is {subscription.status}")

        stripe_client = self._require_sdk()
        try:
            stripe_client.Subscription.modify(
                subscription.stripe_subscription_id,
                cancel_at_period_end=cancel,
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe update failed for subscription %s", subscription.stripe_subscription_id)
            raise StripeApiError(f"Stripe error: {exc}") from exc

        now = self._now()
        subscription.cancel_at_period_end = cancel
        subscription.updated_at = now
        subscription.subscription_metadata = merge_metadata(
            subscription.subscription_metadata,
            {"cancelRequestedAt" if cancel else "resumedAt": now.isoformat()},
        )
        self.db.commit()
        logger.info(
            "Subscription %s for org %s cancel_at_period_end=%s",
            subscription.stripe_subscription_id,
            org_id,
            cancel,
        )
        return subscription

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _success_url(self) -> str:
        base = (self.settings.FRONTEND_BASE_URL or "http://localhost:5173").rstrip("/")
        return self.settings.STRIPE_SUCCESS_URL or f"{base}/billing/success?session_id={{CHECKOUT_SESSION_ID}}"

    def _cancel_url(self) -> str:
        base = (self.settings.FRONTEND_BASE_URL or "http://localhost:5173").rstrip("/")
        return self.settings.STRIPE_CANCEL_URL or f"{base}/billing/cancelled"

    def _portal_return_url(self) -> str:
        base = (self.settings.FRONTEND_BASE_URL or "http://localhost:5173").rstrip("/")
        return f"{base}/billing"

    def _subscription_for_org(self, org_id: str) -> Subscription | None:
        return self.db.query(Subscription).filter(Subscription.org_id == org_id).first()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _require_sdk(self):
        if not self.settings.STRIPE_SECRET_KEY:
            raise StripeServiceError("Stripe secret key is not configured")
        return self.stripe
