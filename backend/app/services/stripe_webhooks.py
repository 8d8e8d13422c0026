from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

import stripe
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.models.payment_request import PaymentRequest
from app.models.subscription import Subscription
from app.schemas.stripe_events import (
    SUPPORTED_EVENT_TYPES,
    ChargeRefunded,
    CheckoutSessionCompleted,
    CustomerSubscriptionDeleted,
    CustomerSubscriptionUpdated,
    InvoicePaymentFailed,
    StripeEvent,
    StripeEventParseError,
    UnknownStripeEvent,
    parse_stripe_event,
)
from app.services import billing_transitions
from app.services.billing_transitions import Transition, merge_metadata
from app.services.entity_resolver import EntityResolver
from app.services.event_ledger import ClaimResult, EventLedger, EventLedgerError

logger = logging.getLogger(__name__)


class StripeServiceError(Exception):
    """Base error for Stripe service operations. Surfaces as a retryable 500."""


class StripeWebhookError(StripeServiceError):
    """Raised when a webhook payload cannot be verified or parsed."""


class StaleEntityError(StripeServiceError):
    """The row changed between read and conditional update."""


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class StripeWebhookService:
    """
    Verify, claim and apply Stripe webhook events.

    Flow: signature check on the raw bytes, JSON decode into a typed event, drop
    unsupported types, claim the event id in the ledger, run the handler, commit
    the claim and the transition together. Any failure after the claim rolls both
    back so the provider's redelivery is processed normally.
    """

    def __init__(
        self,
        db: Session,
        settings: Settings,
        *,
        stripe_client: Any | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.settings = settings
        self.stripe = stripe_client or stripe
        self.ledger = EventLedger(db)
        self.resolver = EntityResolver(db)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Authentication + decoding
    # ------------------------------------------------------------------
    def parse_event(self, payload: bytes, signature: str | None) -> StripeEvent:
        """Validate the webhook signature against the raw body, then deserialize."""
        if not self.settings.STRIPE_WEBHOOK_SECRET:
            raise StripeServiceError("Stripe webhook secret is not configured")
        if not signature:
            raise StripeWebhookError("Missing Stripe-Signature header")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise StripeWebhookError("Webhook body is not valid UTF-8") from exc
        # The signature covers the body as received; verify before any JSON decoding.
        # No timestamp tolerance: replays are absorbed by the event ledger.
        try:
            self.stripe.WebhookSignature.verify_header(
                body,
                signature,
                self.settings.STRIPE_WEBHOOK_SECRET,
                tolerance=None,
            )
        except stripe.SignatureVerificationError as exc:
            raise StripeWebhookError("Signature verification failed") from exc
        try:
            raw = json.loads(body)
        except ValueError as exc:
            raise StripeWebhookError("Webhook body is not valid JSON") from exc
        try:
            return parse_stripe_event(raw)
        except StripeEventParseError as exc:
            raise StripeWebhookError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    def process_event(self, event: StripeEvent) -> WebhookOutcome:
        if isinstance(event, UnknownStripeEvent) or event.type not in SUPPORTED_EVENT_TYPES:
            logger.info("Ignoring unsupported Stripe event type: %s", event.type)
            return WebhookOutcome.IGNORED

        try:
            claim = self.ledger.claim(
                event.id,
                event.type,
                metadata={"created": event.created, "livemode": event.livemode},
            )
        except EventLedgerError as exc:
            logger.exception("Stripe event %s could not be claimed", event.id)
            raise StripeServiceError(str(exc)) from exc

        if claim is ClaimResult.ALREADY_CLAIMED:
            logger.info("Stripe event %s already processed; skipping", event.id)
            return WebhookOutcome.DUPLICATE

        try:
            self._dispatch_event(event)
            self.db.commit()
        except StripeServiceError:
            self.db.rollback()
            logger.exception("Stripe event %s (%s) failed", event.id, event.type)
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Stripe event %s (%s) failed", event.id, event.type)
            raise StripeServiceError(f"Store failure while applying {event.type}") from exc
        except Exception as exc:
            self.db.rollback()
            logger.exception("Stripe event %s (%s) failed", event.id, event.type)
            raise StripeServiceError(f"Unexpected error while applying {event.type}") from exc

        logger.info("Successfully processed Stripe event %s (%s)", event.id, event.type)
        return WebhookOutcome.PROCESSED

    def _dispatch_event(self, event: StripeEvent) -> bool:
        now = self._clock()
        if isinstance(event, CheckoutSessionCompleted):
            return self._handle_checkout_completed(event, now)
        if isinstance(event, ChargeRefunded):
            return self._handle_charge_refunded(event, now)
        if isinstance(event, InvoicePaymentFailed):
            return self._handle_payment_failed(event, now)
        if isinstance(event, CustomerSubscriptionDeleted):
            return self._handle_subscription_deleted(event, now)
        if isinstance(event, CustomerSubscriptionUpdated):
            return self._handle_subscription_updated(event, now)
        logger.info("No handler for Stripe event type %s", event.type)
        return False

    def _handle_checkout_completed(self, event: CheckoutSessionCompleted, now: datetime) -> bool:
        session = event.data.object
        if not session.id:
            logger.warning("checkout.session.completed %s missing session id", event.id)
            return False
        payment = self.resolver.payment_for_checkout(session)
        if payment is None:
            logger.warning("Stripe event %s: no payment request for checkout session %s", event.id, session.id)
            return False
        transition = billing_transitions.checkout_completed(payment, session, event_id=event.id, now=now)
        applied = self._apply(PaymentRequest, payment, transition, metadata_attr="request_metadata")
        if applied:
            logger.info("Marked payment request %s as paid (session %s)", payment.id, session.id)
        return applied

    def _handle_charge_refunded(self, event: ChargeRefunded, now: datetime) -> bool:
        charge = event.data.object
        if not charge.id and not charge.payment_intent:
            logger.warning("charge.refunded %s missing identifiers", event.id)
            return False
        payment = self.resolver.payment_for_charge(charge)
        if payment is None:
            logger.warning(
                "Stripe event %s: no payment request for refunded charge %s (payment_intent=%s)",
                event.id,
                charge.id,
                charge.payment_intent,
            )
            return False
        transition = billing_transitions.charge_refunded(payment, charge, event_id=event.id, now=now)
        applied = self._apply(PaymentRequest, payment, transition, metadata_attr="request_metadata")
        if applied:
            logger.info("Marked payment request %s as refunded", payment.id)
        return applied

    def _handle_payment_failed(self, event: InvoicePaymentFailed, now: datetime) -> bool:
        invoice = event.data.object
        if not invoice.customer and not invoice.subscription:
            logger.warning("invoice.payment_failed %s missing customer", event.id)
            return False
        subscription = self.resolver.subscription_for(
            subscription_id=invoice.subscription,
            customer_id=invoice.customer,
        )
        if subscription is None:
            logger.warning(
                "Stripe event %s: no subscription for invoice %s (customer=%s)",
                event.id,
                invoice.id,
                invoice.customer,
            )
            return False
        transition = billing_transitions.payment_failed(subscription, invoice, event_id=event.id, now=now)
        applied = self._apply(Subscription, subscription, transition, metadata_attr="subscription_metadata")
        if applied:
            logger.info("Marked subscription for org %s as past_due", subscription.org_id)
        return applied

    def _handle_subscription_deleted(self, event: CustomerSubscriptionDeleted, now: datetime) -> bool:
        obj = event.data.object
        if not obj.id and not obj.customer:
            logger.warning("customer.subscription.deleted %s missing identifiers", event.id)
            return False
        subscription = self.resolver.subscription_for(subscription_id=obj.id, customer_id=obj.customer)
        if subscription is None:
            logger.warning("Stripe event %s: no subscription for %s (customer=%s)", event.id, obj.id, obj.customer)
            return False
        transition = billing_transitions.subscription_deleted(subscription, obj, event_id=event.id, now=now)
        applied = self._apply(Subscription, subscription, transition, metadata_attr="subscription_metadata")
        if applied:
            logger.info("Marked subscription for org %s as canceled", subscription.org_id)
        return applied

    def _handle_subscription_updated(self, event: CustomerSubscriptionUpdated, now: datetime) -> bool:
        obj = event.data.object
        if not obj.id:
            logger.warning("customer.subscription.updated %s missing id", event.id)
            return False
        subscription = self.resolver.subscription_for(subscription_id=obj.id, customer_id=obj.customer)
        if subscription is None:
            logger.warning("Stripe event %s: no subscription for %s", event.id, obj.id)
            return False
        transition = billing_transitions.subscription_updated(subscription, obj, event_id=event.id, now=now)
        applied = self._apply(Subscription, subscription, transition, metadata_attr="subscription_metadata")
        if applied:
            logger.info(
                "Updated subscription for org %s to %s",
                subscription.org_id,
                transition.status if transition else subscription.status,
            )
        return applied

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _apply(
        self,
        model: Any,
        row: Any,
        transition: Transition | None,
        *,
        metadata_attr: str,
    ) -> bool:
        """
        Write ``transition`` to ``row`` only if its status and ``updated_at`` are still
        the ones we read.
        A miss means another writer got there first; the event is retried.
        """
        if transition is None:
            return False
        values = dict(transition.values)
        values[metadata_attr] = merge_metadata(getattr(row, metadata_attr), transition.metadata_patch)
        stmt = (
            update(model)
            .where(
                model.id == row.id,
                model.status == row.status,
                model.updated_at == row.updated_at,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            raise StaleEntityError(f"{model.__tablename__} {row.id} changed concurrently")
        return True
