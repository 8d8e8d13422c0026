from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.models.payment_request import PaymentRequest
from app.models.subscription import Subscription
from app.schemas.stripe_events import ChargeObject, CheckoutSessionObject, InvoiceObject, SubscriptionObject
from app.services import billing_transitions as bt

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _payment(status: str, **kwargs) -> PaymentRequest:
    return PaymentRequest(id="pr_1", status=status, request_metadata=kwargs.pop("metadata", {}), **kwargs)


def _subscription(status: str) -> Subscription:
    return Subscription(id=1, org_id="org_1", status=status, subscription_metadata={})


def test_checkout_completed_marks_paid():
    transition = bt.checkout_completed(
        _payment("pending_payment"),
        CheckoutSessionObject(id="cs_1", payment_intent="pi_1"),
        event_id="evt_1",
        now=NOW,
    )
    assert transition.status == "paid"
    assert transition.values["paid_at"] == NOW
    assert transition.metadata_patch == {
        "stripeEvent": "checkout.session.completed",
        "stripeEventId": "evt_1",
        "stripePaymentIntentId": "pi_1",
    }


def test_checkout_completed_on_paid_row_keeps_paid_at():
    earlier = datetime(2024, 2, 1, tzinfo=timezone.utc)
    transition = bt.checkout_completed(
        _payment("paid", paid_at=earlier),
        CheckoutSessionObject(id="cs_1"),
        event_id="evt_2",
        now=NOW,
    )
    assert transition.status == "paid"
    assert "paid_at" not in transition.values


def test_checkout_completed_never_undoes_refund():
    transition = bt.checkout_completed(
        _payment("refunded"),
        CheckoutSessionObject(id="cs_1"),
        event_id="evt_3",
        now=NOW,
    )
    assert transition is None


def test_charge_refunded_records_refund_details():
    transition = bt.charge_refunded(
        _payment("paid"),
        ChargeObject(id="ch_1", payment_intent="pi_1", amount_refunded=5000),
        event_id="evt_r",
        now=NOW,
    )
    assert transition.status == "refunded"
    assert transition.metadata_patch["stripeChargeId"] == "ch_1"
    assert transition.metadata_patch["refundAmount"] == 5000
    assert transition.metadata_patch["refundedAt"] == "2024-03-01T12:00:00Z"


@pytest.mark.parametrize("status", ["trialing", "active", "past_due"])
def test_payment_failed_moves_active_family_to_past_due(status):
    transition = bt.payment_failed(
        _subscription(status),
        InvoiceObject(id="in_1", customer="cus_1"),
        event_id="evt_f",
        now=NOW,
    )
    assert transition.status == "past_due"
    assert transition.metadata_patch["stripeInvoiceId"] == "in_1"
    assert transition.metadata_patch["lastPaymentFailed"] == "2024-03-01T12:00:00Z"


@pytest.mark.parametrize("status", ["canceled", "expired", "incomplete"])
def test_payment_failed_leaves_other_statuses(status):
    assert bt.payment_failed(_subscription(status), InvoiceObject(id="in_1"), event_id="e", now=NOW) is None


def test_subscription_deleted_cancels_and_is_monotonic():
    transition = bt.subscription_deleted(_subscription("active"), SubscriptionObject(id="sub_1"), event_id="e", now=NOW)
    assert transition.status == "canceled"
    assert transition.values["canceled_at"] == NOW

    assert bt.subscription_deleted(_subscription("canceled"), SubscriptionObject(id="sub_1"), event_id="e", now=NOW) is None


def test_subscription_updated_maps_status_and_periods():
    obj = SubscriptionObject(
        id="sub_1",
        status="unpaid",
        current_period_start=1704067200,
        current_period_end=1706745600,
        cancel_at_period_end=True,
    )
    transition = bt.subscription_updated(_subscription("active"), obj, event_id="e", now=NOW)
    assert transition.status == "past_due"
    assert transition.values["current_period_start"] == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert transition.values["current_period_end"] == datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert transition.values["cancel_at_period_end"] is True
    assert transition.metadata_patch["stripeStatus"] == "unpaid"


def test_subscription_updated_to_canceled_stamps_canceled_at():
    transition = bt.subscription_updated(
        _subscription("active"), SubscriptionObject(id="sub_1", status="canceled"), event_id="e", now=NOW
    )
    assert transition.status == "canceled"
    assert transition.values["canceled_at"] == NOW


def test_subscription_updated_ignored_for_terminal_rows():
    transition = bt.subscription_updated(
        _subscription("canceled"), SubscriptionObject(id="sub_1", status="active"), event_id="e", now=NOW
    )
    assert transition is None


def test_status_map_passes_unknown_status_through():
    assert bt.map_stripe_status("incomplete_expired") == "expired"
    assert bt.map_stripe_status("paused") == "paused"
    assert bt.map_stripe_status(None) is None


def test_merge_metadata_preserves_existing_keys_and_skips_none():
    merged = bt.merge_metadata({"checkoutSessionId": "cs_1", "keep": 1}, {"stripeEventId": "evt", "gone": None})
    assert merged == {"checkoutSessionId": "cs_1", "keep": 1, "stripeEventId": "evt"}


@pytest.mark.parametrize("ts", [10**15, -(10**15)])
def test_from_unix_out_of_range_is_ignored(ts):
    assert bt.from_unix(ts) is None


def test_subscription_updated_skips_out_of_range_period():
    obj = SubscriptionObject(id="sub_1", status="active", current_period_start=1704067200, current_period_end=10**15)
    transition = bt.subscription_updated(_subscription("trialing"), obj, event_id="e", now=NOW)
    assert transition.status == "active"
    assert transition.values["current_period_start"] == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert "current_period_end" not in transition.values


def test_subscription_updated_links_missing_stripe_ids():
    obj = SubscriptionObject(id="sub_new", customer="cus_new", status="trialing")
    transition = bt.subscription_updated(_subscription("trialing"), obj, event_id="e", now=NOW)
    assert transition.values["stripe_subscription_id"] == "sub_new"
    assert transition.values["stripe_customer_id"] == "cus_new"


def test_subscription_updated_keeps_existing_stripe_ids():
    subscription = _subscription("active")
    subscription.stripe_subscription_id = "sub_1"
    subscription.stripe_customer_id = "cus_1"
    obj = SubscriptionObject(id="sub_1", customer="cus_other", status="active")
    transition = bt.subscription_updated(subscription, obj, event_id="e", now=NOW)
    assert "stripe_subscription_id" not in transition.values
    assert "stripe_customer_id" not in transition.values
