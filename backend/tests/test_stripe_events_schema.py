from __future__ import annotations

import pytest

from app.schemas.stripe_events import (
    ChargeRefunded,
    CheckoutSessionCompleted,
    StripeEventParseError,
    UnknownStripeEvent,
    parse_stripe_event,
)


def test_supported_event_parses_to_typed_model():
    event = parse_stripe_event(
        {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "created": 1700000000,
            "data": {"object": {"id": "cs_1", "payment_intent": {"id": "pi_1"}, "metadata": None}},
        }
    )
    assert isinstance(event, CheckoutSessionCompleted)
    assert event.data.object.payment_intent == "pi_1"
    assert event.data.object.metadata == {}


def test_charge_event_keeps_amounts():
    event = parse_stripe_event(
        {
            "id": "evt_2",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "payment_intent": "pi_1", "amount": 5000, "amount_refunded": 5000}},
        }
    )
    assert isinstance(event, ChargeRefunded)
    assert event.data.object.amount_refunded == 5000


def test_unknown_type_is_kept_with_raw_object():
    event = parse_stripe_event({"id": "evt_3", "type": "payout.paid", "data": {"object": {"id": "po_1"}}})
    assert isinstance(event, UnknownStripeEvent)
    assert event.raw_object == {"id": "po_1"}


@pytest.mark.parametrize(
    "raw",
    [
        [],
        {"type": "charge.refunded"},
        {"id": "evt_4"},
        {"id": "evt_5", "type": "charge.refunded"},
        {"id": "evt_6", "type": "charge.refunded", "data": {"object": "not-an-object"}},
    ],
)
def test_malformed_payloads_raise(raw):
    with pytest.raises(StripeEventParseError):
        parse_stripe_event(raw)
