from __future__ import annotations

import json
from dataclasses import replace

import pytest

from app.services.stripe_webhooks import StripeServiceError, StripeWebhookError, StripeWebhookService

def _body() -> bytes:
    return json.dumps(
        {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {"id": "cs_1"}}}
    ).encode("utf-8")


@pytest.fixture()
def service(db_session, test_settings):
    return StripeWebhookService(db_session, test_settings)


def test_valid_signature_verifies(service, sign_payload):
    body = _body()
    event = service.parse_event(body, sign_payload(body))
    assert event.id == "evt_1"
    assert event.type == "checkout.session.completed"


def test_old_timestamp_still_verifies(service, sign_payload):
    # No tolerance window: redelivery days later is deduplicated by the ledger.
    body = _body()
    event = service.parse_event(body, sign_payload(body, timestamp=1))
    assert event.id == "evt_1"


def test_tampered_body_fails(service, sign_payload):
    body = _body()
    header = sign_payload(body)
    with pytest.raises(StripeWebhookError, match="Signature verification failed"):
        service.parse_event(body + b" ", header)


def test_reserialized_json_fails(service, sign_payload):
    # Same JSON value, different bytes: the digest covers the raw body.
    body = b'{"id": "evt_1",  "type": "checkout.session.completed", "data": {"object": {}}}'
    header = sign_payload(body)
    reserialized = json.dumps(json.loads(body)).encode("utf-8")
    assert reserialized != body
    with pytest.raises(StripeWebhookError):
        service.parse_event(reserialized, header)


def test_wrong_secret_fails(service, sign_payload):
    body = _body()
    with pytest.raises(StripeWebhookError):
        service.parse_event(body, sign_payload(body, secret="whsec_other"))


@pytest.mark.parametrize("position", [0, 17, 63])
def test_single_character_change_in_v1_fails(service, sign_payload, position):
    body = _body()
    header = sign_payload(body)
    prefix, digest = header.split("v1=")
    flipped = "0" if digest[position] != "0" else "1"
    mutated = prefix + "v1=" + digest[:position] + flipped + digest[position + 1 :]
    assert mutated != header

    with pytest.raises(StripeWebhookError):
        service.parse_event(body, mutated)


def test_any_matching_v1_is_accepted(service, sign_payload):
    body = _body()
    good = sign_payload(body).split("v1=")[1]
    header = f"t=1700000000,v1={'0' * 64},v1={good}"
    assert service.parse_event(body, header).id == "evt_1"


@pytest.mark.parametrize(
    "header",
    ["t=1700000000", "garbage", "t=notanumber,v1=abc", "v0=abc"],
)
def test_malformed_header_fails(service, header):
    with pytest.raises(StripeWebhookError):
        service.parse_event(_body(), header)


def test_header_without_timestamp_fails(service, sign_payload):
    body = _body()
    v1_only = sign_payload(body).split(",")[1]
    with pytest.raises(StripeWebhookError):
        service.parse_event(body, v1_only)


@pytest.mark.parametrize("header", ["", None])
def test_missing_header_fails(service, header):
    with pytest.raises(StripeWebhookError, match="Missing Stripe-Signature header"):
        service.parse_event(_body(), header)


def test_missing_secret_is_configuration_error(db_session, test_settings, sign_payload):
    service = StripeWebhookService(db_session, replace(test_settings, STRIPE_WEBHOOK_SECRET=""))
    body = _body()
    with pytest.raises(StripeServiceError) as excinfo:
        service.parse_event(body, sign_payload(body, secret=""))
    assert not isinstance(excinfo.value, StripeWebhookError)


def test_signed_non_json_body_fails_after_verification(service, sign_payload):
    body = b"not json"
    with pytest.raises(StripeWebhookError, match="not valid JSON"):
        service.parse_event(body, sign_payload(body))


def test_non_utf8_body_fails(service, sign_payload):
    body = b"\xff\xfe{}"
    with pytest.raises(StripeWebhookError, match="UTF-8"):
        service.parse_event(body, sign_payload(body))
