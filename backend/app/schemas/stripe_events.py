from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


def _expandable_id(value: Any) -> Any:
    # Stripe returns either "cus_123" or an expanded object {"id": "cus_123", ...}.
    if isinstance(value, dict):
        return value.get("id")
    if value is None or value == "":
        return None
    return str(value)


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _coerce_metadata(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}


class CheckoutSessionObject(_StripeObject):
    payment_intent: str | None = None
    customer: str | None = None
    payment_status: str | None = None
    client_reference_id: str | None = None

    @field_validator("payment_intent", "customer", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> Any:
        return _expandable_id(value)


class ChargeObject(_StripeObject):
    payment_intent: str | None = None
    customer: str | None = None
    amount: int | None = None
    amount_refunded: int | None = None

    @field_validator("payment_intent", "customer", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> Any:
        return _expandable_id(value)


class InvoiceObject(_StripeObject):
    customer: str | None = None
    subscription: str | None = None
    attempt_count: int | None = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> Any:
        return _expandable_id(value)


class SubscriptionObject(_StripeObject):
    customer: str | None = None
    status: str | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool | None = None

    @field_validator("customer", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> Any:
        return _expandable_id(value)


class _EventData(BaseModel):
    model_config = ConfigDict(extra="allow")


class CheckoutSessionData(_EventData):
    object: CheckoutSessionObject


class ChargeData(_EventData):
    object: ChargeObject


class InvoiceData(_EventData):
    object: InvoiceObject


class SubscriptionData(_EventData):
    object: SubscriptionObject


class _StripeEventBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    created: int | None = None
    livemode: bool | None = None


class CheckoutSessionCompleted(_StripeEventBase):
    type: Literal["checkout.session.completed"]
    data: CheckoutSessionData


class ChargeRefunded(_StripeEventBase):
    type: Literal["charge.refunded"]
    data: ChargeData


class InvoicePaymentFailed(_StripeEventBase):
    type: Literal["invoice.payment_failed"]
    data: InvoiceData


class CustomerSubscriptionDeleted(_StripeEventBase):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionData


class CustomerSubscriptionUpdated(_StripeEventBase):
    type: Literal["customer.subscription.updated"]
    data: SubscriptionData


class UnknownStripeEvent(_StripeEventBase):
    """Any event type without a dedicated model. Keeps the raw object for forward compatibility."""

    type: str
    raw_object: dict[str, Any] = Field(default_factory=dict)


StripeEvent = Union[
    CheckoutSessionCompleted,
    ChargeRefunded,
    InvoicePaymentFailed,
    CustomerSubscriptionDeleted,
    CustomerSubscriptionUpdated,
    UnknownStripeEvent,
]

EVENT_MODELS: dict[str, type[_StripeEventBase]] = {
    "checkout.session.completed": CheckoutSessionCompleted,
    "charge.refunded": ChargeRefunded,
    "invoice.payment_failed": InvoicePaymentFailed,
    "customer.subscription.deleted": CustomerSubscriptionDeleted,
    "customer.subscription.updated": CustomerSubscriptionUpdated,
}

SUPPORTED_EVENT_TYPES: frozenset[str] = frozenset(EVENT_MODELS)


class StripeEventParseError(ValueError):
    """Raised when a verified payload is not a usable Stripe event envelope."""


def parse_stripe_event(raw: Any) -> StripeEvent:
    """
    Build the typed event for ``raw`` (the already-decoded JSON body).

    Supported types validate against their model; everything else becomes an
    ``UnknownStripeEvent`` so the caller can acknowledge it without failing.
    """
    if not isinstance(raw, dict):
        raise StripeEventParseError("Stripe event payload must be a JSON object")
    event_id = raw.get("id")
    event_type = raw.get("type")
    if not event_id or not event_type:
        raise StripeEventParseError("Stripe event missing id/type")

    model = EVENT_MODELS.get(str(event_type))
    try:
        if model is None:
            data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
            obj = data.get("object") if isinstance(data.get("object"), dict) else {}
            return UnknownStripeEvent(
                id=str(event_id),
                type=str(event_type),
                created=raw.get("created") if isinstance(raw.get("created"), int) else None,
                raw_object=obj,
            )
        return model.model_validate(raw)
    except ValidationError as exc:
        raise StripeEventParseError(f"Malformed {event_type} payload: {exc.error_count()} error(s)") from exc

