from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SweepResultsOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expired_trials: int = Field(serialization_alias="expiredTrials")
    past_due_subscriptions: int = Field(serialization_alias="pastDueSubscriptions")
    canceled_after_grace: int = Field(serialization_alias="canceledAfterGrace")


class SweepOut(BaseModel):
    ok: bool = True
    timestamp: datetime
    results: SweepResultsOut


class CheckoutCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId")
    amount: float
    currency: str = "usd"
    description: str | None = None
    org_id: str | None = Field(default=None, alias="orgId")
    project_id: str | None = Field(default=None, alias="projectId")

    @field_validator("request_id")
    @staticmethod
    def _validate_request_id(value: str) -> str:
        normalized = (value or "").strip()
        if not normalized:
            raise ValueError("requestId is required")
        return normalized

    @field_validator("amount")
    @staticmethod
    def _validate_amount(value: float) -> float:
        if value <= 0:
            raise ValueError("Valid amount is required")
        return value

    @property
    def amount_cents(self) -> int:
        return int(round(self.amount * 100))


class CheckoutOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(serialization_alias="requestId")
    checkout_url: str | None = Field(default=None, serialization_alias="checkoutUrl")
    checkout_session_id: str = Field(serialization_alias="checkoutSessionId")


class SubscriptionStateOut(BaseModel):
    org_id: str
    status: str
    cancel_at_period_end: bool
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None


class SubscriptionCheckoutCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    price_id: str = Field(alias="priceId")
    plan_id: str | None = Field(default=None, alias="planId")
    email: str | None = None
    name: str | None = None
    success_url: str | None = Field(default=None, alias="successUrl")
    cancel_url: str | None = Field(default=None, alias="cancelUrl")

    @field_validator("price_id")
    @staticmethod
    def _validate_price_id(value: str) -> str:
        normalized = (value or "").strip()
        if not normalized:
            raise ValueError("priceId is required")
        return normalized


class SubscriptionCheckoutOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    checkout_url: str | None = Field(default=None, serialization_alias="checkoutUrl")
    session_id: str = Field(serialization_alias="sessionId")


class PortalCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    return_url: str | None = Field(default=None, alias="returnUrl")


class PortalOut(BaseModel):
    ok: bool = True
    url: str
