from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.dependencies.internal_auth import require_cron_secret, require_internal_token
from app.dependencies.rate_limit import require_rate_limit
from app.schemas.billing import (
    PortalCreate,
    PortalOut,
    SubscriptionCheckoutCreate,
    SubscriptionCheckoutOut,
    SubscriptionStateOut,
    SweepOut,
    SweepResultsOut,
)
from app.services.lifecycle_sweep import SubscriptionSweep
from app.services.stripe import StripeApiError, StripeService
from app.services.stripe_webhooks import StripeServiceError

router = APIRouter(prefix="/internal/subscriptions", tags=["internal"], include_in_schema=False)

logger = logging.getLogger(__name__)


@router.post("/sweep", response_model=SweepOut, dependencies=[Depends(require_cron_secret)])
def run_subscription_sweep(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> SweepOut:
    now = datetime.now(timezone.utc)
    try:
        result = SubscriptionSweep(db, settings).run(now)
    except SQLAlchemyError as exc:
        logger.error("Subscription sweep failed: %s", exc)
        raise HTTPException(status_code=500, detail="Subscription sweep failed") from exc
    return SweepOut(
        ok=True,
        timestamp=now,
        results=SweepResultsOut(
            expired_trials=result.expired_trials,
            past_due_subscriptions=result.past_due_subscriptions,
            canceled_after_grace=result.canceled_after_grace,
        ),
    )


def _set_cancel_flag(org_id: str, cancel: bool, db: Session, settings: Settings) -> SubscriptionStateOut:
    service = StripeService(db, settings)
    try:
        subscription = service.set_cancel_at_period_end(org_id, cancel)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StripeApiError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except StripeServiceError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SubscriptionStateOut(
        org_id=subscription.org_id,
        status=subscription.status,
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        current_period_end=subscription.current_period_end,
        canceled_at=subscription.canceled_at,
    )


@router.post(
    "/{org_id}/cancel",
    response_model=SubscriptionStateOut,
    dependencies=[Depends(require_internal_token), Depends(require_rate_limit("subscription-manage"))],
)
def cancel_subscription(
    org_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> SubscriptionStateOut:
    return _set_cancel_flag(org_id, True, db, settings)


@router.post(
    "/{org_id}/resume",
    response_model=SubscriptionStateOut,
    dependencies=[Depends(require_internal_token), Depends(require_rate_limit("subscription-manage"))],
)
def resume_subscription(
    org_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> SubscriptionStateOut:
    return _set_cancel_flag(org_id, False, db, settings)


@router.post(
    "/{org_id}/checkout",
    response_model=SubscriptionCheckoutOut,
    dependencies=[Depends(require_internal_token), Depends(require_rate_limit("subscription-manage"))],
)
def create_subscription_checkout(
    org_id: str,
    payload: SubscriptionCheckoutCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> SubscriptionCheckoutOut:
    service = StripeService(db, settings)
    try:
        session = service.create_subscription_checkout(
            org_id=org_id,
            price_id=payload.price_id,
            plan_id=payload.plan_id,
            email=payload.email,
            name=payload.name,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    except StripeApiError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except StripeServiceError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SubscriptionCheckoutOut(checkout_url=session.get("url"), session_id=session.get("id"))


@router.post(
    "/{org_id}/portal",
    response_model=PortalOut,
    dependencies=[Depends(require_internal_token), Depends(require_rate_limit("subscription-manage"))],
)
def create_portal_session(
    org_id: str,
    payload: PortalCreate | None = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> PortalOut:
    service = StripeService(db, settings)
    try:
        portal = service.create_portal_session(org_id, return_url=payload.return_url if payload else None)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StripeApiError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except StripeServiceError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return PortalOut(url=portal.get("url"))
