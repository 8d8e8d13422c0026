from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.dependencies.internal_auth import require_internal_token
from app.dependencies.rate_limit import require_rate_limit
from app.schemas.billing import CheckoutCreate, CheckoutOut
from app.services.stripe import StripeApiError, StripeService
from app.services.stripe_webhooks import StripeServiceError

router = APIRouter(prefix="/internal/payments", tags=["internal"], include_in_schema=False)


@router.post(
    "/checkout",
    response_model=CheckoutOut,
    dependencies=[Depends(require_internal_token), Depends(require_rate_limit("payments"))],
)
def create_checkout_session(
    payload: CheckoutCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> CheckoutOut:
    service = StripeService(db, settings)
    try:
        session = service.create_checkout_session(
            request_id=payload.request_id,
            amount_cents=payload.amount_cents,
            currency=payload.currency,
            description=payload.description,
            org_id=payload.org_id,
            project_id=payload.project_id,
        )
    except StripeApiError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except StripeServiceError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return CheckoutOut(
        request_id=payload.request_id,
        checkout_url=session.get("url"),
        checkout_session_id=session.get("id"),
    )
