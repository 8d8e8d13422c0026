from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.dependencies.rate_limit import require_rate_limit
from app.services.stripe_webhooks import StripeServiceError, StripeWebhookError, StripeWebhookService

router = APIRouter(prefix="/stripe", tags=["billing"])

logger = logging.getLogger(__name__)


@router.post(
    "/webhook",
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_rate_limit("stripe-webhook"))],
)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    # Raw bytes: the signature covers the body exactly as sent.
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    service = StripeWebhookService(db, settings)
    try:
        event = service.parse_event(payload, signature)
    except StripeWebhookError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StripeServiceError as exc:
        logger.error("Stripe webhook misconfigured: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    try:
        outcome = service.process_event(event)
    except StripeServiceError:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"received": True, "error": "Webhook processing failed"},
        )

    return {"received": True, outcome.value: True}
