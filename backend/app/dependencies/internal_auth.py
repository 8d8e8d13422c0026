from __future__ import annotations

import hmac
import logging

from fastapi import Depends, Header, HTTPException, status

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


def _bearer_token(authorization: str | None) -> str:
    value = (authorization or "").strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return ""


def _require_secret(authorization: str | None, secret: str, setting_name: str) -> None:
    if not secret:
        raise HTTPException(status_code=500, detail=f"Server missing {setting_name}")
    token = _bearer_token(authorization)
    if not token or not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        logger.warning("Rejected internal call with invalid bearer token (%s)", setting_name)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_cron_secret(
    authorization: str | None = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Shared-secret auth for the scheduler → sweep trigger."""
    _require_secret(authorization, settings.CRON_SECRET, "CRON_SECRET")


def require_internal_token(
    authorization: str | None = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Shared-secret auth for internal callers of the payment/subscription endpoints."""
    _require_secret(authorization, settings.INTERNAL_API_TOKEN, "INTERNAL_API_TOKEN")
