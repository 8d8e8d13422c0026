import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.routes.payments import router as payments_router
from app.routes.stripe_billing import router as stripe_router
from app.routes.subscriptions import router as subscriptions_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Billing Webhooks")
logger.info(
    "Startup config: ENV=%s RATE_LIMIT_ENABLED=%s backend=%s webhook_secret_set=%s",
    settings.ENV,
    settings.RATE_LIMIT_ENABLED,
    settings.RATE_LIMIT_BACKEND,
    bool(settings.STRIPE_WEBHOOK_SECRET),
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
    message: str
    details: dict | None = None

    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        # HTTPException(detail={"message": "...", "details": {...}})
        msg = detail.get("message")
        message = msg if isinstance(msg, str) and msg else "Request failed"
        det = detail.get("details")
        details = det if isinstance(det, dict) else None
    else:
        message = str(detail) if detail is not None else "Request failed"

    payload: dict = {"error": _error_code(exc.status_code), "message": message}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            # ctx can hold the raised exception object, which is not JSON serializable.
            "details": {"errors": [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]},
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.CORS_ORIGINS),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(stripe_router)
app.include_router(subscriptions_router)
app.include_router(payments_router)

@app.get("/health")
def health_check():
    return {"status": "ok"}
