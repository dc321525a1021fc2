"""Error taxonomy and FastAPI handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from tierpay.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class UserNotFoundError(NotFoundError):
    code = "user_not_found"

    def __init__(self, user_id: str):
        super().__init__("User not found")
        self.user_id = user_id


class PlanNotFoundError(NotFoundError):
    code = "plan_not_found"

    def __init__(self, plan: str, billing_cycle: Optional[str] = None):
        detail = f"{plan}/{billing_cycle}" if billing_cycle else plan
        super().__init__(f"Subscription plan not found: {detail}")
        self.plan = plan
        self.billing_cycle = billing_cycle


class SubscriptionNotActiveError(AppError):
    code = "subscription_not_active"
    status_code = 409

    def __init__(self, user_id: str):
        super().__init__("Subscription is not active")
        self.user_id = user_id


class SubscriptionChangedError(AppError):
    """The subscription moved on while a remote call ran outside the user lock."""
    code = "subscription_changed"
    status_code = 409

    def __init__(self, user_id: str):
        super().__init__("Subscription changed while the request was in flight; retry")
        self.user_id = user_id


class ProviderError(AppError):
    """Base class for failures reported by a payment provider adapter."""
    code = "provider_error"
    status_code = 502

    def __init__(self, message: str, *, provider: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider


class ProviderRejectedError(ProviderError):
    """The provider refused the request. Not retried automatically."""
    code = "provider_rejected"
    status_code = 402


class ProviderUnavailableError(ProviderError):
    """Transport failure or timeout. Safe for the caller to retry."""
    code = "provider_unavailable"
    status_code = 503


class WebhookSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


class LedgerInconsistencyError(AppError):
    """Ledger and subscription state disagree after a failed write unit."""
    code = "ledger_inconsistency"
    status_code = 500

    def __init__(self, message: str, *, user_id: str, transaction_id: Optional[str], ledger_present: bool, fact_linked: bool):
        super().__init__(message)
        self.user_id = user_id
        self.transaction_id = transaction_id
        self.ledger_present = ledger_present
        self.fact_linked = fact_linked


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("tierpay")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("tierpay")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("tierpay")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
