"""Error taxonomy and FastAPI handlers for the DNS plan engine."""

import logging
import builtins
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from hostportal.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


# Subscription invariant guards

class AlreadySubscribedError(ConflictError):
    """Purchase of a plan the user already holds."""
    code = "already_subscribed"


class ConflictingPlanError(ConflictError):
    """A different plan is active; the caller must use the change workflow."""
    code = "conflicting_plan"

    def __init__(self, message: str, *, current_plan_ids: List[int]):
        super().__init__(
            message,
            details={"should_use_change": True, "current_plan_ids": list(current_plan_ids)},
        )
        self.current_plan_ids = list(current_plan_ids)


class AlreadyOnPlanError(ConflictError):
    code = "already_on_plan"


class SubscriptionChangedError(ConflictError):
    """The active plan changed between the precheck and the locked commit."""
    code = "subscription_changed"


class NoActiveSubscriptionError(NotFoundError):
    code = "no_active_subscription"


class InvalidDomainSelectionError(ValidationError):
    code = "invalid_domain_selection"


class AccountNotLinkedError(ValidationError):
    """User has no external token account relation."""
    code = "account_not_linked"


# Token settlement

class InsufficientFundsError(AppError):
    code = "insufficient_funds"
    status_code = 402

    def __init__(self, message: str, *, required: int, available: int):
        super().__init__(
            message,
            details={
                "required": required,
                "available": available,
                "shortfall": max(0, required - available),
            },
        )
        self.required = required
        self.available = available


class ExternalServiceError(AppError):
    code = "external_service_error"
    status_code = 502

    def __init__(self, message: str, *, transaction_id: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        payload = dict(details or {})
        if transaction_id is not None:
            payload["transaction_id"] = transaction_id
        super().__init__(message, details=payload)
        self.transaction_id = transaction_id


class ExternalBalanceUnavailableError(ExternalServiceError):
    code = "external_balance_unavailable"


class ExternalDebitFailedError(ExternalServiceError):
    code = "external_debit_failed"


class ExternalCreditFailedError(ExternalServiceError):
    code = "external_credit_failed"


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("hostportal")
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
    logger = logging.getLogger("hostportal")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("hostportal")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
