"""Error taxonomy and normalized HTTP error handlers."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.requests import Request

from cloudmedia.core.logging import get_request_id


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
        self.details = details

    def public_message(self) -> str:
        return self.message


class UnauthenticatedError(AppError):
    code = "unauthenticated"
    status_code = 401


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class InvalidPlanError(ValidationError):
    code = "invalid_plan"

    def __init__(self, plan_id: Any):
        super().__init__(f"Invalid plan: {plan_id!r}", details={"plan_id": plan_id})
        self.plan_id = plan_id


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ForbiddenError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class LimitReachedError(AppError):
    """Entitlement denial. Carries the counts so clients can render 'X of Y used'."""
    code = "limit_reached"
    status_code = 403

    def __init__(self, resource: str, limit: int, current: int, plan: Optional[str] = None):
        super().__init__(
            f"Maximum number of {resource.replace('_', ' ')} ({limit}) reached for your plan",
            details={"resource": resource, "limit": limit, "current": current, "plan": plan},
        )
        self.resource = resource
        self.limit = limit
        self.current = current
        self.plan = plan


class CreditsExhaustedError(AppError):
    code = "credits_exhausted"
    status_code = 402

    def __init__(self, credit_type: str, resets_at=None, remaining: Optional[int] = None):
        kind = "Video" if credit_type == "video_credits" else "Image"
        super().__init__(
            f"{kind} processing credits exhausted for this billing period",
            details={
                "credit_type": credit_type,
                "remaining": remaining,
                "resets_at": resets_at.isoformat() if resets_at is not None else None,
            },
        )
        self.credit_type = credit_type
        self.resets_at = resets_at
        self.remaining = remaining


class ConfigurationError(AppError):
    """Programming or configuration fault (unknown plan/resource kind). Never shown verbatim."""
    code = "configuration_error"
    status_code = 500

    def public_message(self) -> str:
        return "Internal configuration error"


class ExternalServiceError(AppError):
    """Encode or payment collaborator failure. Local state is left unchanged."""
    code = "external_service_failure"
    status_code = 502

    def __init__(self, service: str, message: str, *, retryable: bool = True):
        super().__init__(message, details={"service": service, "retryable": retryable})
        self.service = service
        self.retryable = retryable

    def public_message(self) -> str:
        return "An upstream service failed. Please try again."


class WebhookSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    message = exc.public_message()
    # Internal faults keep their details in the logs only
    if isinstance(exc, ExternalServiceError):
        details = {"retryable": exc.retryable}
    elif exc.status_code >= 500:
        details = None
    else:
        details = exc.details
    payload = _error_payload(exc.code, message, rid, details)
    logger = logging.getLogger("cloudmedia")
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
    if exc.status_code == 404:
        code = "not_found"
    elif exc.status_code == 401:
        code = "unauthenticated"
    else:
        code = "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("cloudmedia")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    payload = _error_payload("validation_error", "Request validation failed", rid, {"errors": exc.errors()})
    response = JSONResponse(status_code=422, content=jsonable_encoder(payload))
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("cloudmedia")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
