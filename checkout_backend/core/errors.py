"""Error taxonomy and normalized handlers for the checkout API."""

import logging
from typing import Optional
from uuid import uuid4

from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from checkout_backend.core.logging import LOGGER_NAME, get_request_id

logger = logging.getLogger(LOGGER_NAME)


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.reason = reason
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnauthenticatedError(AppError):
    code = "unauthenticated"
    status_code = 401


class PermissionDeniedError(AppError):
    code = "forbidden"
    status_code = 403


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class CouponRejectedError(AppError):
    """A coupon failed an eligibility rule; `reason` is the machine-readable code."""
    code = "coupon_rejected"
    status_code = 400

    def __init__(self, message: str, *, reason: str, coupon_code: Optional[str] = None):
        super().__init__(message, reason=reason)
        self.coupon_code = coupon_code


class CatalogMisconfiguredError(AppError):
    code = "catalog_misconfigured"
    status_code = 500


class ProviderError(AppError):
    """Payment network rejected or failed a call; status mirrors the network's."""
    code = "provider_error"
    status_code = 502


class ProviderDisabledError(AppError):
    code = "provider_disabled"
    status_code = 503


class CorrelationCorruptError(AppError, ValueError):
    code = "invalid_reference"
    status_code = 400


class FatalError(AppError):
    code = "internal_error"
    status_code = 500


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_payload(code: str, message: str, request_id: Optional[str], reason: Optional[str] = None) -> dict:
    payload = {"ok": False, "error": message, "code": code}
    if reason:
        payload["reason"] = reason
    if request_id:
        payload["request_id"] = request_id
    return payload


def _json_error(status: int, code: str, message: str, request_id: Optional[str], reason: Optional[str] = None) -> JSONResponse:
    response = JSONResponse(status_code=status, content=error_payload(code, message, request_id, reason))
    if request_id:
        response.headers["x-request-id"] = request_id
    return response


def error_response(exc: AppError, request_id: Optional[str] = None) -> JSONResponse:
    """Render a failure value; used by routes that receive a Failure, not an exception."""
    rid = exc.request_id or request_id or get_request_id()
    return _json_error(exc.status_code, exc.code, exc.message, rid, exc.reason)


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "reason": exc.reason, "status": exc.status_code},
    )
    return error_response(exc, rid)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    rid = _request_id_for(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    return _json_error(exc.status_code, code, message, rid)


async def request_validation_handler(request: Request, exc: Exception):
    # Malformed JSON and wrong field types are plain 400s here, not FastAPI's 422
    rid = _request_id_for(request)
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400})
    return _json_error(400, "validation_error", "Invalid request body", rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _json_error(500, "internal_error", "Unexpected error", rid)
