from datetime import datetime, timezone
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse

from creditledger.core.logging import get_logger
from creditledger.ledger.records import FailureKind, StoreError, StoreFailure

log = get_logger(__name__)


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class AuthenticationError(AppError):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, code="AUTH_ERROR", status_code=status.HTTP_401_UNAUTHORIZED)


class AuthorizationError(AppError):
    def __init__(self, message: str = "Admin access required"):
        super().__init__(message, code="AUTHORIZATION_ERROR", status_code=status.HTTP_403_FORBIDDEN)


class ValidationError(AppError):
    def __init__(self, message: str = "Invalid input", fields: list[dict[str, Any]] | None = None, details: dict[str, Any] | None = None):
        details = dict(details or {})
        if fields:
            details["fields"] = fields
        super().__init__(message, code="VALIDATION_ERROR", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class PaymentError(AppError):
    def __init__(self, message: str = "Payment verification failed", code: str = "PAYMENT_ERROR", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, status_code=status.HTTP_402_PAYMENT_REQUIRED, details=details)


class DuplicatePaymentError(PaymentError):
    """Payment was already applied; callers should treat it as already done."""

    def __init__(self, message: str = "This payment has already been processed", details: dict[str, Any] | None = None):
        super().__init__(message, code="DUPLICATE_PAYMENT", details=details)
        self.status_code = status.HTTP_409_CONFLICT


class ResourceNotFoundError(AppError):
    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found", code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class RateLimitedError(AppError):
    def __init__(self, retry_after: int, message: str = "Rate limit exceeded, please try again later"):
        super().__init__(
            message,
            code="RATE_LIMIT_EXCEEDED",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after


class InternalError(AppError):
    def __init__(
        self,
        message: str = "Internal server error",
        code: str = "INTERNAL_ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code=code, status_code=status_code, details=details)


def store_failure_to_error(failure: StoreFailure) -> AppError:
    """Map a storage failure onto the taxonomy; raw driver errors never reach clients."""
    if failure.is_duplicate_payment:
        return DuplicatePaymentError(details={k: v for k, v in failure.detail.items() if v is not None})
    if failure.kind is FailureKind.CONSTRAINT_VIOLATION:
        fields = [{"field": failure.constraint, "message": failure.message}] if failure.constraint else None
        return ValidationError("Invalid reference", fields=fields)
    if failure.kind is FailureKind.NOT_FOUND:
        return ResourceNotFoundError(failure.detail.get("resource", "Resource"))
    if failure.kind is FailureKind.INSUFFICIENT_CREDITS:
        return PaymentError("Insufficient credits to execute this workflow", code="INSUFFICIENT_CREDITS")
    return InternalError(
        "Storage temporarily unavailable",
        code="STORE_UNAVAILABLE",
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
    )


def _rate_limit_headers(request: Request) -> dict[str, str]:
    result = getattr(request.state, "rate_limit", None)
    return result.headers() if result is not None else {}


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body: dict[str, Any] = {
        "error": exc.message,
        "code": exc.code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if exc.details:
        body["details"] = exc.details
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    headers = _rate_limit_headers(request)
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after)
    return ORJSONResponse(status_code=exc.status_code, content=body, headers=headers)


def _log_app_error(request: Request, exc: AppError) -> None:
    fields = dict(method=request.method, path=request.url.path, code=exc.code, status_code=exc.status_code)
    if exc.status_code >= 500:
        log.error("app_error", error=exc.message, details=exc.details, **fields)
    else:
        log.warning("app_error", error=exc.message, **fields)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    _log_app_error(request, exc)
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    fields = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return await app_exception_handler(request, ValidationError("Invalid request", fields=fields))


async def store_exception_handler(request: Request, exc: StoreError) -> ORJSONResponse:
    log.warning("store_error", kind=exc.failure.kind.value, error=exc.failure.message, path=request.url.path)
    return await app_exception_handler(request, store_failure_to_error(exc.failure))


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    log.exception("unhandled_exception", method=request.method, path=request.url.path, exc_info=exc)
    return error_response(request, InternalError())
