"""Error classification shared by every API route.

Route handlers raise the :class:`ApiError` subclasses below (or let database
and framework exceptions escape); the handlers registered in
:mod:`opshub.routes.errors` classify whatever was raised into a
:class:`StructuredError` and render the sanitized JSON envelope.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy.exc import IntegrityError, NoResultFound, SQLAlchemyError
from werkzeug.exceptions import HTTPException


class ErrorType(str, enum.Enum):
    VALIDATION = "VALIDATION_ERROR"
    AUTHENTICATION = "AUTHENTICATION_ERROR"
    AUTHORIZATION = "AUTHORIZATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT_EXCEEDED"
    DATABASE = "DATABASE_ERROR"
    EXTERNAL_API = "EXTERNAL_API_ERROR"
    INTERNAL = "INTERNAL_SERVER_ERROR"
    BUSINESS_LOGIC = "BUSINESS_LOGIC_ERROR"


class ErrorSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class StructuredError:
    type: ErrorType
    message: str
    status_code: int
    severity: ErrorSeverity
    context: dict[str, Any] = field(default_factory=dict)
    original_error: BaseException | None = None


SANITIZED_MESSAGES: dict[ErrorType, str] = {
    ErrorType.VALIDATION: "Invalid request data",
    ErrorType.AUTHENTICATION: "Authentication required",
    ErrorType.AUTHORIZATION: "Access denied",
    ErrorType.NOT_FOUND: "Resource not found",
    ErrorType.RATE_LIMIT: "Rate limit exceeded",
    ErrorType.DATABASE: "Internal server error",
    ErrorType.INTERNAL: "Internal server error",
    ErrorType.EXTERNAL_API: "Service temporarily unavailable",
    ErrorType.BUSINESS_LOGIC: "Operation not allowed",
}

STATUS_MESSAGES: dict[int, str] = {
    400: "Bad request. Please check your input and try again.",
    401: "Authentication required. Please log in and try again.",
    403: "Access denied. You don't have permission for this action.",
    404: "Resource not found. It may have been deleted or moved.",
    409: "Conflict detected. The resource may have been modified by another user.",
    422: "Validation error. Please check your input and try again.",
    429: "Too many requests. Please wait a moment and try again.",
    500: "Server error. Please try again later.",
    502: "Service temporarily unavailable. Please try again later.",
    503: "Service temporarily unavailable. Please try again later.",
    504: "Service temporarily unavailable. Please try again later.",
}


class ApiError(Exception):
    """Base class for errors that map directly onto an HTTP response."""

    error_type = ErrorType.INTERNAL
    status_code = 500
    severity = ErrorSeverity.HIGH
    default_message = "An unexpected error occurred"

    def __init__(self, message: str | None = None, *, context: Mapping[str, Any] | None = None):
        self.message = message or self.default_message
        self.context = dict(context or {})
        super().__init__(self.message)

    def to_structured(self) -> StructuredError:
        return StructuredError(
            type=self.error_type,
            message=self.message,
            status_code=self.status_code,
            severity=self.severity,
            context=dict(self.context),
            original_error=self,
        )


class ValidationError(ApiError):
    error_type = ErrorType.VALIDATION
    status_code = 400
    severity = ErrorSeverity.LOW
    default_message = "Request validation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        errors: Mapping[str, str] | Iterable[tuple[str, str]] | None = None,
    ):
        if isinstance(errors, Mapping):
            pairs = list(errors.items())
        else:
            pairs = list(errors or ())
        self.errors = [{"path": path, "message": text} for path, text in pairs]
        context = {"validationErrors": self.errors} if self.errors else None
        super().__init__(message, context=context)


class AuthenticationError(ApiError):
    error_type = ErrorType.AUTHENTICATION
    status_code = 401
    severity = ErrorSeverity.MEDIUM
    default_message = "Authentication required"


class AuthorizationError(ApiError):
    error_type = ErrorType.AUTHORIZATION
    status_code = 403
    severity = ErrorSeverity.MEDIUM
    default_message = "Insufficient permissions"


class NotFoundError(ApiError):
    error_type = ErrorType.NOT_FOUND
    status_code = 404
    severity = ErrorSeverity.LOW
    default_message = "Resource not found"


class BusinessRuleError(ApiError):
    error_type = ErrorType.BUSINESS_LOGIC
    status_code = 422
    severity = ErrorSeverity.MEDIUM
    default_message = "Operation not allowed"


class RateLimitExceeded(ApiError):
    error_type = ErrorType.RATE_LIMIT
    status_code = 429
    severity = ErrorSeverity.LOW
    default_message = "Rate limit exceeded"

    def __init__(self, message: str | None = None, *, retry_after: int = 1, limit: int | None = None):
        self.retry_after = max(1, int(retry_after))
        self.limit = limit
        super().__init__(message, context={"retryAfter": self.retry_after})


def _sqlstate(error: SQLAlchemyError) -> str | None:
    original = getattr(error, "orig", None)
    if original is None:
        return None
    # psycopg2 exposes ``pgcode``; psycopg 3 exposes ``sqlstate``.
    code = getattr(original, "pgcode", None) or getattr(original, "sqlstate", None)
    return str(code) if code else None


def classify_database_error(error: SQLAlchemyError) -> StructuredError:
    sqlstate = _sqlstate(error)

    if isinstance(error, NoResultFound):
        return StructuredError(
            type=ErrorType.NOT_FOUND,
            message="Resource not found",
            status_code=404,
            severity=ErrorSeverity.LOW,
            original_error=error,
        )

    if isinstance(error, IntegrityError) or (sqlstate and sqlstate.startswith("23")):
        return StructuredError(
            type=ErrorType.VALIDATION,
            message="Data validation failed",
            status_code=400,
            severity=ErrorSeverity.MEDIUM,
            original_error=error,
        )

    if sqlstate == "42501":
        return StructuredError(
            type=ErrorType.AUTHORIZATION,
            message="Insufficient permissions",
            status_code=403,
            severity=ErrorSeverity.HIGH,
            original_error=error,
        )

    return StructuredError(
        type=ErrorType.DATABASE,
        message="Database operation failed",
        status_code=500,
        severity=ErrorSeverity.HIGH,
        original_error=error,
    )


def classify_validation_error(error: ValidationError) -> StructuredError:
    return error.to_structured()


def classify_auth_error(message: str, is_authorization: bool = False) -> StructuredError:
    return StructuredError(
        type=ErrorType.AUTHORIZATION if is_authorization else ErrorType.AUTHENTICATION,
        message=message,
        status_code=403 if is_authorization else 401,
        severity=ErrorSeverity.MEDIUM,
    )


def classify_generic_error(error: BaseException) -> StructuredError:
    return StructuredError(
        type=ErrorType.INTERNAL,
        message="An unexpected error occurred",
        status_code=500,
        severity=ErrorSeverity.CRITICAL,
        original_error=error,
    )


def _classify_http_exception(error: HTTPException) -> StructuredError:
    status_code = error.code or 500
    if status_code == 401:
        error_type, severity = ErrorType.AUTHENTICATION, ErrorSeverity.MEDIUM
    elif status_code == 403:
        error_type, severity = ErrorType.AUTHORIZATION, ErrorSeverity.MEDIUM
    elif status_code == 404:
        error_type, severity = ErrorType.NOT_FOUND, ErrorSeverity.LOW
    elif status_code == 422:
        error_type, severity = ErrorType.BUSINESS_LOGIC, ErrorSeverity.MEDIUM
    elif status_code == 429:
        error_type, severity = ErrorType.RATE_LIMIT, ErrorSeverity.LOW
    elif status_code < 500:
        error_type, severity = ErrorType.VALIDATION, ErrorSeverity.LOW
    else:
        error_type, severity = ErrorType.INTERNAL, ErrorSeverity.HIGH

    return StructuredError(
        type=error_type,
        message=error.description or error.name,
        status_code=status_code,
        severity=severity,
        original_error=error,
    )


def classify_exception(error: BaseException) -> StructuredError:
    """Map any raised exception onto a :class:`StructuredError`."""

    if isinstance(error, ApiError):
        return error.to_structured()
    if isinstance(error, SQLAlchemyError):
        return classify_database_error(error)
    if isinstance(error, HTTPException):
        return _classify_http_exception(error)
    return classify_generic_error(error)


def sanitize_message(error: StructuredError, *, production: bool) -> str:
    if not production:
        return error.message
    return SANITIZED_MESSAGES.get(error.type, "An error occurred")


def build_error_payload(
    error: StructuredError,
    *,
    request_id: str | None = None,
    production: bool = False,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "success": False,
        "data": None,
        "error": sanitize_message(error, production=production),
        "code": error.type.value,
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }
    if request_id:
        payload["requestId"] = request_id
    if error.type is ErrorType.VALIDATION and error.context.get("validationErrors"):
        payload["details"] = {"validationErrors": error.context["validationErrors"]}
    elif error.type is ErrorType.RATE_LIMIT and "retryAfter" in error.context:
        payload["details"] = {"retryAfter": error.context["retryAfter"]}
    return payload


def format_error_message(error: Any, context: str | None = None) -> str:
    """Return a user-facing message for ``error``."""

    if isinstance(error, BaseException):
        status = getattr(error, "status_code", None)
        if not isinstance(status, int):
            status = getattr(error, "code", None)
        if isinstance(status, int) and status in STATUS_MESSAGES:
            return STATUS_MESSAGES[status]
        text = getattr(error, "message", None) or str(error)
        if text:
            return text
    elif isinstance(error, str) and error:
        return error

    if context:
        return f"Failed to {context.lower()}"
    return "An unexpected error occurred"


def is_retryable_status(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code == 429 or status_code >= 500
