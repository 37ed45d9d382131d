"""
Error Handling
==============

Standardized error codes and exception handlers.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication (AUTH_001 - AUTH_010)
    AUTH_INVALID_CREDENTIALS = "AUTH_001"
    AUTH_TOKEN_EXPIRED = "AUTH_002"
    AUTH_INVALID_TOKEN = "AUTH_005"

    FORBIDDEN = "FORBIDDEN"
    USER_NOT_FOUND = "USER_NOT_FOUND"

    # Webhooks (WEBHOOK_001 - WEBHOOK_010)
    WEBHOOK_INVALID_SIGNATURE = "WEBHOOK_001"
    WEBHOOK_INVALID_PAYLOAD = "WEBHOOK_002"
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_003"
    WEBHOOK_NOT_REPLAYABLE = "WEBHOOK_004"

    # Subscription (SUB_001 - SUB_010)
    SUB_NO_ACTIVE_ENTITLEMENT = "SUB_007"

    # Feature (FEATURE_001 - FEATURE_010)
    FEATURE_LOCKED = "FEATURE_001"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"


# =============================================================================
# Domain Exceptions
# =============================================================================

class BillingError(Exception):
    """Base class for errors raised below the HTTP layer."""


class InvalidEventError(BillingError):
    """A provider payload cannot be turned into a canonical event."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class UserNotFoundError(BillingError):
    """An event references a user the account service does not know (yet)."""

    def __init__(self, user_id: int):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


# =============================================================================
# HTTP Exceptions
# =============================================================================

class AppException(HTTPException):
    """
    Base application exception with structured error response.

    Subclasses pin the HTTP status and a default code/message; callers
    override the code and message per raise site.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = ErrorCodes.INTERNAL_ERROR
    default_message = "An unexpected error occurred"

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        field: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        **extra,
    ):
        self.code = code or self.default_code
        self.field = field
        self.extra = extra

        detail = {
            "code": self.code,
            "message": message or self.default_message,
        }
        if field:
            detail["field"] = field
        detail.update(extra)

        super().__init__(status_code=status_code or self.status_code, detail=detail)


class AuthenticationError(AppException):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = ErrorCodes.AUTH_INVALID_CREDENTIALS
    default_message = "Authentication failed"


class ForbiddenError(AppException):
    """Permission/feature access errors."""

    status_code = status.HTTP_403_FORBIDDEN
    default_code = ErrorCodes.FEATURE_LOCKED
    default_message = "Access denied"


class NotFoundError(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = ErrorCodes.NOT_FOUND
    default_message = "Resource not found"


class ConflictError(AppException):
    """The resource is in a state that does not allow the operation."""

    status_code = status.HTTP_409_CONFLICT
    default_code = ErrorCodes.CONFLICT
    default_message = "Resource conflict"


class ValidationError(AppException):
    """Malformed input; the message comes first at every raise site."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = ErrorCodes.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: Optional[str] = None,
        **extra,
    ):
        super().__init__(code=code, message=message, field=field, **extra)


class ProcessingError(AppException):
    """Retry-worthy failure: the provider should deliver the event again."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = ErrorCodes.WEBHOOK_PROCESSING_FAILED
    default_message = "Error processing webhook"


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_response(status_code: int, error: dict, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error},
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """
    Render any HTTPException (``AppException`` included) in the error envelope.

    Plain FastAPI/Starlette exceptions carry a string detail and get the
    generic ``HTTP_ERROR`` code.
    """
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {"code": "HTTP_ERROR", "message": str(exc.detail)}
    return _error_response(exc.status_code, error, exc.headers)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Report the first failing field of a request body or query."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        {
            "code": ErrorCodes.VALIDATION_ERROR,
            "message": first.get("msg", "Validation error"),
            "field": ".".join(str(loc) for loc in first.get("loc", [])) or None,
        },
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {
            "code": ErrorCodes.INTERNAL_ERROR,
            "message": AppException.default_message,
        },
    )


def setup_exception_handlers(app) -> None:
    """Register the error envelope handlers on the FastAPI app."""
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
