"""
Error Handling
==============

Standardized error codes, domain exceptions and exception handlers.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication
    AUTH_INVALID_TOKEN = "AUTH_001"
    AUTH_NOT_AUTHENTICATED = "AUTH_002"
    AUTH_INVALID_INTERNAL_KEY = "AUTH_003"

    # Subscription / verification
    SUB_VERIFICATION_FAILED = "SUB_001"
    SUB_UNKNOWN_PRODUCT = "SUB_002"
    SUB_INVALID_ACTION = "SUB_003"
    SUB_INVALID_PLATFORM = "SUB_004"
    SUB_MISSING_PROOF = "SUB_005"
    SUB_PROFILE_NOT_FOUND = "SUB_006"
    SUB_CONFLICT = "SUB_007"

    # Webhooks
    WEBHOOK_INVALID_ENVELOPE = "WEBHOOK_001"
    WEBHOOK_UNAUTHORIZED = "WEBHOOK_002"

    # Campaigns
    CAMPAIGN_NOT_FOUND = "CAMPAIGN_001"

    # Configuration / providers
    CONFIGURATION_ERROR = "CONFIG_ERROR"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# Domain Exceptions
# =============================================================================

class EntitlementError(Exception):
    """Base class for non-HTTP domain errors."""


class ConfigurationError(EntitlementError):
    """A required secret or key is missing or malformed. Never retried."""


class ProviderError(EntitlementError):
    """A storefront, token endpoint or messaging call failed transiently."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UnknownProductError(EntitlementError):
    """The product id has no entry in the product catalog."""

    def __init__(self, product_id: Optional[str]):
        super().__init__(f"Unknown product ID: {product_id}")
        self.product_id = product_id


class ProfileNotFoundError(EntitlementError):
    """No profile row exists for the user."""


class ConcurrentUpdateError(EntitlementError):
    """The profile kept changing underneath a reconciliation."""


class EnvelopeDecodeError(EntitlementError):
    """The webhook envelope or its inner payload could not be decoded."""


class CampaignNotFoundError(EntitlementError):
    """No campaign exists with the requested id."""


# =============================================================================
# HTTP Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)


class AuthenticationError(AppException):
    """Authentication-related errors."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_INVALID_TOKEN,
        message: str = "Authentication failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


class ForbiddenError(AppException):
    """Permission errors."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_INVALID_INTERNAL_KEY,
        message: str = "Permission denied",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=message,
            **extra,
        )


class NotFoundError(AppException):
    """Resource not found errors."""

    def __init__(
        self,
        code: str = ErrorCodes.NOT_FOUND,
        message: str = "Resource not found",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=message,
            **extra,
        )


class ConflictError(AppException):
    """Resource conflict errors."""

    def __init__(
        self,
        code: str,
        message: str,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code=code,
            message=message,
            **extra,
        )


class ValidationError(AppException):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: str = ErrorCodes.VALIDATION_ERROR,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            field=field,
            **extra,
        )


class ServiceUnavailableError(AppException):
    """External service unavailable errors."""

    def __init__(
        self,
        code: str = ErrorCodes.PROVIDER_UNAVAILABLE,
        message: str = "Service temporarily unavailable",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
        headers=getattr(exc, "headers", None),
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request validation errors."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": message,
                "field": field,
            },
        },
    )


async def configuration_exception_handler(
    request: Request,
    exc: ConfigurationError,
) -> JSONResponse:
    """Handler for missing or malformed configuration."""
    logger.error("Configuration error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.CONFIGURATION_ERROR,
                "message": str(exc),
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled error on %s: %s", request.url.path, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from entitlement_core.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ConfigurationError, configuration_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
