"""
Application error hierarchy.

Every client-facing failure is raised as an ``AppError`` subclass and turned
into a JSON response by the handlers in ``navigator.middleware.error_handler``.
Operational errors carry messages that are safe to show to clients;
non-operational ones are logged in full and surfaced only as a generic message.
"""
from typing import Any

from fastapi import status


class AppError(Exception):
    """Base error with a stable error code and HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        is_operational: bool = True,
        headers: dict[str, str] | None = None,
    ):
        self.message = message or self.default_message
        self.details = details
        self.is_operational = is_operational
        self.headers = headers
        super().__init__(self.message)


class AuthenticationError(AppError):
    code = "AUTHENTICATION_REQUIRED"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class AuthorizationError(AppError):
    code = "AUTHORIZATION_FAILED"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You do not have permission to access this resource"


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class RateLimitError(AppError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests"

    def __init__(self, message: str | None = None, retry_after: int = 60):
        super().__init__(message, headers={"Retry-After": str(retry_after)})


class ServiceUnavailableError(AppError):
    code = "SERVICE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service temporarily unavailable"


class CorsViolationError(AppError):
    code = "CORS_VIOLATION"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "CORS policy violation: Origin not allowed"


class BillingProviderError(AppError):
    code = "STRIPE_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Billing provider request failed"


class DatabaseError(AppError):
    code = "DATABASE_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Database operation failed"

    def __init__(self, message: str | None = None):
        super().__init__(message, is_operational=False)
