import logging

import sentry_sdk
import stripe
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from navigator.config import settings
from navigator.exceptions import AppError, BillingProviderError, DatabaseError

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "An unexpected error occurred. Please try again later."


def _request_context(request: Request) -> dict:
    return {"method": request.method, "path": request.url.path}


def _app_error_response(request: Request, exc: AppError) -> JSONResponse:
    context = _request_context(request)
    if exc.status_code >= 500:
        logger.error("API error: %s", exc.message, exc_info=exc, extra={"context": context})
    else:
        logger.warning("API client error: %s", exc.message, extra={"context": context})

    if exc.is_operational:
        message = exc.message
    elif settings.is_production:
        message = GENERIC_MESSAGE
    else:
        message = exc.message

    content = {"detail": message, "code": exc.code}
    if exc.details and exc.is_operational and not settings.is_production:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


def register_error_handlers(app: FastAPI):
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return _app_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = ", ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"detail": f"Invalid request: {errors}", "code": "VALIDATION_ERROR"},
        )

    @app.exception_handler(stripe.StripeError)
    async def stripe_error_handler(request: Request, exc: stripe.StripeError):
        sentry_sdk.capture_exception(exc)
        message = getattr(exc, "user_message", None) or "Billing provider request failed"
        return _app_error_response(request, BillingProviderError(message))

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        sentry_sdk.capture_exception(exc)
        logger.error("Database error", exc_info=exc, extra={"context": _request_context(request)})
        return _app_error_response(request, DatabaseError())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        sentry_sdk.capture_exception(exc)
        logger.error(
            "Unhandled error", exc_info=exc, extra={"context": _request_context(request)}
        )
        detail = GENERIC_MESSAGE if settings.is_production else str(exc) or GENERIC_MESSAGE
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "code": "INTERNAL_ERROR"},
        )
