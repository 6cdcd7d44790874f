import logging
import uuid
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.config import settings
from navigator.database import get_db
from navigator.exceptions import AuthenticationError, ValidationError
from navigator.services import auth_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _request_origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


def _error_redirect(origin: str, **params: str) -> RedirectResponse:
    query = urlencode(params)
    return RedirectResponse(
        url=f"{origin}{auth_service.DEFAULT_ERROR_REDIRECT}?{query}",
        status_code=302,
    )


def _set_session_cookies(response: RedirectResponse, session: dict) -> None:
    secure = settings.ENVIRONMENT != "development"
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        session["access_token"],
        max_age=int(session.get("expires_in") or 3600),
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
    )
    if session.get("refresh_token"):
        response.set_cookie(
            settings.REFRESH_COOKIE_NAME,
            session["refresh_token"],
            max_age=60 * 60 * 24 * 30,
            httponly=True,
            secure=secure,
            samesite="lax",
            path="/",
        )
    response.delete_cookie(settings.CODE_VERIFIER_COOKIE_NAME, path="/")


@router.get("/callback")
async def oauth_callback(
    request: Request,
    code: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    redirect_to: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Finish an OAuth sign-in: exchange the code, set session cookies, redirect."""
    origin = _request_origin(request)

    if error:
        logger.warning("OAuth provider returned error: %s", error)
        return _error_redirect(
            origin,
            error="oauth_error",
            message=error_description or "Authentication failed",
        )

    if not code:
        return _error_redirect(origin, error="missing_code")

    if not auth_service.MIN_CODE_LENGTH <= len(code) <= auth_service.MAX_CODE_LENGTH:
        logger.warning("SECURITY: Rejected OAuth code with length %d", len(code))
        raise ValidationError("Invalid authorization code")

    code_verifier = request.cookies.get(settings.CODE_VERIFIER_COOKIE_NAME)
    try:
        session = await auth_service.exchange_code_for_session(code, code_verifier)
    except auth_service.SessionExchangeError as e:
        logger.error("Auth callback error: %s", e)
        return _error_redirect(origin, error="auth_callback_error")

    access_token = session.get("access_token")
    if not access_token:
        raise AuthenticationError("Failed to create session")

    try:
        claims = auth_service.decode_session_token(access_token)
    except ValueError as e:
        logger.error("Identity provider issued an unusable token: %s", e)
        raise AuthenticationError("Failed to create session")

    user_meta = session.get("user") or {}
    profile = user_meta.get("user_metadata") or claims.get("user_metadata") or {}
    await auth_service.upsert_user(
        db,
        user_id=uuid.UUID(str(claims["sub"])),
        email=claims.get("email") or user_meta.get("email") or "",
        display_name=profile.get("full_name"),
    )

    target = auth_service.validate_redirect_url(redirect_to, origin)
    response = RedirectResponse(url=target, status_code=302)
    _set_session_cookies(response, session)
    logger.info("User signed in", extra={"context": {"user_id": str(claims["sub"])}})
    return response
