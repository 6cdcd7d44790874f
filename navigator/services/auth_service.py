import logging
import uuid
from datetime import datetime, timezone
from urllib.parse import urlsplit

import httpx
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.config import settings
from navigator.models.user import User

logger = logging.getLogger(__name__)

# Paths a successful sign-in may redirect to (exact match or sub-path)
ALLOWED_REDIRECT_PATHS = ("/", "/dashboard", "/subscriptions", "/profile", "/settings")
DEFAULT_SUCCESS_REDIRECT = "/dashboard"
DEFAULT_ERROR_REDIRECT = "/login"

MIN_CODE_LENGTH = 10
MAX_CODE_LENGTH = 500


class SessionExchangeError(Exception):
    """The identity provider refused to exchange an authorization code."""


def decode_session_token(token: str) -> dict:
    """Verify a Supabase access token. Returns decoded claims."""
    try:
        claims = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.SUPABASE_JWT_AUDIENCE,
        )
    except JWTError:
        raise ValueError("Invalid or expired session token")

    if not claims.get("sub"):
        raise ValueError("Session token has no subject")
    try:
        uuid.UUID(str(claims["sub"]))
    except ValueError:
        raise ValueError("Invalid user ID format")
    return claims


async def upsert_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    email: str,
    display_name: str | None = None,
) -> User:
    """Create or refresh the local user row for an authenticated identity."""
    user = await db.get(User, user_id)

    if user is None:
        user = User(
            id=user_id,
            email=email,
            display_name=display_name or email.split("@")[0],
        )
        db.add(user)
    else:
        if email and user.email != email:
            user.email = email
        if display_name:
            user.display_name = display_name
        user.updated_at = datetime.now(timezone.utc)

    await db.flush()
    await db.refresh(user)
    return user


async def exchange_code_for_session(
    code: str,
    code_verifier: str | None,
    http_client: httpx.AsyncClient | None = None,
) -> dict:
    """Exchange an OAuth authorization code for a Supabase session (PKCE flow)."""
    url = f"{settings.SUPABASE_URL.rstrip('/')}/auth/v1/token"
    headers = {"apikey": settings.SUPABASE_ANON_KEY}

    should_close = False
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=10.0)
        should_close = True

    try:
        resp = await http_client.post(
            url,
            params={"grant_type": "pkce"},
            json={"auth_code": code, "code_verifier": code_verifier or ""},
            headers=headers,
        )
    except httpx.HTTPError as exc:
        raise SessionExchangeError(f"Identity provider unreachable: {exc}") from exc
    finally:
        if should_close:
            await http_client.aclose()

    if resp.status_code != 200:
        raise SessionExchangeError(f"Code exchange failed with status {resp.status_code}")
    return resp.json()


def _allowed_origins() -> set[str]:
    return {origin.rstrip("/") for origin in settings.allowed_origins}


def _is_allowed_path(path: str) -> bool:
    return any(
        path == allowed or path.startswith(f"{allowed}/")
        for allowed in ALLOWED_REDIRECT_PATHS
    )


def validate_redirect_url(url: str | None, origin: str) -> str:
    """Resolve a post-login redirect against the whitelist, falling back to the dashboard."""
    default = f"{origin}{DEFAULT_SUCCESS_REDIRECT}"
    if not url:
        return default

    if url.startswith("/"):
        if url.startswith("//"):
            return default
        path = urlsplit(url).path
        return f"{origin}{url}" if _is_allowed_path(path) else default

    try:
        parsed = urlsplit(url)
    except ValueError:
        return default
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return default
    url_origin = f"{parsed.scheme}://{parsed.netloc}"
    if url_origin not in _allowed_origins() and url_origin != origin:
        return default
    return url if _is_allowed_path(parsed.path or "/") else default
