"""Authentication dependencies for user-facing and scheduled endpoints."""

import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config.logger import app_logger
from app.config.settings import settings
from app.utils.local_tokens import decode_local_token

# HTTP Bearer token security scheme
security_scheme = HTTPBearer(
    scheme_name="Bearer",
    description="Bearer token authentication",
    auto_error=False,  # Missing headers are reported as 401, not 403
)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_auth_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security_scheme),
) -> str:
    """Extract the Bearer token from the Authorization header.

    Raises:
        HTTPException: 401 if the header or token is missing
    """
    if not credentials:
        raise _unauthorized("Missing or invalid authorization header")

    token = credentials.credentials.strip()
    if not token:
        raise _unauthorized("Missing authentication token")

    return token


async def verify_token(token: str = Depends(get_auth_token)) -> dict:
    """Decode a signed user token.

    Returns:
        dict: user_id, email and the raw token

    Raises:
        HTTPException: 401 if the token is invalid, expired or incomplete
    """
    try:
        payload = decode_local_token(token)
    except ValueError as exc:
        raise _unauthorized(str(exc)) from exc

    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token payload")
    return {
        "user_id": user_id,
        "email": payload.get("email"),
        "token": token,
    }


async def require_auth(token_payload: dict = Depends(verify_token)) -> str:
    """Dependency for endpoints acting on the signed-in user's data."""
    user_id = token_payload.get("user_id")
    if not user_id:
        raise _unauthorized("Authentication required")
    return str(user_id)


async def require_cron_secret(token: str = Depends(get_auth_token)) -> None:
    """Dependency for scheduler-triggered endpoints (shared CRON_SECRET bearer)."""
    if not settings.CRON_SECRET:
        app_logger.error("CRON_SECRET is not configured; rejecting scheduled sync request")
        raise _unauthorized("Scheduled sync is not configured")
    if not hmac.compare_digest(token, settings.CRON_SECRET):
        raise _unauthorized("Invalid cron secret")


# Convenience aliases for cleaner imports
RequireAuth = Depends(require_auth)
RequireCronSecret = Depends(require_cron_secret)
