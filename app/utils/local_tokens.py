"""HS256 bearer tokens for the user-facing sync and search endpoints."""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from app.config.settings import settings

ALGORITHM = "HS256"


def create_local_token(user_id: str, email: str | None = None) -> str:
    """Issue a signed token for a user.

    Used by the auth layer that owns signup and by tests; this service only
    verifies tokens.
    """
    now = datetime.now(timezone.utc)
    exp = now + timedelta(seconds=settings.LOCAL_AUTH_TOKEN_EXP_SECONDS)
    payload = {
        "sub": str(user_id),
        "email": email,
        "exp": exp,
        "iat": now,
    }
    return jwt.encode(payload, settings.LOCAL_AUTH_SECRET, algorithm=ALGORITHM)


def decode_local_token(token: str) -> dict:
    """Verify a token's signature and expiry.

    Raises:
        ValueError: If the token is invalid or expired
    """
    try:
        return jwt.decode(token, settings.LOCAL_AUTH_SECRET, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise ValueError(f"Invalid token: {exc}") from exc
