"""JWT helpers. Tokens are issued by the identity provider; ``sub`` is the user id."""
import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from app.core.config import settings


def create_access_token(subject: uuid.UUID | str, role: str, expires_minutes: int | None = None) -> str:
    expire = datetime.now(timezone.utc) + timedelta(
        minutes=expires_minutes or settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    )
    return jwt.encode(
        {"sub": str(subject), "role": role, "exp": expire, "type": "access"},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_token(token: str) -> dict:
    """Raises JWTError on invalid/expired token."""
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])


def subject_from_token(token: str) -> uuid.UUID:
    """Acting user id of an access token.

    Raises JWTError when the token is invalid, expired, not an access token
    or carries no usable subject.
    """
    payload = decode_token(token)
    if payload.get("type") != "access" or not payload.get("sub"):
        raise JWTError("Not an access token.")
    try:
        return uuid.UUID(payload["sub"])
    except ValueError as exc:
        raise JWTError("Malformed subject.") from exc
