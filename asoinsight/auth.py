"""JWT helpers for credentials issued by the auth provider."""
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
import re

from jose import JWTError, jwt

from .config import settings

# header.payload.signature, base64url segments
_JWT_SHAPE = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*$")


def extract_bearer_token(credential: Optional[str]) -> Optional[str]:
    """
    Strip an optional ``Bearer`` scheme from an Authorization header value.

    Returns:
        The token if it has the shape of a JWT, None otherwise
    """
    if not credential:
        return None
    value = credential.strip()
    if value[:7].lower() == "bearer ":
        value = value[7:].strip()
    if not value or not _JWT_SHAPE.match(value):
        return None
    return value


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed access token. Used by local tooling and tests; production
    tokens are minted by the auth provider with the same secret.

    Args:
        data: Claims to encode (typically {"sub": user_id})
        expires_delta: Token lifetime (default: one hour)

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(hours=1))
    to_encode.update({"exp": expire, "iat": now})
    if settings.jwt_audience and "aud" not in to_encode:
        to_encode["aud"] = settings.jwt_audience
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string

    Returns:
        Decoded token payload or None if invalid, expired or for another audience
    """
    try:
        if settings.jwt_audience:
            return jwt.decode(
                token,
                settings.jwt_secret_key,
                algorithms=[settings.jwt_algorithm],
                audience=settings.jwt_audience,
            )
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"verify_aud": False},
        )
    except JWTError:
        return None
