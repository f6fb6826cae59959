"""
Security Module
===============

Caller identity and service-to-service authentication:
- JWT access token validation (tokens are issued by the auth provider)
- Internal API key comparison
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from entitlement_core.config import settings


def create_access_token(
    data: dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Production tokens come from the auth provider; this is used by
    internal tooling and tests that need a caller identity.

    Args:
        data: Payload data to encode (``sub`` must hold the user id)
        expires_delta: Custom expiration time (optional)

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))

    to_encode.update({
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    })

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None otherwise
    """
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except JWTError:
        return None


def verify_internal_key(provided: Optional[str]) -> bool:
    """Constant-time comparison against INTERNAL_API_KEY. An unset key rejects everything."""
    if not settings.INTERNAL_API_KEY or not provided:
        return False
    return hmac.compare_digest(provided, settings.INTERNAL_API_KEY)
