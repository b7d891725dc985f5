# =============================================================================
# Token claims source
# =============================================================================
#
# The pipeline trusts claims verbatim. For the FastAPI surface this module is
# the upstream that verifies a bearer token and hands its claims over:
#   - Token validation (signature, expiry)
#   - Token creation for development and tests
#
# =============================================================================

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import jwt

from kinvault.auth.identity import DEVICE_ID_CLAIM
from kinvault.config import get_settings
from kinvault.core.utils import generate_id, utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# Token Creation
# =============================================================================

def create_access_token(
    user_id: str,
    email: str = "",
    device_id: str | None = None,
    extra_claims: dict | None = None,
) -> str:
    """Create a signed JWT access token."""
    settings = get_settings()
    now = utc_now()
    expire = now + timedelta(minutes=settings.jwt_access_token_expire_minutes)

    payload = {
        "sub": user_id,
        "email": email,
        "exp": expire,
        "iat": now,
        "jti": generate_id("tok"),
        **(extra_claims or {}),
    }
    if device_id:
        payload[DEVICE_ID_CLAIM] = device_id

    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


# =============================================================================
# Token Validation
# =============================================================================

class TokenError(Exception):
    """Base exception for token errors."""
    pass


class TokenExpiredError(TokenError):
    """Token has expired."""
    pass


class TokenInvalidError(TokenError):
    """Token is invalid or malformed."""
    pass


def decode_token(token: str) -> dict[str, Any]:
    """
    Decode and validate a JWT token.

    Returns:
        The verified claims

    Raises:
        TokenExpiredError: Token has expired
        TokenInvalidError: Token is invalid
    """
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenInvalidError(f"Invalid token: {e}")


def claims_from_authorization(header: str | None) -> dict[str, Any] | None:
    """
    Verified claims from an ``Authorization: Bearer ...`` header.

    Returns None when the header is absent or the token does not verify;
    the pipeline then answers UNAUTHENTICATED.
    """
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    try:
        return decode_token(token.strip())
    except TokenError as e:
        logger.info(f"Rejected bearer token: {e}")
        return None
