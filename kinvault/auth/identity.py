"""
Identity extraction.

Turns already-verified token claims into a caller identity. Verification
happens upstream (API gateway authorizer, or ``kinvault.auth.jwt`` for the
FastAPI surface); the claims are trusted verbatim here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from kinvault.auth.errors import ErrorCode, GuardError

DEVICE_ID_CLAIM = "custom:deviceId"


@dataclass(frozen=True)
class Identity:
    """Who is calling."""

    user_id: str
    email: str = ""
    device_id: str | None = None  # device bound into the token, if any


def extract_identity(claims: Mapping[str, Any] | None) -> Identity:
    """
    Derive the caller identity from trusted claims.

    Raises GuardError(UNAUTHENTICATED) if claims are absent or carry no
    usable subject.
    """
    if not isinstance(claims, Mapping):
        raise GuardError(ErrorCode.UNAUTHENTICATED, "Missing user identity")

    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise GuardError(ErrorCode.UNAUTHENTICATED, "Missing user identity")

    email = claims.get("email")
    device_id = claims.get(DEVICE_ID_CLAIM)

    return Identity(
        user_id=sub.strip(),
        email=email if isinstance(email, str) else "",
        device_id=device_id if isinstance(device_id, str) and device_id else None,
    )
