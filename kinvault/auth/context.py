"""
Auth context - the "who is calling, from where" for each request.

This is the lightweight object handed to business logic once every gate
has passed. Handlers never re-check access; they read it from here.
"""

from __future__ import annotations

from dataclasses import dataclass

from kinvault.auth.policies import AccessPolicy
from kinvault.core.models import Device, Role, Subscription


@dataclass(frozen=True)
class UserContext:
    """
    Authenticated caller as seen by business logic.

    Usage in handlers:
        async def list_devices(req: AuthorizedRequest) -> ApiResponse:
            devices = await req.storage.devices.list_by_user(req.user.user_id)
    """

    user_id: str
    email: str = ""
    device_id: str | None = None
    subscription_active: bool = False

    @classmethod
    def public(cls) -> UserContext:
        """Placeholder caller for public endpoints."""
        return cls(user_id="public")


@dataclass(frozen=True)
class AccessOutcome:
    """What the gates established for this request."""

    policy: AccessPolicy
    subscription: Subscription | None = None
    device: Device | None = None
    profile_id: str | None = None
    profile_role: Role | None = None

    @property
    def is_owner(self) -> bool:
        """Is the caller the owner of the gated profile?"""
        return self.profile_role == Role.OWNER
