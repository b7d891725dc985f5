"""
Resource RBAC gate.

Decides whether a caller may act on a shared profile. The effective role
is Owner for the profile's owner, otherwise the role of an ACCEPTED share
naming the caller. Having neither looks exactly like "no such profile" to
the caller; only the log tells the two apart.
"""

from __future__ import annotations

import logging

from kinvault.auth.capabilities import role_satisfies
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.core.models import Role
from kinvault.storage.base import ProfileStore

logger = logging.getLogger(__name__)

NO_ACCESS_MESSAGE = "Profile not found"


class ResourceRoleGate:
    """Owner / Viewer access over profiles."""

    def __init__(self, profiles: ProfileStore):
        self.profiles = profiles

    async def effective_role(
        self,
        user_id: str,
        resource_id: str,
        email: str | None = None,
    ) -> Role | None:
        owner_id = await self.profiles.get_profile_owner(resource_id)
        if owner_id is not None and owner_id == user_id:
            return Role.OWNER

        role = await self.profiles.get_accepted_share_role(resource_id, user_id, email)
        if role is None:
            if owner_id is None:
                logger.info(
                    f"Profile {resource_id} does not exist (requested by {user_id})",
                    extra={"user_id": user_id, "resource": resource_id},
                )
            else:
                logger.info(
                    f"User {user_id} has no accepted share on profile {resource_id}",
                    extra={"user_id": user_id, "resource": resource_id},
                )
        return role

    async def ensure_role(
        self,
        user_id: str,
        resource_id: str,
        required_role: Role,
        email: str | None = None,
    ) -> Role:
        """
        Return the caller's effective role if it satisfies ``required_role``.

        Raises:
            GuardError(NOT_FOUND): no such profile, or no access to it
            GuardError(FORBIDDEN): access exists but the role is too weak
        """
        role = await self.effective_role(user_id, resource_id, email)
        if role is None:
            raise GuardError(ErrorCode.NOT_FOUND, NO_ACCESS_MESSAGE)

        if not role_satisfies(role, required_role):
            logger.info(
                f"User {user_id} holds {role.value} on {resource_id}, needs {required_role.value}",
                extra={"user_id": user_id, "resource": resource_id},
            )
            raise GuardError(ErrorCode.FORBIDDEN, "Insufficient permission for profile.")

        return role
