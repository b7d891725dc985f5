"""
Policies - what a protected endpoint demands of its caller.

The vocabulary is small: device presence, device-count
ceiling, and a role requirement on one profile.

An endpoint declares its policy either statically or as a pure function of
the raw request (to read a path parameter, say):

    create_handler(handler=..., access=AccessPolicy(require_device=True))
    create_handler(handler=..., access=require_profile_role(Role.OWNER))

Both forms are normalized to the tagged variant ``StaticPolicy |
DerivedPolicy`` and resolved exactly once per request, before any gate
runs. The resolved ``AccessPolicy`` is frozen.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Union

from kinvault.core.models import Role

if TYPE_CHECKING:
    from kinvault.api.pipeline import ApiRequest


# =============================================================================
# Policy - the resolved access requirements
# =============================================================================


@dataclass(frozen=True)
class ProfileRequirement:
    """Caller must hold at least ``required_role`` on profile ``id``."""

    id: str | None
    required_role: Role = Role.VIEWER


@dataclass(frozen=True)
class AccessPolicy:
    """
    Access requirements for one request.

    Attributes:
        require_device: the ``x-device-id`` device must belong to the caller
        enforce_device_limit: the caller's device count must be within the
            ceiling of their subscription tier
        profile: role requirement on a profile, if any
        public: skip identity and all gates
    """

    require_device: bool = True
    enforce_device_limit: bool = True
    profile: ProfileRequirement | None = None
    public: bool = False

    def without_device_checks(self) -> AccessPolicy:
        """Same policy with device presence disabled (first-login paths)."""
        return replace(self, require_device=False)


# =============================================================================
# Static or derived
# =============================================================================


@dataclass(frozen=True)
class StaticPolicy:
    policy: AccessPolicy

    def resolve(self, request: ApiRequest) -> AccessPolicy:
        return self.policy


@dataclass(frozen=True)
class DerivedPolicy:
    derive: Callable[[ApiRequest], AccessPolicy]

    def resolve(self, request: ApiRequest) -> AccessPolicy:
        policy = self.derive(request)
        if policy is None:
            return AccessPolicy()
        if not isinstance(policy, AccessPolicy):
            raise TypeError(f"Access policy function returned {type(policy).__name__}, expected AccessPolicy")
        return policy


AccessSpec = Union[StaticPolicy, DerivedPolicy]


def as_access_spec(
    access: AccessSpec | AccessPolicy | Callable[[ApiRequest], AccessPolicy] | None,
) -> AccessSpec:
    """Normalize what an endpoint declared into the tagged variant."""
    if access is None:
        return StaticPolicy(AccessPolicy())
    if isinstance(access, (StaticPolicy, DerivedPolicy)):
        return access
    if isinstance(access, AccessPolicy):
        return StaticPolicy(access)
    if callable(access):
        return DerivedPolicy(access)
    raise TypeError(f"Unsupported access declaration: {access!r}")


# =============================================================================
# Shorthands
# =============================================================================


def public() -> StaticPolicy:
    """No identity, no gates."""
    return StaticPolicy(AccessPolicy(require_device=False, enforce_device_limit=False, public=True))


def require_device(enforce_limit: bool = True) -> StaticPolicy:
    """Trusted device required; ceiling enforced unless told otherwise."""
    return StaticPolicy(AccessPolicy(require_device=True, enforce_device_limit=enforce_limit))


def require_profile_role(
    role: Role,
    param: str = "profile_id",
    enforce_limit: bool = True,
) -> DerivedPolicy:
    """
    Trusted device plus ``role`` on the profile named by path parameter ``param``.

    Usage:
        create_handler(handler=list_audit, access=require_profile_role(Role.OWNER))
    """
    def derive(request: ApiRequest) -> AccessPolicy:
        return AccessPolicy(
            require_device=True,
            enforce_device_limit=enforce_limit,
            profile=ProfileRequirement(id=request.path_params.get(param), required_role=role),
        )
    return DerivedPolicy(derive)
