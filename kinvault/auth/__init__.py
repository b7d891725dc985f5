"""
Access control - identity, device trust, tier ceilings and profile RBAC.

Design principles:
1. Endpoints declare a policy; the pipeline enforces it before any handler runs
2. Gates fail fast with a uniform, machine-readable error
3. Handlers read the resulting UserContext and never re-check access
"""

from kinvault.auth.capabilities import (
    SubscriptionTier,
    device_ceiling,
    role_satisfies,
    tier_for,
)
from kinvault.auth.context import AccessOutcome, UserContext
from kinvault.auth.devices import DeviceTrustGate, RevokeScope
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.auth.identity import Identity, extract_identity
from kinvault.auth.policies import (
    AccessPolicy,
    DerivedPolicy,
    ProfileRequirement,
    StaticPolicy,
    public,
    require_device,
    require_profile_role,
)
from kinvault.auth.rbac import ResourceRoleGate

__all__ = [
    # Policies
    "AccessPolicy",
    "ProfileRequirement",
    "StaticPolicy",
    "DerivedPolicy",
    "public",
    "require_device",
    "require_profile_role",
    # Gates
    "DeviceTrustGate",
    "RevokeScope",
    "ResourceRoleGate",
    # Identity / context
    "Identity",
    "extract_identity",
    "UserContext",
    "AccessOutcome",
    # Errors
    "ErrorCode",
    "GuardError",
    # Tiers
    "SubscriptionTier",
    "device_ceiling",
    "role_satisfies",
    "tier_for",
]
