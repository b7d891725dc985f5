"""
Roles and tiers.

This defines WHAT users may do, not HOW we check it.
The actual checking happens in the gates (devices.py, rbac.py).
"""

from __future__ import annotations

from enum import Enum

from kinvault.core.models import Role


class SubscriptionTier(str, Enum):
    """Platform-wide subscription tier."""

    FREE = "free"  # No active subscription
    PAID = "paid"  # An active subscription row exists


# =============================================================================
# Role sufficiency
# =============================================================================


# What requirements each effective role satisfies. Owner ⊇ Viewer.
ROLE_SATISFIES: dict[Role, frozenset[Role]] = {
    Role.OWNER: frozenset({Role.OWNER, Role.VIEWER}),
    Role.VIEWER: frozenset({Role.VIEWER}),
}


def role_satisfies(effective: Role | None, required: Role) -> bool:
    """Whether a caller holding ``effective`` meets a ``required`` role."""
    if effective is None:
        return False
    return required in ROLE_SATISFIES.get(effective, frozenset())


# =============================================================================
# Tier ceilings
# =============================================================================


def tier_for(subscription_active: bool) -> SubscriptionTier:
    return SubscriptionTier.PAID if subscription_active else SubscriptionTier.FREE


def device_ceiling(tier: SubscriptionTier, free_limit: int = 1, paid_limit: int = 5) -> int:
    """Maximum trusted devices for a tier."""
    if tier == SubscriptionTier.PAID:
        return paid_limit
    return free_limit
