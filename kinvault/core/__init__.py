"""
Core module - shared data contracts and infrastructure.

This module contains:
- models: Device, Subscription, Profile, Share, Vaccine, AuditEvent
- observability: logging setup and request correlation ids
- utils: Shared utility functions
"""

from kinvault.core.models import (
    AuditAction,
    AuditEvent,
    Device,
    DeviceAttributes,
    Profile,
    Role,
    Share,
    ShareStatus,
    Subscription,
    SubscriptionPage,
    SubscriptionStatus,
    Vaccine,
)

from kinvault.core.utils import (
    generate_id,
    now_ms,
    utc_now,
)

__all__ = [
    # Models
    "AuditAction",
    "AuditEvent",
    "Device",
    "DeviceAttributes",
    "Profile",
    "Role",
    "Share",
    "ShareStatus",
    "Subscription",
    "SubscriptionPage",
    "SubscriptionStatus",
    "Vaccine",
    # Utils
    "generate_id",
    "now_ms",
    "utc_now",
]
