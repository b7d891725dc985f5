"""
Storage abstractions.

AWS Integration Points:
- DeviceStore, SubscriptionStore, ProfileStore, VaccineStore, AuditStore → DynamoDB
- IdentityAdmin → Cognito user pool admin API
"""

from kinvault.storage.base import (
    AuditStore,
    Collections,
    DeviceStore,
    IdentityAdmin,
    MetadataStorage,
    ProfileStore,
    StorageProvider,
    SubscriptionStore,
    VaccineStore,
)
from kinvault.storage.local import create_local_storage

__all__ = [
    "AuditStore",
    "Collections",
    "DeviceStore",
    "IdentityAdmin",
    "MetadataStorage",
    "ProfileStore",
    "StorageProvider",
    "SubscriptionStore",
    "VaccineStore",
    "create_local_storage",
]
