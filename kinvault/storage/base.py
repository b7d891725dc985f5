"""
Storage abstraction layer.

All persistence goes through these interfaces. The access gates only see
the narrow store contracts below; which implementation sits behind them
(in-memory for development, DynamoDB in AWS) is decided once at startup.

AWS Integration Points:
- DeviceStore       → DynamoDB (devices table, userId-index)
- SubscriptionStore → DynamoDB (subscriptions table, userId + createdAt)
- ProfileStore      → DynamoDB (profiles + share-invites tables)
- VaccineStore      → DynamoDB (vaccines table, profileId-index)
- ShareLinkStore    → DynamoDB (vaccine-share-links table, vaccineId-index)
- AuditStore        → DynamoDB (audit-events table, resource-ts-index)
- IdentityAdmin     → Cognito user pool admin API
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from kinvault.core.models import (
    AuditEvent,
    Device,
    Profile,
    Role,
    Share,
    Subscription,
    SubscriptionPage,
    Vaccine,
    VaccineShareLink,
)


# =============================================================================
# Generic document storage
# =============================================================================


class MetadataStorage(ABC):
    """
    Storage for structured documents keyed by (collection, id).

    The in-memory store implementations are built on top of this.
    """

    @abstractmethod
    async def save(self, collection: str, id: str, data: dict[str, Any]) -> None:
        """Save a document to a collection."""
        pass

    @abstractmethod
    async def get(self, collection: str, id: str) -> dict[str, Any] | None:
        """Get a document by ID."""
        pass

    @abstractmethod
    async def delete(self, collection: str, id: str) -> bool:
        """Delete a document."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Query documents with optional equality filters."""
        pass

    @abstractmethod
    async def count(self, collection: str, filters: dict[str, Any] | None = None) -> int:
        """Count documents matching equality filters."""
        pass


# =============================================================================
# Store contracts consumed by the access gates and handlers
# =============================================================================


class DeviceStore(ABC):
    """Trusted devices, keyed by device_id."""

    @abstractmethod
    async def get(self, device_id: str) -> Device | None:
        pass

    @abstractmethod
    async def put(self, device: Device) -> None:
        pass

    @abstractmethod
    async def delete(self, device_id: str) -> bool:
        pass

    @abstractmethod
    async def count_by_user(self, user_id: str) -> int:
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str) -> list[Device]:
        pass


class SubscriptionStore(ABC):
    """Subscription history, keyed by (user_id, created_at)."""

    @abstractmethod
    async def query_newest_first(
        self,
        user_id: str,
        page_token: str | None = None,
        limit: int = 25,
    ) -> SubscriptionPage:
        """One page of the user's rows, newest ``created_at`` first."""
        pass

    @abstractmethod
    async def put(self, subscription: Subscription) -> None:
        pass

    @abstractmethod
    async def update(self, subscription: Subscription) -> Subscription:
        """Overwrite the row with the same (user_id, created_at) key."""
        pass


class ProfileStore(ABC):
    """Profiles and the share relation over them."""

    # --- lookups used by the RBAC gate ---

    @abstractmethod
    async def get_profile_owner(self, profile_id: str) -> str | None:
        pass

    @abstractmethod
    async def get_accepted_share_role(
        self,
        profile_id: str,
        user_id: str,
        email: str | None = None,
    ) -> Role | None:
        """Role from an ACCEPTED share naming the user, if any."""
        pass

    # --- profiles ---

    @abstractmethod
    async def get_profile(self, profile_id: str) -> Profile | None:
        pass

    @abstractmethod
    async def put_profile(self, profile: Profile) -> None:
        pass

    @abstractmethod
    async def delete_profile(self, profile_id: str) -> bool:
        pass

    @abstractmethod
    async def list_profiles_by_owner(self, user_id: str) -> list[Profile]:
        pass

    @abstractmethod
    async def count_profiles_by_owner(self, user_id: str) -> int:
        pass

    # --- shares ---

    @abstractmethod
    async def get_share(self, share_id: str) -> Share | None:
        pass

    @abstractmethod
    async def put_share(self, share: Share) -> None:
        pass

    @abstractmethod
    async def delete_share(self, share_id: str) -> bool:
        pass

    @abstractmethod
    async def list_shares_by_profile(self, profile_id: str) -> list[Share]:
        pass

    @abstractmethod
    async def list_shares_by_invitee_email(self, email: str) -> list[Share]:
        pass


class VaccineStore(ABC):
    """Vaccination records, keyed by vaccine_id."""

    @abstractmethod
    async def get(self, vaccine_id: str) -> Vaccine | None:
        pass

    @abstractmethod
    async def put(self, vaccine: Vaccine) -> None:
        pass

    @abstractmethod
    async def delete(self, vaccine_id: str) -> bool:
        pass

    @abstractmethod
    async def list_by_profile(self, profile_id: str) -> list[Vaccine]:
        pass


class ShareLinkStore(ABC):
    """Public vaccine share links, keyed by token."""

    @abstractmethod
    async def get(self, token: str) -> VaccineShareLink | None:
        pass

    @abstractmethod
    async def put(self, link: VaccineShareLink) -> None:
        pass

    @abstractmethod
    async def delete(self, token: str) -> bool:
        pass

    @abstractmethod
    async def list_by_vaccine(self, vaccine_id: str) -> list[VaccineShareLink]:
        pass


class DuplicateAuditEvent(Exception):
    """An event with the same (user_id, ts) key is already stored."""


class AuditStore(ABC):
    """Append-only activity log."""

    @abstractmethod
    async def append(self, event: AuditEvent) -> None:
        """
        Persist an event without overwriting an existing one.

        Raises DuplicateAuditEvent when (user_id, ts) is taken, and other
        errors on storage failure.
        """
        pass

    @abstractmethod
    async def list_by_resource(self, resource: str, limit: int = 50) -> list[AuditEvent]:
        """Events for a resource, newest first."""
        pass


class IdentityAdmin(ABC):
    """Admin API of the identity-token issuer."""

    @abstractmethod
    async def global_sign_out(self, user_id: str) -> None:
        """Invalidate every token issued to the user."""
        pass

    @abstractmethod
    async def find_user_id_by_email(self, email: str) -> str | None:
        pass


# =============================================================================
# Storage Provider (dependency injection container)
# =============================================================================


class StorageProvider(BaseModel):
    """
    Container for all storage backends.

    Initialize once at app startup with appropriate implementations.
    Gates and handlers receive this and use the interfaces without knowing
    the underlying implementation.
    """

    model_config = {"arbitrary_types_allowed": True}

    devices: DeviceStore
    subscriptions: SubscriptionStore
    profiles: ProfileStore
    vaccines: VaccineStore
    share_links: ShareLinkStore
    audit: AuditStore
    identity: IdentityAdmin


# =============================================================================
# Collection Names (for MetadataStorage)
# =============================================================================


class Collections:
    """Standard collection/table names."""

    DEVICES = "devices"
    SUBSCRIPTIONS = "subscriptions"
    PROFILES = "profiles"
    SHARES = "shares"
    VACCINES = "vaccines"
    SHARE_LINKS = "vaccine_share_links"
    AUDIT_EVENTS = "audit_events"
    USERS = "users"
