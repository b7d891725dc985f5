"""
Local storage implementations for development.

These are in-memory implementations that work without any external
services. Every store keeps its rows in one ``InMemoryMetadataStorage``
as plain dicts in their stored (camelCase) form, the same shape the
DynamoDB tables hold.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from kinvault.core.models import (
    AuditEvent,
    Device,
    Profile,
    Role,
    Share,
    ShareStatus,
    Subscription,
    SubscriptionPage,
    Vaccine,
    VaccineShareLink,
)
from kinvault.storage.base import (
    AuditStore,
    Collections,
    DeviceStore,
    DuplicateAuditEvent,
    IdentityAdmin,
    MetadataStorage,
    ProfileStore,
    ShareLinkStore,
    StorageProvider,
    SubscriptionStore,
    VaccineStore,
)

logger = logging.getLogger(__name__)


# =============================================================================
# In-Memory Metadata Storage
# =============================================================================


class InMemoryMetadataStorage(MetadataStorage):
    """In-memory document storage for development."""

    def __init__(self):
        self._data: dict[str, dict[str, dict[str, Any]]] = {}

    async def save(self, collection: str, id: str, data: dict[str, Any]) -> None:
        if collection not in self._data:
            self._data[collection] = {}
        self._data[collection][id] = {
            **data,
            "_id": id,
            "_updated_at": datetime.now(timezone.utc).isoformat(),
        }

    async def get(self, collection: str, id: str) -> dict[str, Any] | None:
        return self._data.get(collection, {}).get(id)

    async def delete(self, collection: str, id: str) -> bool:
        if collection in self._data and id in self._data[collection]:
            del self._data[collection][id]
            return True
        return False

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        results = self._matching(collection, filters)
        return results[offset:offset + limit]

    async def count(self, collection: str, filters: dict[str, Any] | None = None) -> int:
        return len(self._matching(collection, filters))

    def _matching(self, collection: str, filters: dict[str, Any] | None) -> list[dict[str, Any]]:
        docs = list(self._data.get(collection, {}).values())
        if not filters:
            return docs
        return [
            doc for doc in docs
            if all(doc.get(key) == value for key, value in filters.items())
        ]


# =============================================================================
# Stores on top of the metadata storage
# =============================================================================


class MetadataDeviceStore(DeviceStore):

    def __init__(self, metadata: MetadataStorage):
        self.metadata = metadata

    async def get(self, device_id: str) -> Device | None:
        doc = await self.metadata.get(Collections.DEVICES, device_id)
        return Device.model_validate(doc) if doc else None

    async def put(self, device: Device) -> None:
        await self.metadata.save(Collections.DEVICES, device.device_id, device.to_item())

    async def delete(self, device_id: str) -> bool:
        return await self.metadata.delete(Collections.DEVICES, device_id)

    async def count_by_user(self, user_id: str) -> int:
        return await self.metadata.count(Collections.DEVICES, {"userId": user_id})

    async def list_by_user(self, user_id: str) -> list[Device]:
        docs = await self.metadata.query(Collections.DEVICES, {"userId": user_id}, limit=1000)
        return [Device.model_validate(d) for d in docs]


class MetadataSubscriptionStore(SubscriptionStore):
    """Page tokens are stringified offsets into the newest-first ordering."""

    def __init__(self, metadata: MetadataStorage):
        self.metadata = metadata

    @staticmethod
    def _key(subscription: Subscription) -> str:
        return f"{subscription.user_id}#{subscription.created_at.isoformat()}"

    async def query_newest_first(
        self,
        user_id: str,
        page_token: str | None = None,
        limit: int = 25,
    ) -> SubscriptionPage:
        docs = await self.metadata.query(Collections.SUBSCRIPTIONS, {"userId": user_id}, limit=10_000)
        rows = sorted(
            (Subscription.model_validate(d) for d in docs),
            key=lambda s: s.created_at,
            reverse=True,
        )
        start = int(page_token) if page_token else 0
        end = start + limit
        return SubscriptionPage(
            rows=rows[start:end],
            next_page_token=str(end) if end < len(rows) else None,
        )

    async def put(self, subscription: Subscription) -> None:
        await self.metadata.save(Collections.SUBSCRIPTIONS, self._key(subscription), subscription.to_item())

    async def update(self, subscription: Subscription) -> Subscription:
        await self.put(subscription)
        return subscription


class MetadataProfileStore(ProfileStore):

    def __init__(self, metadata: MetadataStorage):
        self.metadata = metadata

    async def get_profile_owner(self, profile_id: str) -> str | None:
        doc = await self.metadata.get(Collections.PROFILES, profile_id)
        return doc.get("userId") if doc else None

    async def get_accepted_share_role(
        self,
        profile_id: str,
        user_id: str,
        email: str | None = None,
    ) -> Role | None:
        docs = await self.metadata.query(
            Collections.SHARES,
            {"profileId": profile_id, "status": ShareStatus.ACCEPTED.value},
            limit=1000,
        )
        for doc in docs:
            share = Share.model_validate(doc)
            if share.is_for(user_id, email):
                return share.role
        return None

    async def get_profile(self, profile_id: str) -> Profile | None:
        doc = await self.metadata.get(Collections.PROFILES, profile_id)
        return Profile.model_validate(doc) if doc else None

    async def put_profile(self, profile: Profile) -> None:
        await self.metadata.save(Collections.PROFILES, profile.profile_id, profile.to_item())

    async def delete_profile(self, profile_id: str) -> bool:
        return await self.metadata.delete(Collections.PROFILES, profile_id)

    async def list_profiles_by_owner(self, user_id: str) -> list[Profile]:
        docs = await self.metadata.query(Collections.PROFILES, {"userId": user_id}, limit=1000)
        return [Profile.model_validate(d) for d in docs]

    async def count_profiles_by_owner(self, user_id: str) -> int:
        return await self.metadata.count(Collections.PROFILES, {"userId": user_id})

    async def get_share(self, share_id: str) -> Share | None:
        doc = await self.metadata.get(Collections.SHARES, share_id)
        return Share.model_validate(doc) if doc else None

    async def put_share(self, share: Share) -> None:
        await self.metadata.save(Collections.SHARES, share.share_id, share.to_item())

    async def delete_share(self, share_id: str) -> bool:
        return await self.metadata.delete(Collections.SHARES, share_id)

    async def list_shares_by_profile(self, profile_id: str) -> list[Share]:
        docs = await self.metadata.query(Collections.SHARES, {"profileId": profile_id}, limit=1000)
        return [Share.model_validate(d) for d in docs]

    async def list_shares_by_invitee_email(self, email: str) -> list[Share]:
        docs = await self.metadata.query(Collections.SHARES, limit=10_000)
        return [
            Share.model_validate(d) for d in docs
            if str(d.get("inviteeEmail", "")).lower() == email.lower()
        ]


class MetadataVaccineStore(VaccineStore):

    def __init__(self, metadata: MetadataStorage):
        self.metadata = metadata

    async def get(self, vaccine_id: str) -> Vaccine | None:
        doc = await self.metadata.get(Collections.VACCINES, vaccine_id)
        return Vaccine.model_validate(doc) if doc else None

    async def put(self, vaccine: Vaccine) -> None:
        await self.metadata.save(Collections.VACCINES, vaccine.vaccine_id, vaccine.to_item())

    async def delete(self, vaccine_id: str) -> bool:
        return await self.metadata.delete(Collections.VACCINES, vaccine_id)

    async def list_by_profile(self, profile_id: str) -> list[Vaccine]:
        docs = await self.metadata.query(Collections.VACCINES, {"profileId": profile_id}, limit=1000)
        return sorted((Vaccine.model_validate(d) for d in docs), key=lambda v: v.created_at)


class MetadataShareLinkStore(ShareLinkStore):

    def __init__(self, metadata: MetadataStorage):
        self.metadata = metadata

    async def get(self, token: str) -> VaccineShareLink | None:
        data = await self.metadata.get(Collections.SHARE_LINKS, token)
        return VaccineShareLink.model_validate(data) if data else None

    async def put(self, link: VaccineShareLink) -> None:
        await self.metadata.save(Collections.SHARE_LINKS, link.token, link.to_item())

    async def delete(self, token: str) -> bool:
        return await self.metadata.delete(Collections.SHARE_LINKS, token)

    async def list_by_vaccine(self, vaccine_id: str) -> list[VaccineShareLink]:
        docs = await self.metadata.query(Collections.SHARE_LINKS, {"vaccineId": vaccine_id}, limit=10_000)
        return [VaccineShareLink.model_validate(d) for d in docs]


class MetadataAuditStore(AuditStore):

    def __init__(self, metadata: MetadataStorage):
        self.metadata = metadata

    async def append(self, event: AuditEvent) -> None:
        key = f"{event.user_id}#{event.ts}"
        if await self.metadata.get(Collections.AUDIT_EVENTS, key) is not None:
            raise DuplicateAuditEvent(key)
        await self.metadata.save(Collections.AUDIT_EVENTS, key, event.to_item())

    async def list_by_resource(self, resource: str, limit: int = 50) -> list[AuditEvent]:
        docs = await self.metadata.query(Collections.AUDIT_EVENTS, {"resource": resource}, limit=10_000)
        events = [AuditEvent.model_validate(d) for d in docs]
        events.sort(key=lambda e: e.ts, reverse=True)
        return events[:limit]


# =============================================================================
# In-Memory Identity Admin
# =============================================================================


class InMemoryIdentityAdmin(IdentityAdmin):
    """Stands in for the user pool: a user directory and a sign-out log."""

    def __init__(self):
        self._users_by_email: dict[str, str] = {}
        self.signed_out: list[str] = []

    def register_user(self, user_id: str, email: str) -> None:
        self._users_by_email[email.lower()] = user_id

    async def global_sign_out(self, user_id: str) -> None:
        logger.info(f"Global sign-out for user {user_id}")
        self.signed_out.append(user_id)

    async def find_user_id_by_email(self, email: str) -> str | None:
        return self._users_by_email.get(email.lower())


# =============================================================================
# Factory
# =============================================================================


def create_local_storage() -> StorageProvider:
    """Create a StorageProvider with in-memory implementations."""
    metadata = InMemoryMetadataStorage()
    return StorageProvider(
        devices=MetadataDeviceStore(metadata),
        subscriptions=MetadataSubscriptionStore(metadata),
        profiles=MetadataProfileStore(metadata),
        vaccines=MetadataVaccineStore(metadata),
        share_links=MetadataShareLinkStore(metadata),
        audit=MetadataAuditStore(metadata),
        identity=InMemoryIdentityAdmin(),
    )
