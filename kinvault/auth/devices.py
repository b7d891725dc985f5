"""
Device trust gate.

Each account keeps an allowlist of trusted devices. A request that claims a
device must name one of the caller's own rows, and the number of rows must
stay within the ceiling of the caller's subscription tier.

The ceiling check reads the current count and does not lock: two
concurrent registrations for the same account can both see room and both
succeed, overshooting the ceiling until a later request re-checks.
"""

from __future__ import annotations

import logging
from enum import Enum

from kinvault.auth.capabilities import SubscriptionTier, device_ceiling
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.auth.subscriptions import resolve_tier
from kinvault.config import Settings
from kinvault.core.models import Device, DeviceAttributes
from kinvault.core.utils import utc_now
from kinvault.storage.base import DeviceStore, IdentityAdmin, StorageProvider, SubscriptionStore

logger = logging.getLogger(__name__)


class RevokeScope(str, Enum):
    SINGLE = "single"  # delete the device row only
    GLOBAL = "global"  # sign out every session first, then delete the row


class DeviceTrustGate:
    """Confirms claimed devices and enforces per-tier device ceilings."""

    def __init__(
        self,
        devices: DeviceStore,
        subscriptions: SubscriptionStore,
        identity: IdentityAdmin,
        free_limit: int = 1,
        paid_limit: int = 5,
        subscription_page_size: int = 25,
        subscription_max_pages: int = 20,
    ):
        self.devices = devices
        self.subscriptions = subscriptions
        self.identity = identity
        self.free_limit = free_limit
        self.paid_limit = paid_limit
        self.subscription_page_size = subscription_page_size
        self.subscription_max_pages = subscription_max_pages

    @classmethod
    def from_storage(cls, storage: StorageProvider, settings: Settings) -> DeviceTrustGate:
        return cls(
            devices=storage.devices,
            subscriptions=storage.subscriptions,
            identity=storage.identity,
            free_limit=settings.device_limit_free,
            paid_limit=settings.device_limit_paid,
            subscription_page_size=settings.subscription_page_size,
            subscription_max_pages=settings.subscription_max_pages,
        )

    # =========================================================================
    # Trust
    # =========================================================================

    async def ensure_trusted_device(self, user_id: str, claimed_device_id: str | None) -> Device:
        """
        Return the claimed device if it is registered to the caller.

        Raises:
            GuardError(DEVICE_REQUIRED): no device id was supplied
            GuardError(DEVICE_NOT_FOUND): no such device row
            GuardError(FORBIDDEN): the device belongs to another account
        """
        if not claimed_device_id:
            raise GuardError(ErrorCode.DEVICE_REQUIRED)

        device = await self.devices.get(claimed_device_id)
        if device is None:
            logger.info(
                f"Device {claimed_device_id} not registered (user {user_id})",
                extra={"user_id": user_id, "device_id": claimed_device_id},
            )
            raise GuardError(ErrorCode.DEVICE_NOT_FOUND)

        if device.user_id != user_id:
            logger.warning(
                f"Device {claimed_device_id} claimed by {user_id} belongs to another account",
                extra={"user_id": user_id, "device_id": claimed_device_id},
            )
            raise GuardError(ErrorCode.FORBIDDEN)

        return device

    async def touch(self, device: Device, attributes: DeviceAttributes | None = None) -> Device:
        """Heartbeat: stamp last_seen and merge any reported attributes."""
        updated = device.model_copy(update={
            "last_seen": utc_now(),
            "attributes": device.attributes.merged(attributes),
        })
        await self.devices.put(updated)
        return updated

    # =========================================================================
    # Ceiling
    # =========================================================================

    async def ceiling_for(self, user_id: str, tier: SubscriptionTier | None = None) -> int:
        if tier is None:
            tier = await resolve_tier(
                self.subscriptions,
                user_id,
                self.subscription_page_size,
                self.subscription_max_pages,
            )
        return device_ceiling(tier, self.free_limit, self.paid_limit)

    async def ensure_within_device_limit(
        self,
        user_id: str,
        tier: SubscriptionTier | None = None,
    ) -> None:
        """
        Fail if the caller already holds more devices than their tier allows.

        Advisory: inspects the count at call time, holds no lock.
        """
        ceiling = await self.ceiling_for(user_id, tier)
        count = await self.devices.count_by_user(user_id)
        if count > ceiling:
            logger.info(f"User {user_id} holds {count} devices, ceiling {ceiling}", extra={"user_id": user_id})
            raise GuardError(
                ErrorCode.DEVICE_LIMIT_EXCEEDED,
                details={"limit": ceiling, "count": count},
            )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def register_device(
        self,
        user_id: str,
        device_id: str,
        attributes: DeviceAttributes | None = None,
        kick_previous: bool = False,
        tier: SubscriptionTier | None = None,
    ) -> Device:
        """
        Trust a device after a successful sign-in.

        A device the caller already holds is just touched. A new device is
        admitted only if it fits under the ceiling; with ``kick_previous``
        the caller's other devices are removed to make room instead.
        """
        existing = await self.devices.get(device_id)
        if existing is not None:
            if existing.user_id != user_id:
                logger.warning(f"User {user_id} tried to register device {device_id} of another account")
                raise GuardError(ErrorCode.FORBIDDEN)
            return await self.touch(existing, attributes)

        ceiling = await self.ceiling_for(user_id, tier)
        count = await self.devices.count_by_user(user_id)
        if count + 1 > ceiling:
            if not kick_previous:
                raise GuardError(
                    ErrorCode.DEVICE_LIMIT_EXCEEDED,
                    details={"limit": ceiling, "count": count},
                )
            for other in await self.devices.list_by_user(user_id):
                await self.devices.delete(other.device_id)
            logger.info(f"Removed {count} previous devices of user {user_id}")

        device = Device(
            device_id=device_id,
            user_id=user_id,
            attributes=attributes or DeviceAttributes(),
        )
        await self.devices.put(device)
        logger.info(
            f"Registered device {device_id} for user {user_id}",
            extra={"user_id": user_id, "device_id": device_id},
        )
        return device

    async def revoke(
        self,
        user_id: str,
        device_id: str,
        scope: RevokeScope = RevokeScope.SINGLE,
    ) -> None:
        """
        Remove a trusted device.

        With ``RevokeScope.GLOBAL`` every token issued to the account is
        invalidated at the issuer before the row goes.

        Raises GuardError(FORBIDDEN) if the device is missing or not the
        caller's.
        """
        device = await self.devices.get(device_id)
        if device is None or device.user_id != user_id:
            raise GuardError(ErrorCode.FORBIDDEN, "Forbidden: not your device.")

        if scope == RevokeScope.GLOBAL:
            await self.identity.global_sign_out(user_id)

        await self.devices.delete(device_id)
        logger.info(
            f"Revoked device {device_id} of user {user_id} (scope={scope.value})",
            extra={"user_id": user_id, "device_id": device_id},
        )
