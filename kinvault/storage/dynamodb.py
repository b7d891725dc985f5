# =============================================================================
# DynamoDB / Cognito storage (AWS)
# =============================================================================
#
# Setup:
#   1. Create the tables (names configurable through Settings):
#      - devices          PK deviceId,            GSI userId-index (userId)
#      - subscriptions    PK userId, SK createdAt
#      - profiles         PK profileId,           GSI userId-index (userId)
#      - share-invites    PK shareId,             GSI profileId-index (profileId),
#                                                 GSI inviteeEmail-index (inviteeEmail)
#      - vaccines         PK vaccineId,           GSI profileId-index (profileId)
#      - vaccine-share-links PK token,         GSI vaccineId-index (vaccineId),
#                                                 TTL expiresAtEpoch
#      - audit-events     PK userId, SK ts,       GSI resource-ts-index (resource, ts)
#   2. Set AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY / AWS_REGION
#   3. Set COGNITO_USER_POOL_ID for global sign-out
#
# boto3 is synchronous; every call runs in a worker thread so the store
# interfaces stay async.
#
# =============================================================================

from __future__ import annotations

import asyncio
import base64
import json
import logging
from decimal import Decimal
from typing import Any

import boto3
from botocore.exceptions import ClientError
from boto3.dynamodb.conditions import Attr, Key

from kinvault.config import Settings, get_settings
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
    DeviceStore,
    DuplicateAuditEvent,
    IdentityAdmin,
    ProfileStore,
    ShareLinkStore,
    StorageProvider,
    SubscriptionStore,
    VaccineStore,
)

logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    """Convert DynamoDB Decimals back to int/float, recursively."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _encode_token(key: dict[str, Any] | None) -> str | None:
    if not key:
        return None
    return base64.urlsafe_b64encode(json.dumps(_plain(key)).encode("utf-8")).decode("ascii")


def _decode_token(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    return json.loads(base64.urlsafe_b64decode(token.encode("ascii")))


async def _query_all(table, **kwargs) -> list[dict[str, Any]]:
    """Run a query to exhaustion, following LastEvaluatedKey."""
    items: list[dict[str, Any]] = []
    while True:
        response = await asyncio.to_thread(table.query, **kwargs)
        items.extend(_plain(i) for i in response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


async def _count_all(table, **kwargs) -> int:
    total = 0
    while True:
        response = await asyncio.to_thread(table.query, Select="COUNT", **kwargs)
        total += response.get("Count", 0)
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return total
        kwargs["ExclusiveStartKey"] = last_key


# =============================================================================
# Stores
# =============================================================================


class DynamoDeviceStore(DeviceStore):

    def __init__(self, table):
        self.table = table

    async def get(self, device_id: str) -> Device | None:
        response = await asyncio.to_thread(self.table.get_item, Key={"deviceId": device_id})
        item = response.get("Item")
        return Device.model_validate(_plain(item)) if item else None

    async def put(self, device: Device) -> None:
        await asyncio.to_thread(self.table.put_item, Item=device.to_item())

    async def delete(self, device_id: str) -> bool:
        response = await asyncio.to_thread(
            self.table.delete_item,
            Key={"deviceId": device_id},
            ReturnValues="ALL_OLD",
        )
        return bool(response.get("Attributes"))

    async def count_by_user(self, user_id: str) -> int:
        return await _count_all(
            self.table,
            IndexName="userId-index",
            KeyConditionExpression=Key("userId").eq(user_id),
        )

    async def list_by_user(self, user_id: str) -> list[Device]:
        items = await _query_all(
            self.table,
            IndexName="userId-index",
            KeyConditionExpression=Key("userId").eq(user_id),
        )
        return [Device.model_validate(i) for i in items]


class DynamoSubscriptionStore(SubscriptionStore):

    def __init__(self, table):
        self.table = table

    async def query_newest_first(
        self,
        user_id: str,
        page_token: str | None = None,
        limit: int = 25,
    ) -> SubscriptionPage:
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": Key("userId").eq(user_id),
            "ScanIndexForward": False,
            "Limit": limit,
        }
        start_key = _decode_token(page_token)
        if start_key:
            kwargs["ExclusiveStartKey"] = start_key
        response = await asyncio.to_thread(self.table.query, **kwargs)
        return SubscriptionPage(
            rows=[Subscription.model_validate(_plain(i)) for i in response.get("Items", [])],
            next_page_token=_encode_token(response.get("LastEvaluatedKey")),
        )

    async def put(self, subscription: Subscription) -> None:
        await asyncio.to_thread(self.table.put_item, Item=subscription.to_item())

    async def update(self, subscription: Subscription) -> Subscription:
        await self.put(subscription)
        return subscription


class DynamoProfileStore(ProfileStore):

    def __init__(self, profiles_table, shares_table):
        self.profiles = profiles_table
        self.shares = shares_table

    async def get_profile_owner(self, profile_id: str) -> str | None:
        profile = await self.get_profile(profile_id)
        return profile.user_id if profile else None

    async def get_accepted_share_role(
        self,
        profile_id: str,
        user_id: str,
        email: str | None = None,
    ) -> Role | None:
        items = await _query_all(
            self.shares,
            IndexName="profileId-index",
            KeyConditionExpression=Key("profileId").eq(profile_id),
            FilterExpression=Attr("status").eq(ShareStatus.ACCEPTED.value),
        )
        for item in items:
            share = Share.model_validate(item)
            if share.is_for(user_id, email):
                return share.role
        return None

    async def get_profile(self, profile_id: str) -> Profile | None:
        response = await asyncio.to_thread(self.profiles.get_item, Key={"profileId": profile_id})
        item = response.get("Item")
        return Profile.model_validate(_plain(item)) if item else None

    async def put_profile(self, profile: Profile) -> None:
        await asyncio.to_thread(self.profiles.put_item, Item=profile.to_item())

    async def delete_profile(self, profile_id: str) -> bool:
        response = await asyncio.to_thread(
            self.profiles.delete_item,
            Key={"profileId": profile_id},
            ReturnValues="ALL_OLD",
        )
        return bool(response.get("Attributes"))

    async def list_profiles_by_owner(self, user_id: str) -> list[Profile]:
        items = await _query_all(
            self.profiles,
            IndexName="userId-index",
            KeyConditionExpression=Key("userId").eq(user_id),
        )
        return [Profile.model_validate(i) for i in items]

    async def count_profiles_by_owner(self, user_id: str) -> int:
        return await _count_all(
            self.profiles,
            IndexName="userId-index",
            KeyConditionExpression=Key("userId").eq(user_id),
        )

    async def get_share(self, share_id: str) -> Share | None:
        response = await asyncio.to_thread(self.shares.get_item, Key={"shareId": share_id})
        item = response.get("Item")
        return Share.model_validate(_plain(item)) if item else None

    async def put_share(self, share: Share) -> None:
        await asyncio.to_thread(self.shares.put_item, Item=share.to_item())

    async def delete_share(self, share_id: str) -> bool:
        response = await asyncio.to_thread(
            self.shares.delete_item,
            Key={"shareId": share_id},
            ReturnValues="ALL_OLD",
        )
        return bool(response.get("Attributes"))

    async def list_shares_by_profile(self, profile_id: str) -> list[Share]:
        items = await _query_all(
            self.shares,
            IndexName="profileId-index",
            KeyConditionExpression=Key("profileId").eq(profile_id),
        )
        return [Share.model_validate(i) for i in items]

    async def list_shares_by_invitee_email(self, email: str) -> list[Share]:
        items = await _query_all(
            self.shares,
            IndexName="inviteeEmail-index",
            KeyConditionExpression=Key("inviteeEmail").eq(email.strip().lower()),
        )
        return [Share.model_validate(i) for i in items]


class DynamoVaccineStore(VaccineStore):

    def __init__(self, table):
        self.table = table

    async def get(self, vaccine_id: str) -> Vaccine | None:
        response = await asyncio.to_thread(self.table.get_item, Key={"vaccineId": vaccine_id})
        item = response.get("Item")
        return Vaccine.model_validate(_plain(item)) if item else None

    async def put(self, vaccine: Vaccine) -> None:
        await asyncio.to_thread(self.table.put_item, Item=vaccine.to_item())

    async def delete(self, vaccine_id: str) -> bool:
        response = await asyncio.to_thread(
            self.table.delete_item,
            Key={"vaccineId": vaccine_id},
            ReturnValues="ALL_OLD",
        )
        return bool(response.get("Attributes"))

    async def list_by_profile(self, profile_id: str) -> list[Vaccine]:
        items = await _query_all(
            self.table,
            IndexName="profileId-index",
            KeyConditionExpression=Key("profileId").eq(profile_id),
        )
        return sorted((Vaccine.model_validate(i) for i in items), key=lambda v: v.created_at)


class DynamoShareLinkStore(ShareLinkStore):

    def __init__(self, table):
        self.table = table

    async def get(self, token: str) -> VaccineShareLink | None:
        response = await asyncio.to_thread(self.table.get_item, Key={"token": token})
        item = response.get("Item")
        return VaccineShareLink.model_validate(_plain(item)) if item else None

    async def put(self, link: VaccineShareLink) -> None:
        await asyncio.to_thread(self.table.put_item, Item=link.to_item())

    async def delete(self, token: str) -> bool:
        response = await asyncio.to_thread(
            self.table.delete_item,
            Key={"token": token},
            ReturnValues="ALL_OLD",
        )
        return bool(response.get("Attributes"))

    async def list_by_vaccine(self, vaccine_id: str) -> list[VaccineShareLink]:
        items = await _query_all(
            self.table,
            IndexName="vaccineId-index",
            KeyConditionExpression=Key("vaccineId").eq(vaccine_id),
        )
        return [VaccineShareLink.model_validate(i) for i in items]


class DynamoAuditStore(AuditStore):

    def __init__(self, table):
        self.table = table

    async def append(self, event: AuditEvent) -> None:
        try:
            await asyncio.to_thread(
                self.table.put_item,
                Item=event.to_item(),
                ConditionExpression=Attr("ts").not_exists(),
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise DuplicateAuditEvent(f"{event.user_id}#{event.ts}") from e
            raise

    async def list_by_resource(self, resource: str, limit: int = 50) -> list[AuditEvent]:
        response = await asyncio.to_thread(
            self.table.query,
            IndexName="resource-ts-index",
            KeyConditionExpression=Key("resource").eq(resource),
            ScanIndexForward=False,
            Limit=limit,
        )
        return [AuditEvent.model_validate(_plain(i)) for i in response.get("Items", [])]


class CognitoIdentityAdmin(IdentityAdmin):

    def __init__(self, client, user_pool_id: str):
        self.client = client
        self.user_pool_id = user_pool_id

    async def global_sign_out(self, user_id: str) -> None:
        await asyncio.to_thread(
            self.client.admin_user_global_sign_out,
            UserPoolId=self.user_pool_id,
            Username=user_id,
        )
        logger.info(f"Global sign-out issued for user {user_id}")

    async def find_user_id_by_email(self, email: str) -> str | None:
        response = await asyncio.to_thread(
            self.client.list_users,
            UserPoolId=self.user_pool_id,
            Filter=f'email = "{email}"',
            Limit=1,
        )
        users = response.get("Users") or []
        return users[0].get("Username") if users else None


# =============================================================================
# Factory
# =============================================================================


def create_aws_storage(settings: Settings | None = None) -> StorageProvider:
    """Create a StorageProvider backed by DynamoDB tables and Cognito."""
    settings = settings or get_settings()
    session = boto3.Session(
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        region_name=settings.aws_region,
    )
    dynamodb = session.resource("dynamodb")

    return StorageProvider(
        devices=DynamoDeviceStore(dynamodb.Table(settings.devices_table_name)),
        subscriptions=DynamoSubscriptionStore(dynamodb.Table(settings.subscriptions_table_name)),
        profiles=DynamoProfileStore(
            dynamodb.Table(settings.profiles_table_name),
            dynamodb.Table(settings.shares_table_name),
        ),
        vaccines=DynamoVaccineStore(dynamodb.Table(settings.vaccines_table_name)),
        share_links=DynamoShareLinkStore(dynamodb.Table(settings.vaccine_share_links_table_name)),
        audit=DynamoAuditStore(dynamodb.Table(settings.audit_events_table_name)),
        identity=CognitoIdentityAdmin(session.client("cognito-idp"), settings.cognito_user_pool_id),
    )
