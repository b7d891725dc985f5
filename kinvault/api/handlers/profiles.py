"""
Profile endpoints.

Creating and listing work on the caller's own profiles. Everything addressed
by ``profile_id`` goes through the RBAC gate first: Viewer may read, only
the Owner may change or delete.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date

from pydantic import Field

from kinvault.api.handlers.vaccines import drop_share_links
from kinvault.api.pipeline import ApiResponse, AuthorizedRequest, create_handler
from kinvault.api.schemas import EmptyBody, RequestSchema
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.auth.policies import require_device, require_profile_role
from kinvault.core.models import AuditAction, Profile, Role
from kinvault.core.utils import utc_now

logger = logging.getLogger(__name__)

# Fields an update may touch
UPDATABLE_FIELDS = (
    "name",
    "dob",
    "relationship",
    "gender",
    "blood_type",
    "allergies",
    "medical_conditions",
    "avatar_color",
    "nationality",
)


# =============================================================================
# Schemas
# =============================================================================


class CreateProfileBody(RequestSchema):
    name: str = Field(min_length=1)
    dob: date
    relationship: str | None = None
    gender: str | None = None
    blood_type: str | None = None
    allergies: str | None = None
    medical_conditions: str | None = None
    avatar_color: str | None = None
    nationality: str | None = None


class UpdateProfileBody(RequestSchema):
    name: str | None = Field(default=None, min_length=1)
    dob: date | None = None
    relationship: str | None = None
    gender: str | None = None
    blood_type: str | None = None
    allergies: str | None = None
    medical_conditions: str | None = None
    avatar_color: str | None = None
    nationality: str | None = None

    def changes(self) -> dict:
        """Supplied, non-empty fields only."""
        data = self.model_dump(include=set(UPDATABLE_FIELDS), exclude_none=True)
        if "dob" in data:
            data["dob"] = data["dob"].isoformat()
        return {k: v for k, v in data.items() if v != ""}


# =============================================================================
# Logic
# =============================================================================


async def _load_profile(req: AuthorizedRequest) -> Profile:
    profile = await req.storage.profiles.get_profile(req.outcome.profile_id)
    if profile is None:
        # Deleted between the gate and here
        raise GuardError(ErrorCode.NOT_FOUND, "Profile not found")
    return profile


async def _create_profile(req: AuthorizedRequest) -> ApiResponse:
    body: CreateProfileBody = req.body
    user_id = req.user.user_id
    profiles = req.storage.profiles

    if not req.user.subscription_active:
        limit = req.settings.profile_limit_free
        count = await profiles.count_profiles_by_owner(user_id)
        if count >= limit:
            raise GuardError(
                ErrorCode.FORBIDDEN,
                f"Free accounts are limited to {limit} profiles.",
                details={"reason": "PROFILE_LIMIT_REACHED", "limit": limit, "count": count},
            )

    data = body.model_dump(exclude_none=True)
    data["dob"] = body.dob.isoformat()
    profile = Profile(user_id=user_id, **data)
    await profiles.put_profile(profile)

    req.audit(AuditAction.CREATE_PROFILE, profile.profile_id, {"name": profile.name})
    return ApiResponse.json(profile, 201)


async def _list_profiles(req: AuthorizedRequest) -> ApiResponse:
    profiles = await req.storage.profiles.list_profiles_by_owner(req.user.user_id)
    profiles.sort(key=lambda p: p.created_at)
    return ApiResponse.json([p.to_item() for p in profiles])


async def _get_profile(req: AuthorizedRequest) -> ApiResponse:
    profile = await _load_profile(req)
    item = profile.to_item()
    item["role"] = req.outcome.profile_role.value
    return ApiResponse.json(item)


async def _update_profile(req: AuthorizedRequest) -> ApiResponse:
    body: UpdateProfileBody = req.body
    changes = body.changes()
    if not changes:
        raise GuardError(ErrorCode.BAD_REQUEST, "No fields to update")

    profile = await _load_profile(req)
    updated = profile.model_copy(update={**changes, "updated_at": utc_now()})
    await req.storage.profiles.put_profile(updated)

    req.audit(AuditAction.UPDATE_PROFILE, updated.profile_id, {"fields": sorted(changes)})
    return ApiResponse.json(updated)


async def _delete_profile(req: AuthorizedRequest) -> ApiResponse:
    """Delete a profile with its shares, vaccination records and their links."""
    profile_id = req.outcome.profile_id
    profiles = req.storage.profiles
    vaccines = req.storage.vaccines

    shares, records = await asyncio.gather(
        profiles.list_shares_by_profile(profile_id),
        vaccines.list_by_profile(profile_id),
    )
    for share in shares:
        await profiles.delete_share(share.share_id)
    for record in records:
        await drop_share_links(req.storage, record.vaccine_id)
        await vaccines.delete(record.vaccine_id)
    await profiles.delete_profile(profile_id)

    logger.info(
        f"Deleted profile {profile_id} with {len(shares)} shares and {len(records)} vaccines"
    )
    req.audit(AuditAction.DELETE_PROFILE, profile_id)
    return ApiResponse.no_content()


# =============================================================================
# Endpoints
# =============================================================================

create_profile = create_handler(
    handler=_create_profile,
    schema=CreateProfileBody,
    access=require_device(),
)

list_profiles = create_handler(
    handler=_list_profiles,
    schema=EmptyBody,
    access=require_device(),
)

get_profile = create_handler(
    handler=_get_profile,
    schema=EmptyBody,
    access=require_profile_role(Role.VIEWER),
)

update_profile = create_handler(
    handler=_update_profile,
    schema=UpdateProfileBody,
    access=require_profile_role(Role.OWNER),
)

delete_profile = create_handler(
    handler=_delete_profile,
    schema=EmptyBody,
    access=require_profile_role(Role.OWNER),
)
