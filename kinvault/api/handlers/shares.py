"""
Sharing endpoints.

An Owner invites someone by email with a role; the invitation stays PENDING
until the invitee accepts it, and only ACCEPTED shares grant access. The
invitee account id is recorded at invite time when the identity provider
knows the email, otherwise on acceptance.
"""

from __future__ import annotations

import logging

from pydantic import EmailStr

from kinvault.api.pipeline import ApiResponse, AuthorizedRequest, create_handler
from kinvault.api.schemas import EmptyBody, RequestSchema
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.auth.policies import require_device, require_profile_role
from kinvault.core.models import AuditAction, Role, Share, ShareStatus
from kinvault.core.utils import utc_now

logger = logging.getLogger(__name__)

SHARE_NOT_FOUND = "Share not found"


class ShareBody(RequestSchema):
    invitee_email: EmailStr
    role: Role = Role.VIEWER


class AcceptShareBody(RequestSchema):
    accept: bool


# =============================================================================
# Owner side
# =============================================================================


async def _create_or_update_share(req: AuthorizedRequest) -> ApiResponse:
    body: ShareBody = req.body
    profile_id = req.outcome.profile_id
    profiles = req.storage.profiles
    invitee_email = str(body.invitee_email).lower()

    if req.user.email and invitee_email == req.user.email.lower():
        raise GuardError(ErrorCode.BAD_REQUEST, "Cannot share a profile with yourself.")

    profile = await profiles.get_profile(profile_id)
    if profile is None:
        raise GuardError(ErrorCode.NOT_FOUND, "Profile not found")

    existing = next(
        (s for s in await profiles.list_shares_by_profile(profile_id) if s.invitee_email.lower() == invitee_email),
        None,
    )
    details = {"actorEmail": req.user.email, "inviteeEmail": invitee_email, "role": body.role.value}

    if existing is not None:
        updated = existing.model_copy(update={
            "role": body.role,
            "status": ShareStatus.PENDING,
            "updated_at": utc_now(),
        })
        await profiles.put_share(updated)
        req.audit(AuditAction.UPDATE_SHARE, profile_id, details)
        return ApiResponse.json(updated)

    invitee_id = await req.storage.identity.find_user_id_by_email(invitee_email)
    if invitee_id == req.user.user_id:
        raise GuardError(ErrorCode.BAD_REQUEST, "Cannot share a profile with yourself.")

    share = Share(
        profile_id=profile_id,
        owner_id=req.user.user_id,
        owner_email=req.user.email or None,
        invitee_email=invitee_email,
        invitee_id=invitee_id,
        role=body.role,
        profile_name=profile.name,
    )
    await profiles.put_share(share)
    logger.info(f"Profile {profile_id} shared as {body.role.value} (invitee known: {invitee_id is not None})")

    req.audit(AuditAction.CREATE_SHARE, profile_id, details)
    return ApiResponse.json(share, 201)


async def _list_profile_shares(req: AuthorizedRequest) -> ApiResponse:
    shares = await req.storage.profiles.list_shares_by_profile(req.outcome.profile_id)
    shares.sort(key=lambda s: s.created_at)
    return ApiResponse.json([s.to_item() for s in shares])


# =============================================================================
# Invitee side
# =============================================================================


async def _list_received_shares(req: AuthorizedRequest) -> ApiResponse:
    if not req.user.email:
        return ApiResponse.json([])
    shares = await req.storage.profiles.list_shares_by_invitee_email(req.user.email)
    received = [s for s in shares if s.is_for(req.user.user_id, req.user.email)]
    received.sort(key=lambda s: s.created_at, reverse=True)
    return ApiResponse.json([s.to_item() for s in received])


async def _accept_share(req: AuthorizedRequest) -> ApiResponse:
    """Accept (binding the invitee id) or decline (deleting the invitation)."""
    body: AcceptShareBody = req.body
    share_id = req.path_params.get("share_id")
    if not share_id:
        raise GuardError(ErrorCode.BAD_REQUEST, "Missing shareId")

    profiles = req.storage.profiles
    share = await profiles.get_share(share_id)
    if share is None or not share.is_for(req.user.user_id, req.user.email):
        raise GuardError(ErrorCode.NOT_FOUND, SHARE_NOT_FOUND)

    if not body.accept:
        await profiles.delete_share(share_id)
        return ApiResponse.no_content()

    accepted = share.model_copy(update={
        "status": ShareStatus.ACCEPTED,
        "invitee_id": req.user.user_id,
        "updated_at": utc_now(),
    })
    await profiles.put_share(accepted)

    req.audit(AuditAction.ACCEPT_SHARE, share.profile_id, {"shareId": share_id, "role": share.role.value})
    return ApiResponse.json(accepted)


async def _delete_share(req: AuthorizedRequest) -> ApiResponse:
    """Owner revokes, or invitee leaves. Deleting a missing share succeeds."""
    share_id = req.path_params.get("share_id")
    if not share_id:
        raise GuardError(ErrorCode.BAD_REQUEST, "Missing shareId")

    profiles = req.storage.profiles
    share = await profiles.get_share(share_id)
    if share is None:
        return ApiResponse.no_content()

    if share.owner_id != req.user.user_id and not share.is_for(req.user.user_id, req.user.email):
        raise GuardError(ErrorCode.FORBIDDEN, "Forbidden: You cannot modify this share.")

    await profiles.delete_share(share_id)
    req.audit(AuditAction.DELETE_SHARE, share.profile_id, {"shareId": share_id, "inviteeEmail": share.invitee_email})
    return ApiResponse.no_content()


# =============================================================================
# Endpoints
# =============================================================================

create_or_update_share = create_handler(
    handler=_create_or_update_share,
    schema=ShareBody,
    access=require_profile_role(Role.OWNER),
)

list_profile_shares = create_handler(
    handler=_list_profile_shares,
    schema=EmptyBody,
    access=require_profile_role(Role.OWNER),
)

list_received_shares = create_handler(
    handler=_list_received_shares,
    schema=EmptyBody,
    access=require_device(),
)

accept_share = create_handler(
    handler=_accept_share,
    schema=AcceptShareBody,
    access=require_device(),
)

delete_share = create_handler(
    handler=_delete_share,
    schema=EmptyBody,
    access=require_device(),
)
