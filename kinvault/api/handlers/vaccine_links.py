"""
Public share links for single vaccination records.

The Owner mints a link that anyone holding the token can open without an
account until it expires. A vaccine has at most one live link: minting a
new one replaces the old.
"""

from __future__ import annotations

import asyncio
import logging
import time

from pydantic import Field

from kinvault.api.handlers.vaccines import _load_vaccine, drop_share_links
from kinvault.api.pipeline import ApiResponse, AuthorizedRequest, create_handler
from kinvault.api.schemas import EmptyBody, RequestSchema
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.auth.policies import public, require_profile_role
from kinvault.core.models import AuditAction, Role, VaccineShareLink

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400


class CreateLinkBody(RequestSchema):
    days: int = Field(default=7, ge=1, le=30)


def _now_epoch() -> int:
    return int(time.time())


async def _create_link(req: AuthorizedRequest) -> ApiResponse:
    body: CreateLinkBody = req.body
    vaccine = await _load_vaccine(req)

    replaced = await drop_share_links(req.storage, vaccine.vaccine_id)
    now = _now_epoch()
    link = VaccineShareLink(
        profile_id=vaccine.profile_id,
        vaccine_id=vaccine.vaccine_id,
        created_at_epoch=now,
        expires_at_epoch=now + body.days * SECONDS_PER_DAY,
    )
    await req.storage.share_links.put(link)

    req.audit(
        AuditAction.CREATE_VACCINE_LINK,
        vaccine.profile_id,
        {"vaccineId": vaccine.vaccine_id, "days": body.days, "replaced": replaced},
    )
    return ApiResponse.json(
        {"token": link.token, "expiresAt": link.expires_at_epoch, "publicPath": link.public_path},
        201,
    )


async def _revoke_links(req: AuthorizedRequest) -> ApiResponse:
    vaccine = await _load_vaccine(req)
    removed = await drop_share_links(req.storage, vaccine.vaccine_id)

    if removed:
        req.audit(AuditAction.REVOKE_VACCINE_LINK, vaccine.profile_id, {"vaccineId": vaccine.vaccine_id})
    return ApiResponse.no_content()


async def _open_link(req: AuthorizedRequest) -> ApiResponse:
    """Resolve a token to its vaccine record. No caller identity is involved."""
    token = (req.path_params.get("token") or "").strip()
    if not token:
        raise GuardError(ErrorCode.BAD_REQUEST, "Missing token")

    link = await req.storage.share_links.get(token)
    if link is None:
        raise GuardError(ErrorCode.NOT_FOUND, "Link not found")
    if link.is_expired(_now_epoch()):
        raise GuardError(ErrorCode.GONE)

    vaccine, profile = await asyncio.gather(
        req.storage.vaccines.get(link.vaccine_id),
        req.storage.profiles.get_profile(link.profile_id),
    )
    if vaccine is None or vaccine.profile_id != link.profile_id:
        logger.warning(f"Share link {token[:8]} points at a missing vaccine record")
        raise GuardError(ErrorCode.NOT_FOUND, "Link not found")

    payload = {
        "token": link.token,
        "expiresAt": link.expires_at_epoch,
        "vaccine": vaccine.to_item(),
    }
    if profile is not None:
        payload["profile"] = {"profileId": profile.profile_id, "name": profile.name}
    return ApiResponse.json(payload)


create_vaccine_link = create_handler(
    handler=_create_link,
    schema=CreateLinkBody,
    access=require_profile_role(Role.OWNER),
)

revoke_vaccine_links = create_handler(
    handler=_revoke_links,
    schema=EmptyBody,
    access=require_profile_role(Role.OWNER),
)

open_vaccine_link = create_handler(
    handler=_open_link,
    schema=EmptyBody,
    access=public(),
)
