"""
Account overview: a lean summary for the dashboard.
"""

from __future__ import annotations

import asyncio

from kinvault.api.pipeline import ApiResponse, AuthorizedRequest, create_handler
from kinvault.auth.policies import require_device
from kinvault.core.models import ShareStatus


async def _pending_share_count(req: AuthorizedRequest) -> int:
    if not req.user.email:
        return 0
    shares = await req.storage.profiles.list_shares_by_invitee_email(req.user.email)
    return sum(1 for s in shares if s.status == ShareStatus.PENDING)


async def _overview(req: AuthorizedRequest) -> ApiResponse:
    user_id = req.user.user_id

    profiles, pending_shares, devices = await asyncio.gather(
        req.storage.profiles.count_profiles_by_owner(user_id),
        _pending_share_count(req),
        req.storage.devices.count_by_user(user_id),
    )

    return ApiResponse.json({
        "user": {"email": req.user.email},
        "subscription": {"active": req.user.subscription_active},
        "counts": {
            "profiles": profiles,
            "pendingShares": pending_shares,
            "devices": devices,
        },
    })


overview = create_handler(
    handler=_overview,
    access=require_device(),
)
