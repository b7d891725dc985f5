"""
Activity log for a profile. Owner only.
"""

from __future__ import annotations

from kinvault.api.pipeline import ApiResponse, AuthorizedRequest, create_handler
from kinvault.api.schemas import EmptyBody
from kinvault.auth.policies import require_profile_role
from kinvault.core.models import Role


async def _list_profile_audit(req: AuthorizedRequest) -> ApiResponse:
    limit = req.settings.audit_list_limit
    raw_limit = req.query_params.get("limit")
    if raw_limit and raw_limit.isdigit():
        limit = max(1, min(int(raw_limit), req.settings.audit_list_limit))

    events = await req.services.recorder.list_for_resource(req.outcome.profile_id, limit)
    return ApiResponse.json([e.to_item() for e in events])


list_profile_audit = create_handler(
    handler=_list_profile_audit,
    schema=EmptyBody,
    access=require_profile_role(Role.OWNER),
)
