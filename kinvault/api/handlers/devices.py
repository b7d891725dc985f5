"""
Device endpoints: first-login registration, listing, heartbeat, revocation.
"""

from __future__ import annotations

from pydantic import Field

from kinvault.api.pipeline import DEVICE_ID_HEADER, ApiResponse, AuthorizedRequest, create_handler
from kinvault.api.schemas import EmptyBody, RequestSchema
from kinvault.auth.capabilities import tier_for
from kinvault.auth.devices import RevokeScope
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.auth.policies import AccessPolicy, require_device
from kinvault.core.models import AuditAction, DeviceAttributes


# =============================================================================
# Schemas
# =============================================================================


class CompleteLoginBody(RequestSchema):
    device_id: str = Field(min_length=1)
    kick_previous: bool = False
    meta: DeviceAttributes | None = None


class HeartbeatBody(RequestSchema):
    device_id: str = Field(min_length=1)
    device_type: str | None = None
    os_name: str | None = None
    browser_name: str | None = None
    locale: str | None = None
    time_zone: str | None = None

    def attributes(self) -> DeviceAttributes:
        return DeviceAttributes(
            device_type=self.device_type,
            os_name=self.os_name,
            browser_name=self.browser_name,
            locale=self.locale,
            time_zone=self.time_zone,
        )


# =============================================================================
# Logic
# =============================================================================


async def _complete_login(req: AuthorizedRequest) -> ApiResponse:
    """Trust the signing-in device, making room for it if asked to."""
    body: CompleteLoginBody = req.body
    attributes = body.meta or req.request.device_info()

    device = await req.services.devices.register_device(
        req.user.user_id,
        body.device_id.strip(),
        attributes=attributes,
        kick_previous=body.kick_previous,
        tier=tier_for(req.user.subscription_active),
    )
    req.audit(AuditAction.REGISTER_DEVICE, device.device_id, {"kickPrevious": body.kick_previous})
    return ApiResponse.json({"ok": True, "device": device.to_item()})


async def _list_devices(req: AuthorizedRequest) -> ApiResponse:
    devices = await req.storage.devices.list_by_user(req.user.user_id)
    devices.sort(key=lambda d: d.last_seen, reverse=True)
    return ApiResponse.json([d.to_item() for d in devices])


async def _heartbeat(req: AuthorizedRequest) -> ApiResponse:
    body: HeartbeatBody = req.body
    if body.device_id != req.user.device_id:
        raise GuardError(ErrorCode.BAD_REQUEST, f"{DEVICE_ID_HEADER} must match body.deviceId")

    await req.services.devices.touch(req.outcome.device, body.attributes())
    return ApiResponse.json({"ok": True})


async def _revoke_device(req: AuthorizedRequest) -> ApiResponse:
    device_id = req.path_params.get("device_id")
    if not device_id:
        raise GuardError(ErrorCode.BAD_REQUEST, "Missing deviceId")

    raw_scope = req.query_params.get("scope") or RevokeScope.SINGLE.value
    try:
        scope = RevokeScope(raw_scope.strip().lower())
    except ValueError:
        raise GuardError(
            ErrorCode.VALIDATION_ERROR,
            "Invalid scope; expected single or global",
            details={"fields": ["scope"]},
        )

    await req.services.devices.revoke(req.user.user_id, device_id, scope)
    req.audit(AuditAction.REVOKE_DEVICE, device_id, {"scope": scope.value})
    return ApiResponse.no_content()


# =============================================================================
# Endpoints
# =============================================================================

# Device presence is lifted for this path by the allowlist; the ceiling is
# enforced by registration itself so kick_previous can still make room.
complete_login = create_handler(
    handler=_complete_login,
    schema=CompleteLoginBody,
    access=AccessPolicy(require_device=True, enforce_device_limit=False),
)

# Open to an account over its device ceiling so it can make room again.
list_devices = create_handler(
    handler=_list_devices,
    schema=EmptyBody,
    access=require_device(enforce_limit=False),
)

heartbeat = create_handler(
    handler=_heartbeat,
    schema=HeartbeatBody,
    access=require_device(enforce_limit=False),
)

revoke_device = create_handler(
    handler=_revoke_device,
    schema=EmptyBody,
    access=require_device(enforce_limit=False),
)
