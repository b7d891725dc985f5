"""
Request pipeline - one wrapper around every protected endpoint.

``create_handler`` turns a business-logic callback into an endpoint that,
per request and in this order:

1. answers CORS preflight (OPTIONS) without touching anything else
2. parses the body and validates it against the declared schema
3. resolves the access policy (static or derived from the request), once
4. extracts the caller identity from trusted claims
5. confirms the claimed device belongs to the caller
6. enforces the device ceiling of the caller's subscription tier
7. checks the caller's role on the addressed profile
8. runs the callback with a ready ``UserContext``
9. writes the audit events the callback queued, if it succeeded

The first failing step ends the request with its uniform error body.
Anything unexpected becomes a generic ``INTERNAL_ERROR`` that carries the
correlation id and nothing else; the detail goes to the log and Sentry.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel, ValidationError

from kinvault.api.schemas import load_body
from kinvault.audit.recorder import AuditRecorder
from kinvault.auth.capabilities import tier_for
from kinvault.auth.context import AccessOutcome, UserContext
from kinvault.auth.devices import DeviceTrustGate
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.auth.identity import Identity, extract_identity
from kinvault.auth.policies import AccessPolicy, AccessSpec, as_access_spec
from kinvault.auth.rbac import ResourceRoleGate
from kinvault.auth.subscriptions import resolve_current_subscription
from kinvault.config import Settings, get_settings
from kinvault.core.models import AuditAction, DeviceAttributes
from kinvault.core.observability import bind_correlation_id, reset_correlation_id
from kinvault.core.utils import generate_id
from kinvault.integrations.sentry import capture_exception, set_user
from kinvault.storage.base import StorageProvider

logger = logging.getLogger(__name__)

DEVICE_ID_HEADER = "x-device-id"
DEVICE_INFO_HEADER = "x-device-info"
CORRELATION_ID_HEADER = "x-correlation-id"

CORS_ALLOW_HEADERS = "Content-Type,Authorization,X-Device-Id,X-Device-Info,X-Correlation-Id"
CORS_ALLOW_METHODS = "GET,POST,PUT,PATCH,DELETE,OPTIONS"


# =============================================================================
# Request / Response
# =============================================================================


@dataclass
class ApiRequest:
    """Transport-neutral view of an incoming request."""

    method: str = "GET"
    path: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    is_base64_encoded: bool = False
    path_params: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, str] = field(default_factory=dict)
    claims: Mapping[str, Any] | None = None  # already verified upstream

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def device_info(self) -> DeviceAttributes | None:
        """Attributes from the ``x-device-info`` JSON header. Malformed is ignored."""
        raw = self.header(DEVICE_INFO_HEADER)
        if not raw:
            return None
        try:
            return DeviceAttributes.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            logger.debug(f"Ignoring malformed {DEVICE_INFO_HEADER} header")
            return None


@dataclass
class ApiResponse:
    status_code: int = 200
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def json(cls, data: Any, status_code: int = 200) -> ApiResponse:
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", by_alias=True, exclude_none=True)
        return cls(
            status_code=status_code,
            body=json.dumps(data, default=str),
            headers={"Content-Type": "application/json"},
        )

    @classmethod
    def no_content(cls) -> ApiResponse:
        return cls(status_code=204)

    def json_body(self) -> Any:
        return json.loads(self.body) if self.body else None


# =============================================================================
# Services
# =============================================================================


class ApiServices:
    """
    Everything a request needs beyond the request itself.

    Built once at startup from the chosen storage backend.
    """

    def __init__(self, storage: StorageProvider, settings: Settings | None = None):
        self.storage = storage
        self.settings = settings or get_settings()
        self.devices = DeviceTrustGate.from_storage(storage, self.settings)
        self.roles = ResourceRoleGate(storage.profiles)
        self.recorder = AuditRecorder(storage.audit)


@dataclass
class PendingAudit:
    action: AuditAction
    resource: str
    details: dict[str, Any] | None = None


@dataclass
class AuthorizedRequest:
    """What a business-logic callback receives once every gate has passed."""

    request: ApiRequest
    user: UserContext
    outcome: AccessOutcome
    body: Any
    services: ApiServices
    pending_audits: list[PendingAudit] = field(default_factory=list)

    @property
    def storage(self) -> StorageProvider:
        return self.services.storage

    @property
    def settings(self) -> Settings:
        return self.services.settings

    @property
    def path_params(self) -> dict[str, str]:
        return self.request.path_params

    @property
    def query_params(self) -> dict[str, str]:
        return self.request.query_params

    def audit(self, action: AuditAction, resource: str, details: dict[str, Any] | None = None) -> None:
        """Queue an activity-log event, written only if the callback succeeds."""
        self.pending_audits.append(PendingAudit(action, resource, details))


HandlerFunc = Callable[[AuthorizedRequest], Awaitable[ApiResponse]]


# =============================================================================
# Gates
# =============================================================================


def path_is_allowlisted(path: str, allowlist: frozenset[str]) -> bool:
    """Match exactly, or after an API-gateway stage prefix (``/prod/auth/...``)."""
    normalized = path.rstrip("/") or "/"
    return any(normalized == p or normalized.endswith(p) for p in allowlist)


async def enforce_access(
    services: ApiServices,
    identity: Identity,
    policy: AccessPolicy,
    request: ApiRequest,
) -> tuple[UserContext, AccessOutcome]:
    """Run the device, ceiling and role gates the policy asks for."""
    settings = services.settings

    # Re-derived on every request; never cached across requests
    subscription = await resolve_current_subscription(
        services.storage.subscriptions,
        identity.user_id,
        settings.subscription_page_size,
        settings.subscription_max_pages,
    )
    tier = tier_for(subscription is not None)

    claimed_device_id = request.header(DEVICE_ID_HEADER) or identity.device_id
    device = None
    if policy.require_device:
        device = await services.devices.ensure_trusted_device(identity.user_id, claimed_device_id)

    if policy.enforce_device_limit:
        await services.devices.ensure_within_device_limit(identity.user_id, tier)

    profile_id = None
    profile_role = None
    if policy.profile is not None:
        profile_id = policy.profile.id
        if not profile_id:
            raise GuardError(ErrorCode.BAD_REQUEST, "Profile id is required")
        profile_role = await services.roles.ensure_role(
            identity.user_id,
            profile_id,
            policy.profile.required_role,
            identity.email,
        )

    user = UserContext(
        user_id=identity.user_id,
        email=identity.email,
        device_id=device.device_id if device else claimed_device_id,
        subscription_active=subscription is not None,
    )
    outcome = AccessOutcome(
        policy=policy,
        subscription=subscription,
        device=device,
        profile_id=profile_id,
        profile_role=profile_role,
    )
    return user, outcome


# =============================================================================
# Endpoint wrapper
# =============================================================================


class Endpoint:
    """A business-logic callback wrapped in the full access pipeline."""

    def __init__(
        self,
        handler: HandlerFunc,
        schema: type[BaseModel] | None = None,
        access: Any = None,
        name: str | None = None,
    ):
        self.handler = handler
        self.schema = schema
        self.access: AccessSpec = as_access_spec(access)
        self.name = name or getattr(handler, "__name__", "handler")

    async def __call__(self, request: ApiRequest, services: ApiServices) -> ApiResponse:
        correlation_id = request.header(CORRELATION_ID_HEADER) or generate_id("req")
        token = bind_correlation_id(correlation_id)
        try:
            response = await self._run(request, services, correlation_id)
        finally:
            reset_correlation_id(token)

        response.headers.update(cors_headers(request, services.settings.cors_origins_list))
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response

    async def _run(self, request: ApiRequest, services: ApiServices, correlation_id: str) -> ApiResponse:
        if request.method.upper() == "OPTIONS":
            return ApiResponse.no_content()

        try:
            body = load_body(request.body, self.schema, request.is_base64_encoded)
            policy = self.access.resolve(request)

            if policy.public:
                authorized = AuthorizedRequest(
                    request=request,
                    user=UserContext.public(),
                    outcome=AccessOutcome(policy=policy),
                    body=body,
                    services=services,
                )
            else:
                identity = extract_identity(request.claims)
                set_user(identity.user_id)
                if path_is_allowlisted(request.path, services.settings.device_allowlist):
                    policy = policy.without_device_checks()
                user, outcome = await enforce_access(services, identity, policy, request)
                authorized = AuthorizedRequest(
                    request=request,
                    user=user,
                    outcome=outcome,
                    body=body,
                    services=services,
                )

            response = await self.handler(authorized)

        except GuardError as e:
            logger.info(f"{self.name}: {e.code.value} ({e.message})", extra={"error_code": e.code.value})
            return ApiResponse.json(e.to_body(), e.status_code)

        except Exception as e:
            logger.exception(f"{self.name}: unhandled error")
            capture_exception(e, correlation_id=correlation_id, endpoint=self.name)
            return ApiResponse.json(
                {
                    "code": ErrorCode.INTERNAL_ERROR.value,
                    "message": "Internal Server Error",
                    "correlationId": correlation_id,
                },
                500,
            )

        if response.status_code < 400:
            for pending in authorized.pending_audits:
                await services.recorder.record(
                    authorized.user.user_id,
                    pending.action,
                    pending.resource,
                    pending.details,
                )
        return response


def create_handler(
    handler: HandlerFunc,
    schema: type[BaseModel] | None = None,
    access: Any = None,
) -> Endpoint:
    """
    Wrap a business-logic callback in the access pipeline.

    Usage:
        get_profile = create_handler(
            handler=_get_profile,
            access=require_profile_role(Role.VIEWER),
        )
    """
    return Endpoint(handler, schema=schema, access=access)


def cors_headers(request: ApiRequest, allowed_origins: list[str] | None = None) -> dict[str, str]:
    """
    Mirror the request origin when it is allowed.

    ``allowed_origins`` of None or containing ``*`` allows any origin.
    Credentials are only advertised for a concrete, allowed origin.
    """
    origin = request.header("origin")
    headers = {
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
    }
    if not origin:
        headers["Access-Control-Allow-Origin"] = "*"
        return headers

    headers["Vary"] = "Origin"
    if allowed_origins is None or "*" in allowed_origins or origin in allowed_origins:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers
