"""
Tests for the request pipeline.

Order matters: body, then identity, then device, ceiling and role. The
first failure ends the request and the callback never runs.
"""

import base64
import json

import pytest
from pydantic import Field

from kinvault.api.pipeline import ApiResponse, AuthorizedRequest, create_handler, path_is_allowlisted
from kinvault.api.schemas import EmptyBody, RequestSchema
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.auth.policies import AccessPolicy, ProfileRequirement, public, require_device, require_profile_role
from kinvault.core.models import AuditAction, Role
from kinvault.storage.base import AuditStore


class NoteBody(RequestSchema):
    title: str = Field(min_length=1)
    pinned: bool = False


class SpyHandler:
    """Callback that remembers whether it ran."""

    def __init__(self, response=None):
        self.calls: list[AuthorizedRequest] = []
        self.response = response or ApiResponse.json({"ok": True})

    async def __call__(self, req: AuthorizedRequest) -> ApiResponse:
        self.calls.append(req)
        return self.response


class FailingAuditStore(AuditStore):
    async def append(self, event):
        raise RuntimeError("audit table unavailable")

    async def list_by_resource(self, resource, limit=50):
        return []


# =============================================================================
# Body parsing and validation
# =============================================================================


class TestBodyHandling:
    @pytest.mark.asyncio
    async def test_missing_required_field_is_validation_error(self, services, make_request, add_device):
        await add_device()
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=NoteBody, access=require_device())

        response = await endpoint(make_request("POST", body={"pinned": True}), services)

        assert response.status_code == 400
        body = response.json_body()
        assert body["code"] == "VALIDATION_ERROR"
        assert "title" in body["details"]["fields"]
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_wrong_type_is_validation_error(self, services, make_request):
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=NoteBody, access=require_device())

        response = await endpoint(make_request("POST", body={"title": "x", "pinned": "often"}), services)

        assert response.json_body()["code"] == "VALIDATION_ERROR"
        assert response.json_body()["details"]["fields"] == ["pinned"]
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_missing_body_with_required_fields_is_bad_request(self, services, make_request):
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=NoteBody, access=require_device())

        response = await endpoint(make_request("POST"), services)

        assert response.status_code == 400
        assert response.json_body()["code"] == "BAD_REQUEST"
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_malformed_json_is_bad_request(self, services, make_request):
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=NoteBody, access=require_device())

        response = await endpoint(make_request("POST", body="{not json"), services)

        assert response.json_body()["code"] == "BAD_REQUEST"
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_missing_body_without_required_fields_reads_as_empty(self, services, make_request, add_device):
        await add_device()
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=EmptyBody, access=require_device())

        response = await endpoint(make_request(), services)

        assert response.status_code == 200
        assert isinstance(handler.calls[0].body, EmptyBody)

    @pytest.mark.asyncio
    async def test_base64_body_is_decoded(self, services, make_request, add_device):
        await add_device()
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=NoteBody, access=require_device())

        request = make_request("POST", body=base64.b64encode(b'{"title": "hello"}').decode())
        request.is_base64_encoded = True
        response = await endpoint(request, services)

        assert response.status_code == 200
        assert handler.calls[0].body.title == "hello"

    @pytest.mark.asyncio
    async def test_validation_runs_before_identity(self, services, make_request):
        endpoint = create_handler(SpyHandler(), schema=NoteBody, access=require_device())

        response = await endpoint(make_request("POST", body={}, user_id=None), services)

        assert response.json_body()["code"] == "VALIDATION_ERROR"


# =============================================================================
# Identity and device trust
# =============================================================================


class TestIdentityAndDevice:
    @pytest.mark.asyncio
    async def test_no_claims_is_unauthenticated(self, services, make_request):
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=EmptyBody, access=require_device())

        response = await endpoint(make_request(user_id=None), services)

        assert response.status_code == 401
        assert response.json_body()["code"] == "UNAUTHENTICATED"
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_missing_device_id(self, services, make_request):
        endpoint = create_handler(SpyHandler(), schema=EmptyBody, access=require_device())

        response = await endpoint(make_request(device_id=None), services)

        assert response.status_code == 400
        assert response.json_body()["code"] == "DEVICE_REQUIRED"

    @pytest.mark.asyncio
    async def test_unknown_device(self, services, make_request):
        endpoint = create_handler(SpyHandler(), schema=EmptyBody, access=require_device())

        response = await endpoint(make_request(device_id="ghost"), services)

        assert response.status_code == 403
        assert response.json_body()["code"] == "DEVICE_NOT_FOUND"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("schema,body", [
        (NoteBody, {"title": "fine"}),
        (EmptyBody, None),
        (EmptyBody, {"anything": "goes"}),
    ])
    async def test_foreign_device_is_forbidden(self, services, make_request, add_device, schema, body):
        await add_device(user_id="user2", device_id="dev-of-user2")
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=schema, access=require_device())

        response = await endpoint(make_request("POST", body=body, device_id="dev-of-user2"), services)

        assert response.status_code == 403
        assert response.json_body()["code"] == "FORBIDDEN"
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_device_id_falls_back_to_token_claim(self, services, make_request, add_device):
        await add_device(device_id="dev-in-token")
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=EmptyBody, access=require_device())

        request = make_request(device_id=None)
        request.claims = {**request.claims, "custom:deviceId": "dev-in-token"}
        response = await endpoint(request, services)

        assert response.status_code == 200
        assert handler.calls[0].user.device_id == "dev-in-token"

    @pytest.mark.asyncio
    async def test_user_context_is_populated(self, services, make_request, add_device, add_subscription):
        await add_device()
        await add_subscription()
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=EmptyBody, access=require_device())

        await endpoint(make_request(), services)

        user = handler.calls[0].user
        assert user.user_id == "user1"
        assert user.email == "user1@example.com"
        assert user.device_id == "dev1"
        assert user.subscription_active is True

    @pytest.mark.asyncio
    async def test_allowlisted_path_skips_device_presence(self, services, make_request):
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=EmptyBody, access=require_device())

        response = await endpoint(make_request("POST", path="/auth/complete-login", device_id=None), services)

        assert response.status_code == 200
        assert handler.calls[0].outcome.policy.require_device is False

    @pytest.mark.asyncio
    async def test_public_policy_skips_identity(self, services, make_request):
        handler = SpyHandler()
        endpoint = create_handler(handler, access=public())

        response = await endpoint(make_request(user_id=None, device_id=None), services)

        assert response.status_code == 200


# =============================================================================
# Device ceiling
# =============================================================================


class TestDeviceCeiling:
    @pytest.mark.asyncio
    async def test_over_free_ceiling_is_rejected(self, services, make_request, add_device):
        await add_device(device_id="dev1")
        await add_device(device_id="dev2")
        endpoint = create_handler(SpyHandler(), schema=EmptyBody, access=require_device())

        response = await endpoint(make_request(), services)

        assert response.status_code == 403
        body = response.json_body()
        assert body["code"] == "DEVICE_LIMIT_EXCEEDED"
        assert body["details"] == {"limit": 1, "count": 2}

    @pytest.mark.asyncio
    async def test_paid_ceiling_applies_with_active_subscription(
        self, services, make_request, add_device, add_subscription
    ):
        await add_device(device_id="dev1")
        await add_device(device_id="dev2")
        await add_subscription()
        endpoint = create_handler(SpyHandler(), schema=EmptyBody, access=require_device())

        response = await endpoint(make_request(), services)

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_ceiling_not_checked_when_disabled(self, services, make_request, add_device):
        await add_device(device_id="dev1")
        await add_device(device_id="dev2")
        endpoint = create_handler(SpyHandler(), schema=EmptyBody, access=require_device(enforce_limit=False))

        response = await endpoint(make_request(), services)

        assert response.status_code == 200


# =============================================================================
# Policies and roles
# =============================================================================


class TestPolicyResolution:
    @pytest.mark.asyncio
    async def test_derived_policy_evaluated_once(self, services, make_request, add_device, add_profile):
        await add_device()
        await add_profile()
        calls = []

        def derive(request):
            calls.append(request)
            return AccessPolicy(profile=ProfileRequirement(id=request.path_params["profile_id"]))

        endpoint = create_handler(SpyHandler(), schema=EmptyBody, access=derive)
        response = await endpoint(make_request(path_params={"profile_id": "p1"}), services)

        assert response.status_code == 200
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_missing_profile_id_is_bad_request(self, services, make_request, add_device):
        await add_device()
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=EmptyBody, access=require_profile_role(Role.VIEWER))

        response = await endpoint(make_request(), services)

        assert response.status_code == 400
        assert response.json_body()["code"] == "BAD_REQUEST"
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_viewer_cannot_use_owner_endpoint(
        self, services, make_request, add_device, add_profile, add_share
    ):
        await add_device(user_id="user2", device_id="dev2")
        await add_profile()
        await add_share(role=Role.VIEWER)
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=EmptyBody, access=require_profile_role(Role.OWNER))

        response = await endpoint(
            make_request(user_id="user2", email="user2@example.com", device_id="dev2",
                         path_params={"profile_id": "p1"}),
            services,
        )

        assert response.status_code == 403
        assert response.json_body()["code"] == "FORBIDDEN"
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_owner_passes_owner_endpoint(self, services, make_request, add_device, add_profile):
        await add_device()
        await add_profile()
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=EmptyBody, access=require_profile_role(Role.OWNER))

        response = await endpoint(make_request(path_params={"profile_id": "p1"}), services)

        assert response.status_code == 200
        assert handler.calls[0].outcome.profile_role == Role.OWNER
        assert handler.calls[0].outcome.is_owner

    @pytest.mark.asyncio
    async def test_no_access_looks_like_missing(self, services, make_request, add_device, add_profile):
        await add_device(user_id="user3", device_id="dev3")
        await add_profile()
        endpoint = create_handler(SpyHandler(), schema=EmptyBody, access=require_profile_role(Role.VIEWER))

        stranger = await endpoint(
            make_request(user_id="user3", device_id="dev3", path_params={"profile_id": "p1"}), services
        )
        missing = await endpoint(
            make_request(user_id="user3", device_id="dev3", path_params={"profile_id": "nope"}), services
        )

        assert stranger.status_code == missing.status_code == 404
        assert stranger.json_body() == missing.json_body()


# =============================================================================
# Errors, correlation, CORS
# =============================================================================


class TestErrorsAndHeaders:
    @pytest.mark.asyncio
    async def test_unexpected_error_is_generic(self, services, make_request, add_device):
        await add_device()

        async def broken(req):
            raise RuntimeError("secret connection string")

        endpoint = create_handler(broken, schema=EmptyBody, access=require_device())
        response = await endpoint(make_request(headers={"x-correlation-id": "corr-123"}), services)

        assert response.status_code == 500
        body = response.json_body()
        assert body == {
            "code": "INTERNAL_ERROR",
            "message": "Internal Server Error",
            "correlationId": "corr-123",
        }
        assert "secret" not in response.body
        assert response.headers["x-correlation-id"] == "corr-123"

    @pytest.mark.asyncio
    async def test_handler_guard_error_is_rendered(self, services, make_request, add_device):
        await add_device()

        async def conflict(req):
            raise GuardError(ErrorCode.CONFLICT, "Already there")

        endpoint = create_handler(conflict, schema=EmptyBody, access=require_device())
        response = await endpoint(make_request(), services)

        assert response.status_code == 409
        assert response.json_body() == {"code": "CONFLICT", "message": "Already there"}

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, services, make_request):
        endpoint = create_handler(SpyHandler(), access=public())

        response = await endpoint(make_request(), services)

        assert response.headers["x-correlation-id"].startswith("req_")

    @pytest.mark.asyncio
    async def test_options_preflight(self, services, make_request):
        handler = SpyHandler()
        endpoint = create_handler(handler, schema=NoteBody, access=require_device())

        response = await endpoint(
            make_request("OPTIONS", user_id=None, headers={"Origin": "http://localhost:3000"}),
            services,
        )

        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_unlisted_origin_is_not_mirrored(self, services, make_request):
        endpoint = create_handler(SpyHandler(), access=public())

        response = await endpoint(make_request(headers={"Origin": "https://evil.example"}), services)

        assert "Access-Control-Allow-Origin" not in response.headers


# =============================================================================
# Audit dispatch
# =============================================================================


class TestAuditDispatch:
    @pytest.mark.asyncio
    async def test_queued_audit_written_after_success(self, services, storage, make_request, add_device):
        await add_device()

        async def create(req):
            req.audit(AuditAction.CREATE_PROFILE, "p9", {"name": "Bo"})
            return ApiResponse.json({"profileId": "p9"}, 201)

        endpoint = create_handler(create, schema=EmptyBody, access=require_device())
        response = await endpoint(make_request("POST"), services)

        assert response.status_code == 201
        events = await storage.audit.list_by_resource("p9")
        assert len(events) == 1
        assert events[0].user_id == "user1"
        assert events[0].action == AuditAction.CREATE_PROFILE

    @pytest.mark.asyncio
    async def test_no_audit_when_callback_fails(self, services, storage, make_request, add_device):
        await add_device()

        async def create(req):
            req.audit(AuditAction.CREATE_PROFILE, "p9")
            raise GuardError(ErrorCode.NOT_FOUND)

        endpoint = create_handler(create, schema=EmptyBody, access=require_device())
        await endpoint(make_request("POST"), services)

        assert await storage.audit.list_by_resource("p9") == []

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_change_response(self, services, make_request, add_device):
        await add_device()
        services.recorder.store = FailingAuditStore()

        async def create(req):
            req.audit(AuditAction.CREATE_PROFILE, "p9")
            return ApiResponse.json({"profileId": "p9"}, 201)

        endpoint = create_handler(create, schema=EmptyBody, access=require_device())
        response = await endpoint(make_request("POST"), services)

        assert response.status_code == 201
        assert json.loads(response.body) == {"profileId": "p9"}


class TestAllowlistMatching:
    def test_exact_and_stage_prefixed(self):
        allowlist = frozenset({"/auth/complete-login"})
        assert path_is_allowlisted("/auth/complete-login", allowlist)
        assert path_is_allowlisted("/prod/auth/complete-login/", allowlist)
        assert not path_is_allowlisted("/devices", allowlist)
