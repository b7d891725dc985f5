"""
End-to-end tests through the FastAPI surface.

Bearer tokens are minted with the development secret and verified by the
app, exactly as a client would see it.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from kinvault.api.app import create_app
from kinvault.api.pipeline import ApiServices
from kinvault.auth.jwt import create_access_token
from kinvault.core.models import AuditAction, Device, Profile, Role, Share, ShareStatus
from kinvault.storage.local import create_local_storage


@pytest.fixture
def api_storage():
    return create_local_storage()


@pytest.fixture
def client(api_storage, settings):
    app = create_app(ApiServices(api_storage, settings))
    with TestClient(app) as test_client:
        yield test_client


def auth(user_id="user1", email="user1@example.com", device_id="dev1"):
    headers = {"Authorization": f"Bearer {create_access_token(user_id, email)}"}
    if device_id:
        headers["X-Device-Id"] = device_id
    return headers


# =============================================================================
# Scenario: device ceiling, revoke, re-register
# =============================================================================


class TestDeviceLifecycle:
    def test_ceiling_revoke_and_register(self, client, api_storage):
        first = client.post("/auth/complete-login", json={"deviceId": "dev1"}, headers=auth(device_id=None))
        assert first.status_code == 200

        # Free tier ceiling is 1
        second = client.post("/auth/complete-login", json={"deviceId": "dev2"}, headers=auth(device_id=None))
        assert second.status_code == 403
        assert second.json()["code"] == "DEVICE_LIMIT_EXCEEDED"

        revoke = client.delete("/devices/dev1", params={"scope": "single"}, headers=auth(device_id="dev1"))
        assert revoke.status_code == 204

        listing = client.get("/devices", headers=auth(device_id="dev1"))
        assert listing.status_code == 403
        assert listing.json()["code"] == "DEVICE_NOT_FOUND"

        third = client.post("/auth/complete-login", json={"deviceId": "dev2"}, headers=auth(device_id=None))
        assert third.status_code == 200

        devices = client.get("/devices", headers=auth(device_id="dev2")).json()
        assert [d["deviceId"] for d in devices] == ["dev2"]

    def test_kick_previous(self, client):
        client.post("/auth/complete-login", json={"deviceId": "dev1"}, headers=auth(device_id=None))

        response = client.post(
            "/auth/complete-login",
            json={"deviceId": "dev2", "kickPrevious": True, "meta": {"osName": "Android"}},
            headers=auth(device_id=None),
        )

        assert response.status_code == 200
        assert response.json()["device"]["attributes"]["osName"] == "Android"
        devices = client.get("/devices", headers=auth(device_id="dev2")).json()
        assert [d["deviceId"] for d in devices] == ["dev2"]

    def test_global_revoke_signs_out(self, client, api_storage):
        client.post("/auth/complete-login", json={"deviceId": "dev1"}, headers=auth(device_id=None))

        response = client.delete("/devices/dev1?scope=global", headers=auth(device_id="dev1"))

        assert response.status_code == 204
        assert api_storage.identity.signed_out == ["user1"]

    def test_global_revoke_scope_is_case_insensitive(self, client, api_storage):
        client.post("/auth/complete-login", json={"deviceId": "dev1"}, headers=auth(device_id=None))

        response = client.delete("/devices/dev1?scope=GLOBAL", headers=auth(device_id="dev1"))

        assert response.status_code == 204
        assert api_storage.identity.signed_out == ["user1"]

    def test_unknown_scope(self, client):
        client.post("/auth/complete-login", json={"deviceId": "dev1"}, headers=auth(device_id=None))

        response = client.delete("/devices/dev1?scope=everything", headers=auth(device_id="dev1"))

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert response.json()["message"] == "Invalid scope; expected single or global"
        assert response.json()["details"]["fields"] == ["scope"]

    def test_over_ceiling_account_can_recover(self, client, api_storage):
        """A free account holding two devices can still revoke one or upgrade."""
        async def seed():
            await api_storage.devices.put(Device(device_id="dev1", user_id="user1"))
            await api_storage.devices.put(Device(device_id="dev2", user_id="user1"))

        asyncio.run(seed())

        blocked = client.get("/profiles", headers=auth(device_id="dev1"))
        assert blocked.status_code == 403
        assert blocked.json()["code"] == "DEVICE_LIMIT_EXCEEDED"

        assert client.get("/devices", headers=auth(device_id="dev1")).status_code == 200
        assert client.post("/subscription", json={"plan": "monthly"}, headers=auth(device_id="dev1")).status_code == 201

        revoked = client.delete("/devices/dev2", headers=auth(device_id="dev1"))
        assert revoked.status_code == 204
        assert client.get("/profiles", headers=auth(device_id="dev1")).status_code == 200

    def test_heartbeat(self, client, api_storage):
        client.post("/auth/complete-login", json={"deviceId": "dev1"}, headers=auth(device_id=None))

        ok = client.put("/devices/heartbeat", json={"deviceId": "dev1", "locale": "nl"}, headers=auth())
        mismatch = client.put("/devices/heartbeat", json={"deviceId": "other"}, headers=auth())

        assert ok.status_code == 200
        assert mismatch.status_code == 400
        devices = client.get("/devices", headers=auth()).json()
        assert devices[0]["attributes"]["locale"] == "nl"

    def test_complete_login_requires_device_id(self, client):
        response = client.post("/auth/complete-login", json={}, headers=auth(device_id=None))

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert response.json()["details"]["fields"] == ["deviceId"]

    def test_no_token(self, client):
        response = client.get("/devices", headers={"X-Device-Id": "dev1"})

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHENTICATED"


# =============================================================================
# Scenario: Viewer vs Owner on the activity log
# =============================================================================


@pytest.fixture
def shared_profile(client, api_storage):
    """Owner user1 with profile p1 shared (ACCEPTED, Viewer) with user2."""
    async def seed():
        await api_storage.devices.put(Device(device_id="dev1", user_id="user1"))
        await api_storage.devices.put(Device(device_id="dev2", user_id="user2"))
        await api_storage.profiles.put_profile(Profile(profile_id="p1", user_id="user1", name="Ada"))
        await api_storage.profiles.put_share(Share(
            profile_id="p1",
            owner_id="user1",
            invitee_id="user2",
            invitee_email="user2@example.com",
            role=Role.VIEWER,
            status=ShareStatus.ACCEPTED,
        ))

    asyncio.run(seed())
    return "p1"


def viewer_auth():
    return auth(user_id="user2", email="user2@example.com", device_id="dev2")


class TestSharedProfileAccess:
    def test_audit_log_is_owner_only(self, client, shared_profile):
        created = client.post(
            f"/profiles/{shared_profile}/vaccines",
            json={"vaccineName": "MMR", "date": "2020-05-01"},
            headers=auth(),
        )
        assert created.status_code == 201

        as_viewer = client.get(f"/profiles/{shared_profile}/audit", headers=viewer_auth())
        assert as_viewer.status_code == 403
        assert as_viewer.json()["code"] == "FORBIDDEN"

        as_owner = client.get(f"/profiles/{shared_profile}/audit", headers=auth())
        assert as_owner.status_code == 200
        events = as_owner.json()
        assert [e["action"] for e in events] == [AuditAction.CREATE_VACCINE.value]
        assert events[0]["details"]["vaccineName"] == "MMR"

    def test_viewer_can_read_but_not_write(self, client, shared_profile):
        profile = client.get(f"/profiles/{shared_profile}", headers=viewer_auth())
        vaccines = client.get(f"/profiles/{shared_profile}/vaccines", headers=viewer_auth())
        write = client.post(
            f"/profiles/{shared_profile}/vaccines",
            json={"vaccineName": "Polio"},
            headers=viewer_auth(),
        )

        assert profile.status_code == 200
        assert profile.json()["role"] == "Viewer"
        assert vaccines.status_code == 200
        assert write.status_code == 403

    def test_stranger_sees_not_found(self, client, shared_profile, api_storage):
        asyncio.run(api_storage.devices.put(Device(device_id="dev3", user_id="user3")))

        response = client.get(
            f"/profiles/{shared_profile}",
            headers=auth(user_id="user3", email="user3@example.com", device_id="dev3"),
        )

        assert response.status_code == 404
        assert response.json() == {"code": "NOT_FOUND", "message": "Profile not found"}


# =============================================================================
# Profiles, shares, subscriptions, overview
# =============================================================================


@pytest.fixture
def logged_in(client):
    client.post("/auth/complete-login", json={"deviceId": "dev1"}, headers=auth(device_id=None))


class TestProfilesAndSharing:
    def test_create_update_delete(self, client, logged_in):
        created = client.post("/profiles", json={"name": "Bo", "dob": "2018-02-03"}, headers=auth())
        assert created.status_code == 201
        profile_id = created.json()["profileId"]

        updated = client.put(f"/profiles/{profile_id}", json={"allergies": "peanuts"}, headers=auth())
        assert updated.status_code == 200
        assert updated.json()["allergies"] == "peanuts"

        empty = client.put(f"/profiles/{profile_id}", json={}, headers=auth())
        assert empty.status_code == 400

        deleted = client.delete(f"/profiles/{profile_id}", headers=auth())
        assert deleted.status_code == 204
        assert client.get(f"/profiles/{profile_id}", headers=auth()).status_code == 404

    def test_invalid_dob(self, client, logged_in):
        response = client.post("/profiles", json={"name": "Bo", "dob": "not a date"}, headers=auth())

        assert response.status_code == 400
        assert response.json()["details"]["fields"] == ["dob"]

    def test_free_profile_limit(self, client, logged_in):
        for name in ("A", "B"):
            assert client.post("/profiles", json={"name": name, "dob": "2018-02-03"}, headers=auth()).status_code == 201

        third = client.post("/profiles", json={"name": "C", "dob": "2018-02-03"}, headers=auth())

        assert third.status_code == 403
        assert third.json()["details"]["reason"] == "PROFILE_LIMIT_REACHED"

    def test_invite_accept_flow(self, client, logged_in, api_storage):
        profile_id = client.post("/profiles", json={"name": "Bo", "dob": "2018-02-03"}, headers=auth()).json()["profileId"]

        invite = client.post(
            f"/profiles/{profile_id}/shares",
            json={"inviteeEmail": "user2@example.com", "role": "Viewer"},
            headers=auth(),
        )
        assert invite.status_code == 201
        share_id = invite.json()["shareId"]

        asyncio.run(api_storage.devices.put(Device(device_id="dev2", user_id="user2")))

        # Pending shares grant nothing yet
        assert client.get(f"/profiles/{profile_id}", headers=viewer_auth()).status_code == 404

        received = client.get("/shares/received", headers=viewer_auth()).json()
        assert [s["shareId"] for s in received] == [share_id]

        accepted = client.post(f"/shares/{share_id}/accept", json={"accept": True}, headers=viewer_auth())
        assert accepted.status_code == 200
        assert accepted.json()["inviteeId"] == "user2"

        assert client.get(f"/profiles/{profile_id}", headers=viewer_auth()).status_code == 200

        left = client.delete(f"/shares/{share_id}", headers=viewer_auth())
        assert left.status_code == 204
        assert client.get(f"/profiles/{profile_id}", headers=viewer_auth()).status_code == 404

    def test_cannot_share_with_self(self, client, logged_in):
        profile_id = client.post("/profiles", json={"name": "Bo", "dob": "2018-02-03"}, headers=auth()).json()["profileId"]

        response = client.post(
            f"/profiles/{profile_id}/shares",
            json={"inviteeEmail": "USER1@example.com"},
            headers=auth(),
        )

        assert response.status_code == 400


class TestSubscriptionEndpoints:
    def test_lifecycle(self, client, logged_in):
        assert client.get("/subscription", headers=auth()).status_code == 404

        started = client.post("/subscription", json={"plan": "monthly"}, headers=auth())
        assert started.status_code == 201

        current = client.get("/subscription", headers=auth())
        assert current.json()["plan"] == "monthly"

        scheduled = client.patch("/subscription", json={"cancelAtPeriodEnd": True}, headers=auth())
        assert scheduled.json()["cancelAtPeriodEnd"] is True

        canceled = client.delete("/subscription", headers=auth())
        assert canceled.json()["status"] == "canceled"

        again = client.delete("/subscription", headers=auth())
        assert again.status_code == 404
        assert again.json()["message"] == "No active subscription found to cancel."

        history = client.get("/subscription/history", headers=auth()).json()
        assert len(history) == 1

    def test_bad_plan(self, client, logged_in):
        response = client.post("/subscription", json={"plan": "lifetime"}, headers=auth())

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestOverviewAndHealth:
    def test_overview(self, client, logged_in):
        client.post("/profiles", json={"name": "Bo", "dob": "2018-02-03"}, headers=auth())

        overview = client.get("/user/overview", headers=auth()).json()

        assert overview == {
            "user": {"email": "user1@example.com"},
            "subscription": {"active": False},
            "counts": {"profiles": 1, "pendingShares": 0, "devices": 1},
        }

    def test_health_is_public(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert "x-correlation-id" in response.headers


# =============================================================================
# Public vaccine share links
# =============================================================================


@pytest.fixture
def vaccine_id(client, shared_profile):
    created = client.post(
        f"/profiles/{shared_profile}/vaccines",
        json={"vaccineName": "MMR", "date": "2020-05-01"},
        headers=auth(),
    )
    return created.json()["vaccineId"]


class TestVaccineShareLinks:
    def test_owner_link_opens_without_account(self, client, shared_profile, vaccine_id):
        created = client.post(
            f"/profiles/{shared_profile}/vaccines/{vaccine_id}/share-link",
            json={"days": 3},
            headers=auth(),
        )
        assert created.status_code == 201
        link = created.json()
        assert link["publicPath"] == f"/public/vaccine/{link['token']}"

        opened = client.get(link["publicPath"])

        assert opened.status_code == 200
        assert opened.json()["vaccine"]["vaccineName"] == "MMR"
        assert opened.json()["profile"] == {"profileId": shared_profile, "name": "Ada"}
        assert opened.json()["expiresAt"] == link["expiresAt"]

    def test_default_and_bounds(self, client, shared_profile, vaccine_id):
        path = f"/profiles/{shared_profile}/vaccines/{vaccine_id}/share-link"

        default = client.post(path, headers=auth())
        too_long = client.post(path, json={"days": 31}, headers=auth())

        assert default.status_code == 201
        assert too_long.status_code == 400
        assert too_long.json()["details"]["fields"] == ["days"]

    def test_new_link_replaces_old(self, client, shared_profile, vaccine_id, api_storage):
        path = f"/profiles/{shared_profile}/vaccines/{vaccine_id}/share-link"
        first = client.post(path, headers=auth()).json()
        second = client.post(path, headers=auth()).json()

        assert client.get(first["publicPath"]).status_code == 404
        assert client.get(second["publicPath"]).status_code == 200
        assert len(asyncio.run(api_storage.share_links.list_by_vaccine(vaccine_id))) == 1

    def test_viewer_cannot_mint(self, client, shared_profile, vaccine_id):
        response = client.post(
            f"/profiles/{shared_profile}/vaccines/{vaccine_id}/share-link",
            headers=viewer_auth(),
        )

        assert response.status_code == 403

    def test_expired_link_is_gone(self, client, shared_profile, vaccine_id, monkeypatch):
        link = client.post(
            f"/profiles/{shared_profile}/vaccines/{vaccine_id}/share-link",
            json={"days": 1},
            headers=auth(),
        ).json()

        monkeypatch.setattr(
            "kinvault.api.handlers.vaccine_links._now_epoch",
            lambda: link["expiresAt"],
        )
        response = client.get(link["publicPath"])

        assert response.status_code == 410
        assert response.json()["code"] == "GONE"

    def test_revoke_and_unknown_token(self, client, shared_profile, vaccine_id):
        path = f"/profiles/{shared_profile}/vaccines/{vaccine_id}/share-link"
        link = client.post(path, headers=auth()).json()

        assert client.delete(path, headers=auth()).status_code == 204
        assert client.get(link["publicPath"]).status_code == 404
        assert client.get("/public/vaccine/no-such-token").json()["code"] == "NOT_FOUND"

        actions = [e["action"] for e in client.get(f"/profiles/{shared_profile}/audit", headers=auth()).json()]
        assert actions[:2] == [AuditAction.REVOKE_VACCINE_LINK.value, AuditAction.CREATE_VACCINE_LINK.value]

    def test_deleting_vaccine_drops_link(self, client, shared_profile, vaccine_id):
        link = client.post(
            f"/profiles/{shared_profile}/vaccines/{vaccine_id}/share-link",
            headers=auth(),
        ).json()

        client.delete(f"/profiles/{shared_profile}/vaccines/{vaccine_id}", headers=auth())

        assert client.get(link["publicPath"]).status_code == 404


# =============================================================================
# CORS
# =============================================================================


class TestCors:
    def test_preflight_mirrors_allowed_origin(self, client):
        response = client.options(
            "/profiles",
            headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "POST"},
        )

        assert response.status_code == 204
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert response.headers["access-control-allow-credentials"] == "true"
        assert "X-Device-Id" in response.headers["access-control-allow-headers"]

    def test_disallowed_origin_is_not_mirrored(self, client):
        response = client.options(
            "/profiles",
            headers={"Origin": "http://evil.example", "Access-Control-Request-Method": "POST"},
        )

        assert response.status_code == 204
        assert "access-control-allow-origin" not in response.headers

    def test_error_responses_carry_cors_headers(self, client):
        response = client.get("/devices", headers={"Origin": "http://localhost:3000"})

        assert response.status_code == 401
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
