"""
Tests for profile RBAC: Owner / Viewer over shared profiles.
"""

import pytest

from kinvault.auth.capabilities import role_satisfies
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.auth.rbac import NO_ACCESS_MESSAGE, ResourceRoleGate
from kinvault.core.models import Role, ShareStatus


@pytest.fixture
def gate(storage):
    return ResourceRoleGate(storage.profiles)


class TestRoleSatisfies:
    def test_owner_covers_viewer(self):
        assert role_satisfies(Role.OWNER, Role.VIEWER)
        assert role_satisfies(Role.OWNER, Role.OWNER)

    def test_viewer_does_not_cover_owner(self):
        assert role_satisfies(Role.VIEWER, Role.VIEWER)
        assert not role_satisfies(Role.VIEWER, Role.OWNER)

    def test_no_role(self):
        assert not role_satisfies(None, Role.VIEWER)


class TestEnsureRole:
    @pytest.mark.asyncio
    async def test_owner(self, gate, add_profile):
        await add_profile()

        assert await gate.ensure_role("user1", "p1", Role.OWNER) == Role.OWNER

    @pytest.mark.asyncio
    async def test_accepted_viewer_can_read(self, gate, add_profile, add_share):
        await add_profile()
        await add_share()

        assert await gate.ensure_role("user2", "p1", Role.VIEWER) == Role.VIEWER

    @pytest.mark.asyncio
    async def test_viewer_cannot_act_as_owner(self, gate, add_profile, add_share):
        await add_profile()
        await add_share()

        with pytest.raises(GuardError) as exc:
            await gate.ensure_role("user2", "p1", Role.OWNER)
        assert exc.value.code == ErrorCode.FORBIDDEN

    @pytest.mark.asyncio
    async def test_pending_share_grants_nothing(self, gate, add_profile, add_share):
        await add_profile()
        await add_share(status=ShareStatus.PENDING)

        with pytest.raises(GuardError) as exc:
            await gate.ensure_role("user2", "p1", Role.VIEWER)
        assert exc.value.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_share_matched_by_email_when_id_unbound(self, gate, add_profile, add_share):
        await add_profile()
        await add_share(invitee_id=None, invitee_email="User2@Example.com")

        role = await gate.ensure_role("user2", "p1", Role.VIEWER, email="user2@example.com")

        assert role == Role.VIEWER

    @pytest.mark.asyncio
    async def test_no_access_and_missing_are_indistinguishable(self, gate, add_profile):
        await add_profile()

        with pytest.raises(GuardError) as no_access:
            await gate.ensure_role("user3", "p1", Role.VIEWER)
        with pytest.raises(GuardError) as missing:
            await gate.ensure_role("user3", "does-not-exist", Role.VIEWER)

        assert no_access.value.to_body() == missing.value.to_body()
        assert no_access.value.message == NO_ACCESS_MESSAGE
        assert no_access.value.status_code == 404
