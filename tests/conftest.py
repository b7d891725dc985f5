"""
Shared fixtures: in-memory storage, services, request and token factories.
"""

import json
from datetime import datetime, timezone

import pytest

from kinvault.api.pipeline import ApiRequest, ApiServices
from kinvault.config import Settings
from kinvault.core.models import Device, Profile, Role, Share, ShareStatus, Subscription
from kinvault.storage.local import create_local_storage


@pytest.fixture
def settings():
    """Settings with the stock ceilings, isolated from any local .env."""
    return Settings(
        _env_file=None,
        device_limit_free=1,
        device_limit_paid=5,
        cors_origins="http://localhost:3000",
        sentry_dsn="",
        aws_access_key_id="",
        aws_secret_access_key="",
    )


@pytest.fixture
def storage():
    return create_local_storage()


@pytest.fixture
def services(storage, settings):
    return ApiServices(storage, settings)


@pytest.fixture
def make_request():
    """Build an ApiRequest for user ``user_id`` (pass user_id=None for no claims)."""

    def _make(
        method="GET",
        path="/",
        body=None,
        user_id="user1",
        email="user1@example.com",
        device_id="dev1",
        path_params=None,
        query_params=None,
        headers=None,
    ):
        all_headers = dict(headers or {})
        if device_id:
            all_headers["X-Device-Id"] = device_id
        if body is not None and not isinstance(body, str):
            body = json.dumps(body)
        return ApiRequest(
            method=method,
            path=path,
            headers=all_headers,
            body=body,
            path_params=path_params or {},
            query_params=query_params or {},
            claims={"sub": user_id, "email": email} if user_id else None,
        )

    return _make


@pytest.fixture
def add_device(storage):
    async def _add(user_id="user1", device_id="dev1"):
        device = Device(device_id=device_id, user_id=user_id)
        await storage.devices.put(device)
        return device

    return _add


@pytest.fixture
def add_subscription(storage):
    async def _add(user_id="user1", created_at=1, status="active"):
        subscription = Subscription(
            user_id=user_id,
            created_at=datetime.fromtimestamp(created_at, tz=timezone.utc),
            status=status,
        )
        await storage.subscriptions.put(subscription)
        return subscription

    return _add


@pytest.fixture
def add_profile(storage):
    async def _add(profile_id="p1", owner_id="user1", name="Ada"):
        profile = Profile(profile_id=profile_id, user_id=owner_id, name=name, dob="2019-04-01")
        await storage.profiles.put_profile(profile)
        return profile

    return _add


@pytest.fixture
def add_share(storage):
    async def _add(
        profile_id="p1",
        owner_id="user1",
        invitee_id="user2",
        invitee_email="user2@example.com",
        role=Role.VIEWER,
        status=ShareStatus.ACCEPTED,
    ):
        share = Share(
            profile_id=profile_id,
            owner_id=owner_id,
            invitee_id=invitee_id,
            invitee_email=invitee_email,
            role=role,
            status=status,
        )
        await storage.profiles.put_share(share)
        return share

    return _add
