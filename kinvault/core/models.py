"""
Core data models for the kinvault service.

These models are the shared data contracts between the access gates,
the handlers and the stores: Devices, Subscriptions, Profiles, Shares,
Vaccines, vaccine share links and Audit events.

Field names are snake_case in Python and camelCase on the wire and in
storage (``deviceId``, ``lastSeen``, ...).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from kinvault.core.utils import generate_id, utc_now


class KinvaultModel(BaseModel):
    """Base model: camelCase aliases, populate by either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_item(self) -> dict[str, Any]:
        """Serialize for storage or a response body."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Enums
# =============================================================================


class Role(str, Enum):
    """Access role on a shared profile."""

    OWNER = "Owner"    # Full control, activity log, sharing
    VIEWER = "Viewer"  # Read-only access


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"


class ShareStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"


class AuditAction(str, Enum):
    """Closed set of state-changing actions recorded in the activity log."""

    CREATE_PROFILE = "CREATE_PROFILE"
    UPDATE_PROFILE = "UPDATE_PROFILE"
    DELETE_PROFILE = "DELETE_PROFILE"
    CREATE_VACCINE = "CREATE_VACCINE"
    UPDATE_VACCINE = "UPDATE_VACCINE"
    DELETE_VACCINE = "DELETE_VACCINE"
    CREATE_VACCINE_LINK = "CREATE_VACCINE_LINK"
    REVOKE_VACCINE_LINK = "REVOKE_VACCINE_LINK"
    CREATE_SHARE = "CREATE_SHARE"
    UPDATE_SHARE = "UPDATE_SHARE"
    DELETE_SHARE = "DELETE_SHARE"
    ACCEPT_SHARE = "ACCEPT_SHARE"
    CREATE_SUBSCRIPTION = "CREATE_SUBSCRIPTION"
    CANCEL_SUBSCRIPTION = "CANCEL_SUBSCRIPTION"
    RESUME_SUBSCRIPTION = "RESUME_SUBSCRIPTION"
    REGISTER_DEVICE = "REGISTER_DEVICE"
    REVOKE_DEVICE = "REVOKE_DEVICE"


# =============================================================================
# Devices
# =============================================================================


class DeviceAttributes(KinvaultModel):
    """Descriptive attributes reported by the client (``x-device-info``)."""

    device_type: str | None = None
    os_name: str | None = None
    browser_name: str | None = None
    locale: str | None = None
    time_zone: str | None = None

    def merged(self, update: DeviceAttributes | None) -> DeviceAttributes:
        """Return a copy with every non-empty field of ``update`` applied."""
        if update is None:
            return self
        changes = {k: v for k, v in update.model_dump().items() if v not in (None, "")}
        return self.model_copy(update=changes)


class Device(KinvaultModel):
    """A trusted device. ``device_id`` is globally unique."""

    device_id: str
    user_id: str
    last_seen: datetime = Field(default_factory=utc_now)
    attributes: DeviceAttributes = Field(default_factory=DeviceAttributes)


# =============================================================================
# Subscriptions
# =============================================================================


class Subscription(KinvaultModel):
    """
    One row of a user's subscription history.

    Keyed by (user_id, created_at). Several rows may exist per user; the
    *current* one is the newest row whose status is active.
    """

    user_id: str
    created_at: datetime
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    plan: str | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


class SubscriptionPage(BaseModel):
    """A page of subscription rows, newest first."""

    rows: list[Subscription] = Field(default_factory=list)
    next_page_token: str | None = None


# =============================================================================
# Profiles and sharing
# =============================================================================


class Profile(KinvaultModel):
    """A family member's record, owned by exactly one account."""

    profile_id: str = Field(default_factory=lambda: generate_id("prof"))
    user_id: str  # Owner
    name: str
    dob: str | None = None
    relationship: str | None = None
    gender: str | None = None
    blood_type: str | None = None
    allergies: str | None = None
    medical_conditions: str | None = None
    avatar_color: str | None = None
    nationality: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None


class Share(KinvaultModel):
    """Grants an invitee a role on someone else's profile."""

    share_id: str = Field(default_factory=lambda: generate_id("share"))
    profile_id: str
    owner_id: str
    owner_email: str | None = None
    invitee_email: str
    invitee_id: str | None = None  # bound on acceptance if not known at invite time
    role: Role = Role.VIEWER
    status: ShareStatus = ShareStatus.PENDING
    profile_name: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None

    def is_for(self, user_id: str, email: str | None = None) -> bool:
        """Whether this share names the given account as invitee."""
        if self.invitee_id is not None:
            return self.invitee_id == user_id
        return bool(email) and self.invitee_email.lower() == email.lower()


class Vaccine(KinvaultModel):
    """A vaccination record attached to a profile."""

    vaccine_id: str = Field(default_factory=lambda: generate_id("vac"))
    profile_id: str
    vaccine_name: str
    date: str | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None


class VaccineShareLink(KinvaultModel):
    """
    Public read-only link to one vaccine record.

    The token is the only credential; links expire after a fixed number of
    days and a vaccine has at most one live link.
    """

    token: str = Field(default_factory=lambda: str(uuid.uuid4()))
    profile_id: str
    vaccine_id: str
    created_at_epoch: int  # epoch seconds
    expires_at_epoch: int

    def is_expired(self, now_epoch: int) -> bool:
        return self.expires_at_epoch <= now_epoch

    @property
    def public_path(self) -> str:
        return f"/public/vaccine/{self.token}"


# =============================================================================
# Audit
# =============================================================================


class AuditEvent(KinvaultModel):
    """
    Immutable activity-log record.

    Owned by the actor (``user_id``), indexed by the affected ``resource``.
    """

    user_id: str
    ts: int  # epoch milliseconds
    action: AuditAction
    resource: str
    details: dict[str, Any] = Field(default_factory=dict)
