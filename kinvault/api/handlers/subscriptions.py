"""
Subscription endpoints: current subscription, history, start, cancel and
cancel-at-period-end scheduling.
"""

from __future__ import annotations

from typing import Literal

from kinvault.api.pipeline import ApiResponse, AuthorizedRequest, create_handler
from kinvault.api.schemas import EmptyBody, RequestSchema
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.auth.policies import require_device
from kinvault.auth.subscriptions import (
    cancel_current_subscription,
    create_subscription,
    list_history,
    set_cancel_at_period_end,
)
from kinvault.core.models import AuditAction


class CreateSubscriptionBody(RequestSchema):
    plan: Literal["premium", "monthly", "yearly"] = "premium"


class UpdateStatusBody(RequestSchema):
    cancel_at_period_end: bool


def _paging(req: AuthorizedRequest) -> dict:
    return {
        "page_size": req.settings.subscription_page_size,
        "max_pages": req.settings.subscription_max_pages,
    }


async def _get_subscription(req: AuthorizedRequest) -> ApiResponse:
    # Resolved by the pipeline for this request
    current = req.outcome.subscription
    if current is None:
        raise GuardError(ErrorCode.NOT_FOUND, "No active subscription found.")
    return ApiResponse.json(current)


async def _subscription_history(req: AuthorizedRequest) -> ApiResponse:
    rows = await list_history(req.storage.subscriptions, req.user.user_id, **_paging(req))
    return ApiResponse.json([row.to_item() for row in rows])


async def _create_subscription(req: AuthorizedRequest) -> ApiResponse:
    body: CreateSubscriptionBody = req.body
    subscription = await create_subscription(req.storage.subscriptions, req.user.user_id, plan=body.plan)
    req.audit(AuditAction.CREATE_SUBSCRIPTION, req.user.user_id, {"plan": body.plan})
    return ApiResponse.json(subscription, 201)


async def _cancel_subscription(req: AuthorizedRequest) -> ApiResponse:
    canceled = await cancel_current_subscription(req.storage.subscriptions, req.user.user_id, **_paging(req))
    req.audit(
        AuditAction.CANCEL_SUBSCRIPTION,
        req.user.user_id,
        {"createdAt": canceled.created_at.isoformat(), "immediate": True},
    )
    return ApiResponse.json(canceled)


async def _update_status(req: AuthorizedRequest) -> ApiResponse:
    body: UpdateStatusBody = req.body
    updated = await set_cancel_at_period_end(
        req.storage.subscriptions,
        req.user.user_id,
        body.cancel_at_period_end,
        **_paging(req),
    )
    action = AuditAction.CANCEL_SUBSCRIPTION if body.cancel_at_period_end else AuditAction.RESUME_SUBSCRIPTION
    req.audit(action, req.user.user_id, {"cancelAtPeriodEnd": body.cancel_at_period_end})
    return ApiResponse.json(updated)


# An account over its device ceiling may still upgrade.
get_subscription = create_handler(
    handler=_get_subscription,
    schema=EmptyBody,
    access=require_device(enforce_limit=False),
)

subscription_history = create_handler(
    handler=_subscription_history,
    schema=EmptyBody,
    access=require_device(enforce_limit=False),
)

start_subscription = create_handler(
    handler=_create_subscription,
    schema=CreateSubscriptionBody,
    access=require_device(enforce_limit=False),
)

cancel_subscription = create_handler(
    handler=_cancel_subscription,
    schema=EmptyBody,
    access=require_device(enforce_limit=False),
)

update_subscription_status = create_handler(
    handler=_update_status,
    schema=UpdateStatusBody,
    access=require_device(enforce_limit=False),
)
