"""
Subscription resolution.

The *current* subscription is the most recently created row whose status
is active. Rows are scanned newest-first, page by page, until the first
active row turns up, the pages run out, or ``max_pages`` pages have been
read. Running out (or hitting the cap) means "no active subscription", not
an error.
"""

from __future__ import annotations

import logging

from kinvault.auth.capabilities import SubscriptionTier, tier_for
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.core.models import Subscription, SubscriptionStatus
from kinvault.core.utils import utc_now
from kinvault.storage.base import SubscriptionStore

logger = logging.getLogger(__name__)


async def resolve_current_subscription(
    store: SubscriptionStore,
    user_id: str,
    page_size: int = 25,
    max_pages: int = 20,
) -> Subscription | None:
    """Newest active subscription row for the user, or None."""
    page_token: str | None = None
    for _ in range(max_pages):
        page = await store.query_newest_first(user_id, page_token, limit=page_size)
        for row in page.rows:
            if row.is_active:
                return row
        if not page.next_page_token:
            return None
        page_token = page.next_page_token

    logger.warning(f"Stopped scanning subscriptions for {user_id} after {max_pages} pages")
    return None


async def resolve_tier(
    store: SubscriptionStore,
    user_id: str,
    page_size: int = 25,
    max_pages: int = 20,
) -> SubscriptionTier:
    current = await resolve_current_subscription(store, user_id, page_size, max_pages)
    return tier_for(current is not None)


async def list_history(
    store: SubscriptionStore,
    user_id: str,
    page_size: int = 25,
    max_pages: int = 20,
) -> list[Subscription]:
    """Every row for the user, newest first (bounded like resolution)."""
    rows: list[Subscription] = []
    page_token: str | None = None
    for _ in range(max_pages):
        page = await store.query_newest_first(user_id, page_token, limit=page_size)
        rows.extend(page.rows)
        if not page.next_page_token:
            break
        page_token = page.next_page_token
    return rows


async def create_subscription(
    store: SubscriptionStore,
    user_id: str,
    plan: str | None = None,
) -> Subscription:
    """Append a new active row; it becomes the current subscription."""
    subscription = Subscription(user_id=user_id, created_at=utc_now(), plan=plan)
    await store.put(subscription)
    return subscription


async def cancel_current_subscription(
    store: SubscriptionStore,
    user_id: str,
    page_size: int = 25,
    max_pages: int = 20,
) -> Subscription:
    """
    Cancel the current subscription.

    Only the resolved row changes (status → canceled, canceled_at stamped);
    superseded rows are left untouched.

    Raises GuardError(NOT_FOUND) when there is nothing active to cancel.
    """
    current = await resolve_current_subscription(store, user_id, page_size, max_pages)
    if current is None:
        raise GuardError(ErrorCode.NOT_FOUND, "No active subscription found to cancel.")

    now = utc_now()
    canceled = current.model_copy(update={
        "status": SubscriptionStatus.CANCELED,
        "canceled_at": now,
        "updated_at": now,
    })
    return await store.update(canceled)


async def set_cancel_at_period_end(
    store: SubscriptionStore,
    user_id: str,
    cancel_at_period_end: bool,
    page_size: int = 25,
    max_pages: int = 20,
) -> Subscription:
    """Schedule (or withdraw) cancellation at the end of the billing period."""
    current = await resolve_current_subscription(store, user_id, page_size, max_pages)
    if current is None:
        raise GuardError(ErrorCode.NOT_FOUND, "No active subscription found to modify.")

    updated = current.model_copy(update={
        "cancel_at_period_end": cancel_at_period_end,
        "updated_at": utc_now(),
    })
    return await store.update(updated)
