"""
Audit recorder.

Appends activity-log events for state-changing operations. Recording is
best-effort: a failed append is logged and dropped, and ``record`` never
raises to its caller.
"""

from __future__ import annotations

import logging
from typing import Any

from kinvault.core.models import AuditAction, AuditEvent
from kinvault.core.utils import now_ms
from kinvault.storage.base import AuditStore, DuplicateAuditEvent

logger = logging.getLogger(__name__)


class AuditRecorder:
    """
    Best-effort writer of ``AuditEvent`` rows.

    Timestamps are wall-clock milliseconds. (user_id, ts) is the table key,
    so the store refuses to overwrite an existing event and a collision is
    retried one millisecond later.
    """

    max_attempts = 5

    def __init__(self, store: AuditStore):
        self.store = store

    async def _append(self, event: AuditEvent) -> None:
        for _ in range(self.max_attempts - 1):
            try:
                await self.store.append(event)
                return
            except DuplicateAuditEvent:
                event = event.model_copy(update={"ts": event.ts + 1})
        await self.store.append(event)

    async def record(
        self,
        user_id: str,
        action: AuditAction | str,
        resource: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append one event. Never raises."""
        if not user_id or not resource:
            logger.error(
                f"Skipping audit event {action}: missing user_id or resource "
                f"(user_id={user_id!r}, resource={resource!r})"
            )
            return

        try:
            event = AuditEvent(
                user_id=user_id,
                ts=now_ms(),
                action=AuditAction(action),
                resource=resource,
                details=details or {},
            )
            await self._append(event)
        except Exception:
            logger.exception(
                f"Failed to write audit event {action} for user {user_id}",
                extra={"user_id": user_id, "resource": resource},
            )

    async def list_for_resource(self, resource: str, limit: int = 50) -> list[AuditEvent]:
        """Events that touched ``resource``, newest first."""
        return await self.store.list_by_resource(resource, limit)
