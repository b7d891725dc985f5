"""Activity log: best-effort audit recording."""

from kinvault.audit.recorder import AuditRecorder
from kinvault.core.models import AuditAction, AuditEvent

__all__ = [
    "AuditAction",
    "AuditEvent",
    "AuditRecorder",
]
