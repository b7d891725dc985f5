"""
Shared utility functions for the kinvault service.

This module contains common utilities used across the codebase.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone


def generate_id(prefix: str = "") -> str:
    """
    Generate a unique ID with optional prefix.

    Args:
        prefix: Optional prefix (e.g., "share", "vac", "req")

    Returns:
        A unique ID like "share_a1b2c3d4e5f6"
    """
    uid = str(uuid.uuid4())[:12]
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000
