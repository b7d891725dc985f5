"""
Access errors - the uniform failure vocabulary of the request pipeline.

Every failure a gate or handler reports carries a stable machine-readable
code and a generic human message. The HTTP status is derived from the code,
so two failures with the same code always look the same to the caller.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable failure codes."""

    BAD_REQUEST = "BAD_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    DEVICE_REQUIRED = "DEVICE_REQUIRED"
    DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
    DEVICE_LIMIT_EXCEEDED = "DEVICE_LIMIT_EXCEEDED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    GONE = "GONE"
    CONFLICT = "CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


STATUS_CODES: dict[ErrorCode, int] = {
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.UNAUTHENTICATED: 401,
    ErrorCode.DEVICE_REQUIRED: 400,
    ErrorCode.DEVICE_NOT_FOUND: 403,
    ErrorCode.DEVICE_LIMIT_EXCEEDED: 403,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.GONE: 410,
    ErrorCode.CONFLICT: 409,
    ErrorCode.INTERNAL_ERROR: 500,
}


DEFAULT_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.BAD_REQUEST: "Invalid request body",
    ErrorCode.VALIDATION_ERROR: "Request body failed validation",
    ErrorCode.UNAUTHENTICATED: "Authentication required",
    ErrorCode.DEVICE_REQUIRED: "Device id is required",
    ErrorCode.DEVICE_NOT_FOUND: "Device not registered",
    ErrorCode.DEVICE_LIMIT_EXCEEDED: "Device limit exceeded",
    ErrorCode.FORBIDDEN: "Access not allowed",
    ErrorCode.NOT_FOUND: "Not found",
    ErrorCode.GONE: "Link expired",
    ErrorCode.CONFLICT: "Conflict",
    ErrorCode.INTERNAL_ERROR: "Internal Server Error",
}


class GuardError(Exception):
    """
    A terminal, caller-visible failure.

    Raised by gates and handlers; rendered by the pipeline as
    ``{"code", "message", "details"?}`` with the code's HTTP status.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message or DEFAULT_MESSAGES[code]
        self.details = details
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.code]

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"GuardError({self.code.value}, {self.message!r})"
