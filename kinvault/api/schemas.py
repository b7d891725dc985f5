"""
Schema validation for request bodies.

An endpoint declares the shape of its body as a pydantic model. Per field
the model states its type, whether it is required (no default) and, where
relevant, the allowed values (``Literal`` or an ``Enum``). The body is
checked against that shape before any identity or business logic runs.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from kinvault.auth.errors import ErrorCode, GuardError


class RequestSchema(BaseModel):
    """Base for request bodies: camelCase on the wire, unknown keys dropped."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class EmptyBody(RequestSchema):
    """For endpoints that take no body."""
    pass


def has_required_fields(schema: type[BaseModel]) -> bool:
    return any(field.is_required() for field in schema.model_fields.values())


def parse_body(raw: str | None, schema: type[BaseModel], is_base64_encoded: bool = False) -> Any:
    """
    Decode the raw body into JSON data.

    A missing body reads as ``{}`` unless the schema has required fields.

    Raises GuardError(BAD_REQUEST) for a missing-but-required or malformed body.
    """
    if raw is None or not raw.strip():
        if has_required_fields(schema):
            raise GuardError(ErrorCode.BAD_REQUEST, "Request body is required")
        return {}

    text = raw
    if is_base64_encoded:
        try:
            text = base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            raise GuardError(ErrorCode.BAD_REQUEST, "Invalid request body")

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        raise GuardError(ErrorCode.BAD_REQUEST, "Invalid request body")


def validate_body(data: Any, schema: type[BaseModel]) -> BaseModel:
    """
    Check decoded data against the schema.

    Raises GuardError(VALIDATION_ERROR) listing every offending field.
    """
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        issues = []
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"]) or "body"
            issues.append({"field": field, "message": error["msg"], "type": error["type"]})
        fields = sorted({issue["field"] for issue in issues})
        raise GuardError(
            ErrorCode.VALIDATION_ERROR,
            details={"fields": fields, "issues": issues},
        )


def load_body(raw: str | None, schema: type[BaseModel] | None, is_base64_encoded: bool = False) -> BaseModel | None:
    """Parse then validate. No schema means the body is ignored."""
    if schema is None:
        return None
    return validate_body(parse_body(raw, schema, is_base64_encoded), schema)
