"""Helpers shared by the JSON route handlers."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from flask import jsonify, request

from opshub.errors import ValidationError


def success_response(data: Any = None, *, status: int = 200, **extra: Any):
    payload: dict[str, Any] = {"success": True, "data": data}
    payload.update(extra)
    return jsonify(payload), status


def get_json_payload() -> dict[str, Any]:
    """Return the request body, rejecting anything that is not a JSON object."""

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError(
            "Request body must be a JSON object",
            errors={"body": "Expected a JSON object"},
        )
    return data


def require_fields(data: Mapping[str, Any], *fields: str) -> None:
    missing = [name for name in fields if data.get(name) in (None, "")]
    if missing:
        raise ValidationError(
            "Missing required fields",
            errors={name: "This field is required" for name in missing},
        )


def parse_int_arg(name: str, default: int, *, minimum: int = 0, maximum: int | None = None) -> int:
    raw_value = request.args.get(name)
    if raw_value in (None, ""):
        return default
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        raise ValidationError(errors={name: "Must be an integer"}) from None
    if value < minimum:
        raise ValidationError(errors={name: f"Must be at least {minimum}"})
    if maximum is not None and value > maximum:
        value = maximum
    return value


def filter_arg(name: str) -> str | None:
    """Return a query filter value, treating ``all`` and blanks as no filter."""

    value = (request.args.get(name) or "").strip()
    if not value or value.lower() == "all":
        return None
    return value


def parse_int_field(data: Mapping[str, Any], name: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    value = data.get(name)
    # JSON integers only; 3.0 counts, 3.5 and "3" do not
    if isinstance(value, float) and value.is_integer():
        parsed = int(value)
    elif isinstance(value, int) and not isinstance(value, bool):
        parsed = value
    else:
        raise ValidationError(errors={name: "Must be an integer"})
    if minimum is not None and parsed < minimum:
        raise ValidationError(errors={name: f"Must be at least {minimum}"})
    if maximum is not None and parsed > maximum:
        raise ValidationError(errors={name: f"Must be at most {maximum}"})
    return parsed


def parse_decimal_field(data: Mapping[str, Any], name: str, *, positive: bool = False) -> Decimal:
    value = data.get(name)
    if isinstance(value, bool):
        raise ValidationError(errors={name: "Must be a number"})
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(errors={name: "Must be a number"}) from None
    if not parsed.is_finite():
        raise ValidationError(errors={name: "Must be a number"})
    if positive and parsed <= 0:
        raise ValidationError(errors={name: "Must be greater than zero"})
    return parsed


def parse_datetime_field(data: Mapping[str, Any], name: str) -> datetime | None:
    value = data.get(name)
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValidationError(errors={name: "Must be an ISO 8601 timestamp"})
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(errors={name: "Must be an ISO 8601 timestamp"}) from None
    offset = parsed.utcoffset()
    if offset is not None:
        # stored columns are naive UTC
        parsed = parsed.replace(tzinfo=None) - offset
    return parsed
