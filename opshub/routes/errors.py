from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from opshub.api import get_json_payload, require_fields, success_response
from opshub.errors import (
    ErrorSeverity,
    ErrorType,
    RateLimitExceeded,
    build_error_payload,
    classify_exception,
)
from opshub.extensions import db
from opshub.security import is_production
from opshub.services.error_log import log_event
from opshub.utils.logging import get_request_id

bp = Blueprint("errors", __name__, url_prefix="/api/errors")

CLIENT_LEVELS = ("error", "warning", "info")


def _current_user_id() -> int | None:
    if getattr(current_user, "is_authenticated", False):
        return current_user.id
    return None


@bp.app_errorhandler(Exception)
def handle_exception(error: Exception):
    # Non-API HTTP errors keep werkzeug's default pages.
    if isinstance(error, HTTPException) and not request.path.startswith("/api/"):
        return error

    if isinstance(error, SQLAlchemyError):
        db.session.rollback()

    structured = classify_exception(error)
    log_extra = {
        "error_type": structured.type.value,
        "error_context": structured.context,
        "user_id": _current_user_id(),
    }
    if structured.status_code >= 500:
        current_app.logger.exception(
            "Unhandled %s error on %s %s",
            structured.type.value,
            request.method,
            request.path,
            exc_info=error,
            extra=log_extra,
        )
    elif structured.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
        current_app.logger.warning(
            "%s on %s %s: %s",
            structured.type.value,
            request.method,
            request.path,
            structured.message,
            extra=log_extra,
        )

    payload = build_error_payload(
        structured,
        request_id=get_request_id(),
        production=is_production(),
    )
    response = jsonify(payload)
    response.status_code = structured.status_code
    if isinstance(error, RateLimitExceeded):
        response.headers["Retry-After"] = str(error.retry_after)
    return response


@bp.post("")
def report_client_error():
    """Store an error reported by the browser."""

    data = get_json_payload()
    require_fields(data, "message")

    level = str(data.get("level") or "error").lower()
    if level not in CLIENT_LEVELS:
        level = "error"

    context = data.get("context") if isinstance(data.get("context"), dict) else {}
    for key in ("stack", "url", "component"):
        if data.get(key):
            context[key] = data[key]

    message = str(data["message"])[:4000]
    event = log_event(
        level,
        message,
        context=context or None,
        source="client",
        error_type=str(data.get("errorType") or ErrorType.INTERNAL.value),
        request_id=get_request_id(),
        user_id=_current_user_id(),
        dedupe_key=f"client:{level}:{message}",
    )
    return success_response({"count": event["count"]}, status=201)
