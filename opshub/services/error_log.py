"""Recent error events, kept in memory and persisted to ``error_log``."""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Deque

from flask import has_request_context, request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from opshub.extensions import db
from opshub.models import ErrorLog


_EVENTS: Deque[dict[str, Any]] = deque(maxlen=200)
_DEDUPE: dict[str, dict[str, Any]] = {}
_LOCK = threading.Lock()


def _persist(record: ErrorLog) -> None:
    try:
        Session = sessionmaker(bind=db.engine, future=True)
    except RuntimeError:
        # Outside of an application context the engine is unavailable.
        return

    session = Session()
    try:
        session.add(record)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
    finally:
        session.close()


def log_event(
    level: str,
    message: str,
    *,
    context: dict[str, Any] | None = None,
    source: str | None = None,
    error_type: str | None = None,
    request_id: str | None = None,
    user_id: int | None = None,
    dedupe_key: str | None = None,
) -> dict[str, Any]:
    timestamp = datetime.utcnow()
    normalized_level = level.upper()

    with _LOCK:
        if dedupe_key and dedupe_key in _DEDUPE:
            event = _DEDUPE[dedupe_key]
            event["count"] += 1
            event["timestamp"] = timestamp
            event["context"] = context or event.get("context")
            return event

        path = request.path if has_request_context() else None
        event = {
            "timestamp": timestamp,
            "level": normalized_level,
            "message": message,
            "context": context,
            "source": source,
            "error_type": error_type,
            "request_id": request_id,
            "path": path,
            "count": 1,
        }
        _EVENTS.append(event)
        if dedupe_key:
            _DEDUPE[dedupe_key] = event
            if len(_DEDUPE) > _EVENTS.maxlen:
                live = {id(item) for item in _EVENTS}
                for key in [k for k, v in _DEDUPE.items() if id(v) not in live]:
                    del _DEDUPE[key]

    _persist(
        ErrorLog(
            level=normalized_level,
            source=source,
            error_type=error_type,
            message=message[:4000],
            context_json=context,
            request_id=request_id,
            path=path,
            user_id=user_id,
        )
    )
    return event


def get_recent_events(limit: int = 200) -> list[dict[str, Any]]:
    if limit <= 0:
        return []
    with _LOCK:
        return list(_EVENTS)[-limit:]


def clear_events() -> None:
    with _LOCK:
        _EVENTS.clear()
        _DEDUPE.clear()


class ErrorLogHandler(logging.Handler):
    """Forward log records into the error log."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except Exception:
            message = record.msg if isinstance(record.msg, str) else "log message"

        request_id = getattr(record, "request_id", None)
        if request_id == "-":
            request_id = None

        log_event(
            record.levelname,
            message,
            source=record.name,
            error_type=getattr(record, "error_type", None),
            request_id=request_id,
            user_id=getattr(record, "user_id", None),
            context=getattr(record, "error_context", None),
            dedupe_key=f"log:{record.levelname}:{message}",
        )
