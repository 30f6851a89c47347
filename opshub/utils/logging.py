from __future__ import annotations

import logging
import re
import sys
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable

from flask import Flask, g, has_request_context, request

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        request_id = None
        if has_request_context():
            request_id = getattr(g, "request_id", None)
        record.request_id = request_id or "-"
        return True


def assign_request_id() -> str:
    """Adopt a well-formed inbound ``X-Request-ID`` or mint a new one."""

    inbound = (request.headers.get("X-Request-ID") or "").strip()
    if inbound and _REQUEST_ID_PATTERN.match(inbound):
        g.request_id = inbound
    else:
        g.request_id = uuid.uuid4().hex[:16]
    return g.request_id


def get_request_id() -> str | None:
    if not has_request_context():
        return None
    return getattr(g, "request_id", None)


def _has_handler(logger: logging.Logger, handler_types: Iterable[type]) -> bool:
    return any(isinstance(handler, tuple(handler_types)) for handler in logger.handlers)


def configure_logging(app: Flask) -> Path | None:
    from opshub.services.error_log import ErrorLogHandler

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] [req=%(request_id)s] %(name)s: %(message)s"
    )
    request_filter = RequestIdFilter()

    if not any(
        type(handler) is logging.StreamHandler for handler in root_logger.handlers
    ):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(logging.INFO)
        stream_handler.setFormatter(formatter)
        stream_handler.addFilter(request_filter)
        root_logger.addHandler(stream_handler)

    log_path: Path | None = None
    if app.config.get("LOG_TO_FILE", True) and not app.testing:
        logs_dir = Path(app.config.get("LOG_DIR") or Path(app.root_path).parent / "logs")
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = logs_dir / "opshub.log"

        if not any(
            isinstance(handler, RotatingFileHandler)
            and getattr(handler, "baseFilename", "") == str(log_path)
            for handler in root_logger.handlers
        ):
            file_handler = RotatingFileHandler(
                log_path,
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
            )
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(formatter)
            file_handler.addFilter(request_filter)
            root_logger.addHandler(file_handler)

    if not _has_handler(app.logger, (ErrorLogHandler,)):
        error_handler = ErrorLogHandler(level=logging.WARNING)
        error_handler.addFilter(request_filter)
        app.logger.addHandler(error_handler)

    for handler in app.logger.handlers:
        if not any(isinstance(existing, RequestIdFilter) for existing in handler.filters):
            handler.addFilter(request_filter)

    app.logger.setLevel(logging.INFO)
    logging.getLogger("werkzeug").setLevel(logging.INFO)
    logging.getLogger("gunicorn.error").setLevel(logging.INFO)
    logging.getLogger("gunicorn.access").setLevel(logging.INFO)

    return log_path
