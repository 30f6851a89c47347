import logging
import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from opshub import create_app
from opshub.extensions import db
from opshub.models import ErrorLog
from opshub.services import error_log
from opshub.utils.logging import assign_request_id


@pytest.fixture
def app():
    app = create_app({"TESTING": True, "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})
    with app.app_context():
        db.create_all()
    error_log.clear_events()
    yield app
    error_log.clear_events()
    with app.app_context():
        db.session.remove()
        db.drop_all()


def test_events_are_kept_in_memory_without_app_context():
    error_log.clear_events()

    event = error_log.log_event("warning", "disk nearly full", source="worker")

    assert event["level"] == "WARNING"
    assert event["path"] is None
    assert error_log.get_recent_events(limit=1) == [event]
    assert error_log.get_recent_events(limit=0) == []
    error_log.clear_events()


def test_duplicate_events_increment_count(app):
    with app.app_context():
        first = error_log.log_event("error", "boom", dedupe_key="k", context={"n": 1})
        second = error_log.log_event("error", "boom", dedupe_key="k", context={"n": 2})

        assert second is first
        assert first["count"] == 2
        assert first["context"] == {"n": 2}
        assert ErrorLog.query.count() == 1


def test_memory_buffer_is_bounded(app):
    with app.app_context():
        for index in range(205):
            error_log.log_event("info", f"event {index}")

    events = error_log.get_recent_events()
    assert len(events) == 200
    assert events[-1]["message"] == "event 204"


def test_app_logger_warnings_reach_error_log(app):
    with app.test_request_context("/api/orders", headers={"X-Request-ID": "req-42"}):
        assign_request_id()
        app.logger.warning(
            "Stock sync failed",
            extra={"error_type": "EXTERNAL_API_ERROR", "error_context": {"vendor": "acme"}},
        )
        app.logger.info("routine message")

        rows = ErrorLog.query.all()
        assert len(rows) == 1
        row = rows[0]
        assert row.level == "WARNING"
        assert row.source == "opshub"
        assert row.error_type == "EXTERNAL_API_ERROR"
        assert row.context_json == {"vendor": "acme"}
        assert row.request_id == "req-42"
        assert row.path == "/api/orders"


def test_child_loggers_propagate_to_error_log(app):
    with app.app_context():
        logging.getLogger("opshub.services.boards").error("snapshot save failed")

        row = ErrorLog.query.one()
        assert row.source == "opshub.services.boards"
        assert row.request_id is None
