import os
import sys

import pytest
from sqlalchemy.exc import IntegrityError, NoResultFound, OperationalError
from werkzeug.exceptions import MethodNotAllowed

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from opshub import create_app
from opshub.errors import (
    ErrorSeverity,
    ErrorType,
    NotFoundError,
    RateLimitExceeded,
    ValidationError,
    build_error_payload,
    classify_auth_error,
    classify_database_error,
    classify_exception,
    format_error_message,
    is_retryable_status,
)
from opshub.extensions import db
from opshub.models import Customer, ErrorLog, Order
from opshub.services import error_log


class _PgError(Exception):
    def __init__(self, pgcode):
        super().__init__(pgcode)
        self.pgcode = pgcode


@pytest.fixture
def app():
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "ADMIN_PASSWORD": "letmein",
        }
    )
    with app.app_context():
        db.create_all()
    error_log.clear_events()
    yield app
    error_log.clear_events()
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def login_superuser(client):
    response = client.post("/api/auth/login", json={"username": "superuser", "password": "letmein"})
    assert response.status_code == 200


def test_database_errors_are_classified():
    not_found = classify_database_error(NoResultFound())
    assert (not_found.type, not_found.status_code) == (ErrorType.NOT_FOUND, 404)

    duplicate = classify_database_error(IntegrityError("INSERT", {}, _PgError("23505")))
    assert (duplicate.type, duplicate.status_code) == (ErrorType.VALIDATION, 400)

    denied = classify_database_error(OperationalError("SELECT", {}, _PgError("42501")))
    assert (denied.type, denied.status_code) == (ErrorType.AUTHORIZATION, 403)

    unknown = classify_database_error(OperationalError("SELECT", {}, _PgError("08006")))
    assert (unknown.type, unknown.status_code) == (ErrorType.DATABASE, 500)
    assert unknown.severity is ErrorSeverity.HIGH


def test_auth_and_generic_classification():
    assert classify_auth_error("login please").status_code == 401
    assert classify_auth_error("nope", is_authorization=True).type is ErrorType.AUTHORIZATION

    generic = classify_exception(RuntimeError("boom"))
    assert generic.type is ErrorType.INTERNAL
    assert generic.severity is ErrorSeverity.CRITICAL

    http_error = classify_exception(MethodNotAllowed())
    assert http_error.status_code == 405


def test_payload_is_sanitized_in_production():
    error = classify_exception(NotFoundError("Order 42 is missing"))

    development = build_error_payload(error, request_id="abc")
    production = build_error_payload(error, request_id="abc", production=True)

    assert development["error"] == "Order 42 is missing"
    assert production["error"] == "Resource not found"
    assert production["code"] == "NOT_FOUND"
    assert production["requestId"] == "abc"
    assert production["success"] is False
    assert production["data"] is None


def test_validation_details_survive_sanitizing():
    error = classify_exception(ValidationError(errors={"name": "This field is required"}))

    payload = build_error_payload(error, production=True)

    assert payload["error"] == "Invalid request data"
    assert payload["details"] == {
        "validationErrors": [{"path": "name", "message": "This field is required"}]
    }


def test_rate_limit_payload_carries_retry_after():
    payload = build_error_payload(classify_exception(RateLimitExceeded(retry_after=7)))
    assert payload["details"] == {"retryAfter": 7}


def test_format_error_message():
    assert format_error_message(NotFoundError()) == (
        "Resource not found. It may have been deleted or moved."
    )
    assert format_error_message(RuntimeError("disk on fire")) == "disk on fire"
    assert format_error_message(None, "Load Orders") == "Failed to load orders"
    assert format_error_message("plain text") == "plain text"


def test_retryable_statuses():
    assert is_retryable_status(429)
    assert is_retryable_status(503)
    assert not is_retryable_status(404)
    assert not is_retryable_status(None)


def test_database_failure_in_route_returns_envelope(app, client, monkeypatch):
    login_superuser(client)

    def _explode():
        raise OperationalError("SELECT 1", {}, _PgError("08006"))

    monkeypatch.setattr("opshub.routes.orders._next_order_number", _explode)
    with app.app_context():
        customer = Customer(name="Ada", email="ada@example.com")
        db.session.add(customer)
        db.session.commit()
        customer_id = customer.id

    response = client.post("/api/orders", json={"customer_id": customer_id, "total_amount": 10})

    assert response.status_code == 500
    payload = response.get_json()
    assert payload["code"] == "DATABASE_ERROR"
    assert payload["error"] == "Database operation failed"

    with app.app_context():
        logged = ErrorLog.query.filter_by(error_type="DATABASE_ERROR").first()
        assert logged is not None
        assert logged.level == "ERROR"
        assert logged.request_id == response.headers["X-Request-ID"]


def test_unexpected_errors_are_sanitized_in_production(app, client, monkeypatch):
    app.config["APP_ENV"] = "production"
    login_superuser(client)
    with app.app_context():
        customer = Customer(name="Ada", email="ada@example.com")
        db.session.add(customer)
        db.session.flush()
        order = Order(order_number="ORD-1", customer_id=customer.id, total_amount=10)
        db.session.add(order)
        db.session.commit()
        order_id = order.id

    def _explode(*args, **kwargs):
        raise RuntimeError("secret stack detail")

    monkeypatch.setattr(Order, "to_dict", _explode)
    response = client.get(f"/api/orders/{order_id}")

    assert response.status_code == 500
    payload = response.get_json()
    assert payload["code"] == "INTERNAL_SERVER_ERROR"
    assert payload["error"] == "Internal server error"
    assert "secret" not in response.get_data(as_text=True)


def test_client_error_reports_are_stored_and_deduplicated(app, client):
    body = {"message": "Cannot read properties of undefined", "url": "/dashboard/orders"}

    first = client.post("/api/errors", json=body)
    second = client.post("/api/errors", json=body)

    assert first.status_code == 201
    assert second.get_json()["data"]["count"] == 2
    with app.app_context():
        rows = ErrorLog.query.filter_by(source="client").all()
        assert len(rows) == 1
        assert rows[0].context_json == {"url": "/dashboard/orders"}
