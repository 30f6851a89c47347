import os
import sys
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from opshub import create_app
from opshub.extensions import db
from opshub.models import (
    AccessLog,
    Customer,
    Order,
    OrderItem,
    PortalSettings,
    ProductionStatus,
    Role,
    User,
)
from opshub.routes import orders as orders_routes
from opshub.routes.production import range_start


@pytest.fixture
def app():
    app = create_app({"TESTING": True, "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:"})
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def create_user(app, username, role_names, email=None):
    with app.app_context():
        user = User(username=username, email=email or f"{username}@example.com")
        user.set_password("password")
        user.roles = [Role.query.filter_by(name=name).one() for name in role_names]
        db.session.add(user)
        db.session.commit()
        return user.id


def login_as(app, client, username, role_names=("manager",), email=None):
    create_user(app, username, role_names, email=email)
    response = client.post("/api/auth/login", json={"username": username, "password": "password"})
    assert response.status_code == 200


def create_customer(app, email="buyer@example.com"):
    with app.app_context():
        customer = Customer(name="Buyer", email=email)
        db.session.add(customer)
        db.session.commit()
        return customer.id


def create_order(app, customer_id, *, number="ORD-100", items=(("Sofa", 2),)):
    with app.app_context():
        order = Order(
            order_number=number,
            customer_id=customer_id,
            total_amount=1200,
            items=[OrderItem(item_name=name, quantity=quantity) for name, quantity in items],
        )
        db.session.add(order)
        db.session.commit()
        return order.id, [item.id for item in order.items]


def test_orders_require_login(client):
    assert client.get("/api/orders").status_code == 401


def test_create_and_fetch_order(app, client):
    login_as(app, client, "manager")
    customer_id = create_customer(app)

    response = client.post(
        "/api/orders",
        json={
            "customer_id": customer_id,
            "total_amount": "199.99",
            "items": [{"item_name": "Lamp", "quantity": 2}, {"item_name": "Rug"}],
        },
    )

    assert response.status_code == 201
    order = response.get_json()["data"]
    assert order["order_number"].startswith("ORD-")
    assert order["status"] == "draft"
    assert order["total_amount"] == 199.99
    assert [(item["item_name"], item["quantity"]) for item in order["items"]] == [
        ("Lamp", 2),
        ("Rug", 1),
    ]

    fetched = client.get(f"/api/orders/{order['id']}").get_json()["data"]
    assert fetched["customer"]["name"] == "Buyer"


def test_create_order_validation(app, client):
    login_as(app, client, "manager")
    customer_id = create_customer(app)

    missing = client.post("/api/orders", json={"total_amount": 10})
    assert missing.status_code == 400

    negative = client.post("/api/orders", json={"customer_id": customer_id, "total_amount": -5})
    assert negative.get_json()["details"]["validationErrors"] == [
        {"path": "total_amount", "message": "Must be greater than zero"}
    ]

    unknown_customer = client.post("/api/orders", json={"customer_id": 999, "total_amount": 5})
    assert unknown_customer.status_code == 400

    bad_status = client.post(
        "/api/orders",
        json={"customer_id": customer_id, "total_amount": 5, "status": "lost"},
    )
    assert bad_status.status_code == 400


def test_employee_cannot_create_orders(app, client):
    login_as(app, client, "clerk", role_names=("employee",))
    customer_id = create_customer(app)

    response = client.post("/api/orders", json={"customer_id": customer_id, "total_amount": 5})

    assert response.status_code == 403
    assert response.get_json()["code"] == "AUTHORIZATION_ERROR"


def test_order_numbers_do_not_collide(app, client, monkeypatch):
    login_as(app, client, "manager")
    customer_id = create_customer(app)
    monkeypatch.setattr(orders_routes, "time", SimpleNamespace(time=lambda: 1700000000.0))

    first = client.post("/api/orders", json={"customer_id": customer_id, "total_amount": 5})
    second = client.post("/api/orders", json={"customer_id": customer_id, "total_amount": 5})

    assert first.get_json()["data"]["order_number"] == "ORD-1700000000000"
    assert second.get_json()["data"]["order_number"] == "ORD-1700000000000-2"


def test_list_and_update_orders(app, client):
    login_as(app, client, "manager")
    customer_id = create_customer(app)
    first_id, _ = create_order(app, customer_id, number="ORD-1")
    create_order(app, customer_id, number="ORD-2")

    response = client.patch(f"/api/orders/{first_id}", json={"status": "confirmed"})
    assert response.get_json()["data"]["status"] == "confirmed"

    listing = client.get("/api/orders?status=confirmed").get_json()
    assert listing["total"] == 1
    assert listing["data"][0]["order_number"] == "ORD-1"

    assert client.get("/api/orders?limit=1").get_json()["total"] == 1
    assert client.get("/api/orders/999").status_code == 404


def test_range_start():
    now = datetime(2024, 3, 31, 15, 30)

    assert range_start("today", now) == datetime(2024, 3, 31)
    assert range_start("week", now) == now - timedelta(days=7)
    assert range_start("month", now) == datetime(2024, 2, 29, 15, 30)
    assert range_start("month", datetime(2024, 1, 15)) == datetime(2023, 12, 15)
    assert range_start("all", now) is None


def test_production_listing_filters(app, client):
    login_as(app, client, "manager")
    customer_id = create_customer(app)
    order_id, _ = create_order(app, customer_id)
    with app.app_context():
        db.session.add_all(
            [
                ProductionStatus(order_id=order_id, item_name="Sofa", status="in_progress", priority="high"),
                ProductionStatus(order_id=order_id, item_name="Chair", status="pending", priority="normal"),
                ProductionStatus(
                    order_id=order_id,
                    item_name="Old",
                    status="pending",
                    priority="normal",
                    started_at=datetime.utcnow() - timedelta(days=40),
                ),
            ]
        )
        db.session.commit()

    by_order = client.get(f"/api/production?orderId={order_id}").get_json()
    assert by_order["total"] == 3

    high = client.get("/api/production?priority=high").get_json()["data"]
    assert [row["item_name"] for row in high] == ["Sofa"]

    recent = client.get("/api/production?status=pending&dateRange=month").get_json()["data"]
    assert [row["item_name"] for row in recent] == ["Chair"]

    assert client.get("/api/production?dateRange=decade").status_code == 400
    assert client.get("/api/production?orderId=abc").status_code == 400


def test_production_status_update(app, client):
    login_as(app, client, "lead", role_names=("lead",))
    customer_id = create_customer(app)
    order_id, _ = create_order(app, customer_id)
    with app.app_context():
        row = ProductionStatus(order_id=order_id, item_name="Sofa", quantity=4)
        db.session.add(row)
        db.session.commit()
        row_id = row.id

    response = client.patch(
        "/api/production",
        json={
            "id": row_id,
            "production_status": "in_progress",
            "completed_quantity": 2,
            "actual_start_date": "2024-05-01T08:00:00Z",
        },
    )

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["status"] == "in_progress"
    assert data["completed_quantity"] == 2
    assert data["actual_start_date"] == "2024-05-01T08:00:00"

    assert client.patch("/api/production", json={"id": 999}).status_code == 404
    assert client.patch("/api/production", json={"status": "x"}).status_code == 400


def test_employee_cannot_write_production(app, client):
    login_as(app, client, "clerk", role_names=("employee",))

    assert client.patch("/api/production", json={"id": 1}).status_code == 403


def test_stage_progress_and_order_summary(app, client):
    login_as(app, client, "manager")
    customer_id = create_customer(app)
    order_id, (item_id,) = create_order(app, customer_id)

    response = client.post(
        "/api/production/stages",
        json={"orderItemId": item_id, "stage": "Design", "progress": 100},
    )
    assert response.status_code == 200
    payload = response.get_json()["data"]
    assert payload["stage"]["completed_at"] is not None
    assert payload["item"]["currentStage"] == "Design"
    assert payload["item"]["overallProgress"] == 17

    client.post(
        "/api/production/stages",
        json={"orderItemId": item_id, "stage": "Cutting", "progress": 50, "notes": "half"},
    )
    summary = client.get(f"/api/production/orders/{order_id}/progress").get_json()["data"]
    assert summary["overallProgress"] == 25
    assert summary["currentStage"] == "Cutting"
    assert summary["items"][0]["stages"]["Cutting"]["notes"] == "half"

    bad_stage = client.post(
        "/api/production/stages",
        json={"orderItemId": item_id, "stage": "Paint", "progress": 10},
    )
    assert bad_stage.status_code == 400
    too_much = client.post(
        "/api/production/stages",
        json={"orderItemId": item_id, "stage": "Design", "progress": 101},
    )
    assert too_much.status_code == 400


@pytest.mark.parametrize("progress", [50.7, "50", "abc", True, [50]])
def test_stage_progress_must_be_an_integer(app, client, progress):
    login_as(app, client, "manager")
    customer_id = create_customer(app)
    _, (item_id,) = create_order(app, customer_id)

    response = client.post(
        "/api/production/stages",
        json={"orderItemId": item_id, "stage": "Design", "progress": progress},
    )

    assert response.status_code == 400
    assert response.get_json()["details"]["validationErrors"] == [
        {"path": "progress", "message": "Must be an integer"}
    ]


def test_whole_float_progress_is_accepted(app, client):
    login_as(app, client, "manager")
    customer_id = create_customer(app)
    _, (item_id,) = create_order(app, customer_id)

    response = client.post(
        "/api/production/stages",
        json={"orderItemId": item_id, "stage": "Design", "progress": 40.0},
    )

    assert response.status_code == 200
    assert response.get_json()["data"]["stage"]["progress"] == 40


def test_portal_production_for_own_order(app, client):
    customer_id = create_customer(app, email="buyer@example.com")
    order_id, _ = create_order(app, customer_id)
    login_as(app, client, "buyer", role_names=("client",), email="Buyer@Example.com")

    response = client.get(f"/api/portal/orders/{order_id}/production")

    assert response.status_code == 200
    assert response.get_json()["data"]["orderId"] == order_id


def test_portal_hides_other_customers_orders(app, client):
    own_id = create_customer(app, email="buyer@example.com")
    other_id = create_customer(app, email="other@example.com")
    create_order(app, own_id, number="ORD-1")
    other_order, _ = create_order(app, other_id, number="ORD-2")
    login_as(app, client, "buyer", role_names=("client",), email="buyer@example.com")

    response = client.get(f"/api/portal/orders/{other_order}/production")

    assert response.status_code == 404
    assert response.get_json()["error"] == "Order not found"


def test_portal_requires_customer_record(app, client):
    login_as(app, client, "stranger", role_names=("client",))

    response = client.get("/api/portal/orders/1/production")

    assert response.status_code == 404
    assert response.get_json()["error"] == "Customer not found"


def test_portal_respects_tracking_setting(app, client):
    customer_id = create_customer(app, email="buyer@example.com")
    order_id, _ = create_order(app, customer_id)
    with app.app_context():
        db.session.add(PortalSettings(customer_id=customer_id, show_production_tracking=False))
        db.session.commit()
    login_as(app, client, "buyer", role_names=("client",), email="buyer@example.com")

    response = client.get(f"/api/portal/orders/{order_id}/production")

    assert response.status_code == 403


def test_portal_view_is_recorded(app, client):
    customer_id = create_customer(app, email="buyer@example.com")
    order_id, _ = create_order(app, customer_id)
    login_as(app, client, "buyer", role_names=("client",), email="buyer@example.com")

    response = client.post(f"/api/portal/orders/{order_id}/production/views")

    assert response.status_code == 201
    with app.app_context():
        event = AccessLog.query.filter_by(event_type=AccessLog.EVENT_PORTAL_VIEW).one()
        assert event.details == {
            "event": "production_viewed",
            "customer_id": customer_id,
            "order_id": order_id,
        }
