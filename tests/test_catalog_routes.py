import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from opshub import create_app
from opshub.extensions import db
from opshub.models import Customer, ManufacturerProject, Order, Role, User


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


def login_as(app, client, username, role_names):
    with app.app_context():
        user = User(username=username, email=f"{username}@example.com")
        user.set_password("password")
        user.roles = [Role.query.filter_by(name=name).one() for name in role_names]
        db.session.add(user)
        db.session.commit()
    response = client.post("/api/auth/login", json={"username": username, "password": "password"})
    assert response.status_code == 200


def test_collections_crud(app, client):
    login_as(app, client, "designer", ("employee",))

    created = client.post("/api/collections", json={"name": " Spring ", "prefix": "SPR"})
    assert created.status_code == 201
    collection = created.get_json()["data"]
    assert collection["name"] == "Spring"
    assert collection["designer"] == "designer@example.com"
    assert collection["display_order"] == 1

    client.post("/api/collections", json={"name": "Autumn", "display_order": 5, "designer": "Kim"})

    response = client.patch(
        f"/api/collections/{collection['id']}",
        json={"display_order": 9, "is_active": False, "designer": "Lee"},
    )
    updated = response.get_json()["data"]
    assert updated["display_order"] == 9
    assert updated["is_active"] is False
    assert updated["designer"] == "Lee"

    names = [item["name"] for item in client.get("/api/collections").get_json()["data"]]
    assert names == ["Autumn", "Spring"]

    assert client.put(f"/api/collections/{collection['id']}", json={"name": ""}).status_code == 400
    assert client.get(f"/api/collections/{collection['id']}").get_json()["data"]["name"] == "Spring"

    assert client.delete(f"/api/collections/{collection['id']}").status_code == 200
    assert client.get(f"/api/collections/{collection['id']}").status_code == 404


def test_collections_require_login(client):
    assert client.get("/api/collections").status_code == 401
    assert client.post("/api/collections", json={"name": "x"}).status_code == 401


def test_create_collection_requires_name(app, client):
    login_as(app, client, "designer", ("employee",))

    response = client.post("/api/collections", json={"prefix": "X"})

    assert response.status_code == 400


def test_manufacturers_and_projects(app, client):
    login_as(app, client, "planner", ("manager",))
    with app.app_context():
        customer = Customer(name="Buyer", email="buyer@example.com")
        db.session.add(customer)
        db.session.flush()
        order = Order(order_number="ORD-7", customer_id=customer.id, total_amount=50)
        db.session.add(order)
        db.session.commit()
        order_id = order.id

    created = client.post(
        "/api/manufacturers",
        json={
            "name": "Oak & Co",
            "contact_name": "Sam",
            "capabilities": ["upholstery", "joinery"],
            "quality_rating": 4.5,
        },
    )
    assert created.status_code == 201
    manufacturer = created.get_json()["data"]
    assert manufacturer["status"] == "approved"
    assert manufacturer["average_lead_time"] == 30
    assert manufacturer["rating"] == 4.5
    assert manufacturer["capabilities"] == ["upholstery", "joinery"]
    assert manufacturer["total_projects"] == 0

    project = client.post(
        "/api/manufacturers/projects",
        json={"manufacturer_id": manufacturer["id"], "name": "Lobby sofas", "order_id": order_id},
    )
    assert project.status_code == 201
    project_data = project.get_json()["data"]
    assert project_data["status"] == "planning"
    assert project_data["order"]["order_number"] == "ORD-7"
    assert project_data["manufacturer"]["company_name"] == "Oak & Co"

    client.post(
        "/api/manufacturers/projects",
        json={"manufacturer_id": manufacturer["id"], "name": "Chairs", "status": "completed"},
    )

    listed = client.get("/api/manufacturers").get_json()["data"][0]
    assert listed["total_projects"] == 2
    assert listed["active_projects"] == 1
    assert listed["last_project_date"] is not None

    updated = client.put(
        "/api/manufacturers/projects",
        json={"id": project_data["id"], "status": "in_progress", "priority": "high"},
    )
    assert updated.get_json()["data"]["priority"] == "high"

    high = client.get("/api/manufacturers/projects?priority=high").get_json()
    assert [item["name"] for item in high["data"]] == ["Lobby sofas"]
    by_manufacturer = client.get(
        f"/api/manufacturers/projects?manufacturerId={manufacturer['id']}"
    ).get_json()
    assert by_manufacturer["total"] == 2


def test_manufacturer_validation(app, client):
    login_as(app, client, "planner", ("manager",))

    assert client.post("/api/manufacturers", json={"name": "X", "status": "banned"}).status_code == 400
    assert client.post("/api/manufacturers", json={"contact_name": "Sam"}).status_code == 400
    assert client.post(
        "/api/manufacturers/projects", json={"manufacturer_id": 404, "name": "Ghost"}
    ).status_code == 400
    assert client.put("/api/manufacturers/projects", json={"id": 404}).status_code == 404
    with app.app_context():
        assert ManufacturerProject.query.count() == 0


def test_manufacturer_writes_need_production_manage(app, client):
    login_as(app, client, "clerk", ("employee",))

    assert client.get("/api/manufacturers").status_code == 200
    assert client.post("/api/manufacturers", json={"name": "X"}).status_code == 403
