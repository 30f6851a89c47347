import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from opshub import create_app
from opshub.extensions import db
from opshub.models import AccessLog, Role, User


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
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def create_user(app, username, role_names=("employee",), user_type="Employee"):
    with app.app_context():
        user = User(username=username, email=f"{username}@example.com", user_type=user_type)
        user.set_password("password")
        user.roles = [Role.query.filter_by(name=name).one() for name in role_names]
        db.session.add(user)
        db.session.commit()
        return user.id


def login(client, username, password="password"):
    response = client.post("/api/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200


def admin_events(app, action):
    with app.app_context():
        return [
            entry
            for entry in AccessLog.query.filter_by(event_type=AccessLog.EVENT_ADMIN_ACTION).all()
            if entry.details.get("action") == action
        ]


def test_list_users_requires_permission(app, client):
    create_user(app, "clerk")
    login(client, "clerk")

    response = client.get("/api/admin/users")

    assert response.status_code == 403


def test_list_users(app, client):
    create_user(app, "boss", role_names=("admin",))
    create_user(app, "clerk")
    login(client, "boss")

    response = client.get("/api/admin/users")

    assert response.status_code == 200
    payload = response.get_json()
    assert [user["username"] for user in payload["data"]] == ["boss", "clerk", "superuser"]
    assert {user["username"]: user["role"] for user in payload["data"]}["superuser"] == "super_admin"
    assert response.headers["X-RateLimit-Limit"] == "60"
    assert admin_events(app, "list_users")[0].details["count"] == 3


def test_assign_roles(app, client):
    create_user(app, "boss", role_names=("admin",))
    clerk_id = create_user(app, "clerk")
    login(client, "boss")

    response = client.post(f"/api/admin/users/{clerk_id}/roles", json={"roles": ["lead", "employee"]})

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["roles"] == ["employee", "lead"]
    assert data["role"] == "lead"
    assert "production.write" in data["context"]["permissions"]
    assert admin_events(app, "assign_roles")[0].details["target_user_id"] == clerk_id


def test_assign_roles_validation(app, client):
    create_user(app, "boss", role_names=("admin",))
    clerk_id = create_user(app, "clerk")
    login(client, "boss")

    unknown = client.post(f"/api/admin/users/{clerk_id}/roles", json={"roles": ["wizard"]})
    assert unknown.status_code == 400
    assert unknown.get_json()["details"]["validationErrors"][0]["message"] == "Unknown roles: wizard"

    not_a_list = client.post(f"/api/admin/users/{clerk_id}/roles", json={"roles": "lead"})
    assert not_a_list.status_code == 400

    escalation = client.post(f"/api/admin/users/{clerk_id}/roles", json={"roles": ["super_admin"]})
    assert escalation.status_code == 400

    missing = client.post("/api/admin/users/999/roles", json={"roles": ["lead"]})
    assert missing.status_code == 404


def test_super_admin_can_grant_super_admin(app, client):
    clerk_id = create_user(app, "clerk")
    login(client, "superuser", "letmein")

    response = client.post(f"/api/admin/users/{clerk_id}/roles", json={"roles": ["super_admin"]})

    assert response.status_code == 200
    assert response.get_json()["data"]["role"] == "super_admin"


def test_admin_cannot_demote_super_admin(app, client):
    create_user(app, "admin1", role_names=("admin",))
    boss_id = create_user(app, "boss", role_names=("super_admin",))
    login(client, "admin1")

    response = client.post(f"/api/admin/users/{boss_id}/roles", json={"roles": ["viewer"]})

    assert response.status_code == 403
    assert response.get_json()["code"] == "AUTHORIZATION_ERROR"
    with app.app_context():
        assert [role.name for role in db.session.get(User, boss_id).roles] == ["super_admin"]
    assert admin_events(app, "assign_roles") == []


def test_super_admin_can_demote_super_admin(app, client):
    boss_id = create_user(app, "boss", role_names=("super_admin",))
    login(client, "superuser", "letmein")

    response = client.post(f"/api/admin/users/{boss_id}/roles", json={"roles": ["viewer"]})

    assert response.status_code == 200
    assert response.get_json()["data"]["role"] == "viewer"


def test_role_changes_are_strictly_rate_limited(app, client):
    app.config["RATE_LIMITS"] = {
        **app.config["RATE_LIMITS"],
        "admin_strict": {"strategy": "sliding_window", "requests": 1, "window": 60},
    }
    clerk_id = create_user(app, "clerk")
    login(client, "superuser", "letmein")

    first = client.post(f"/api/admin/users/{clerk_id}/roles", json={"roles": ["lead"]})
    second = client.post(f"/api/admin/users/{clerk_id}/roles", json={"roles": ["lead"]})

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.headers["Retry-After"]


def test_feature_templates(app, client):
    create_user(app, "boss", role_names=("admin",))
    login(client, "boss")

    everything = client.get("/api/admin/permissions").get_json()["data"]
    assert set(everything) == {"Employee", "Contractor", "Designer", "Manufacturer", "Finance", "Super Admin"}

    designer = client.get("/api/admin/permissions?userType=Designer").get_json()["data"]
    assert designer["permissions"]["design_manage"] is True

    assert client.get("/api/admin/permissions?userType=Pilot").status_code == 400

    response = client.put(
        "/api/admin/permissions",
        json={"userType": "Designer", "permissions": {"design_manage": False}},
    )
    assert response.status_code == 200
    assert response.get_json()["data"]["permissions"]["design_manage"] is False

    reread = client.get("/api/admin/permissions?userType=Designer").get_json()["data"]
    assert reread["permissions"]["design_manage"] is False


def test_user_feature_overrides(app, client):
    create_user(app, "boss", role_names=("admin",))
    contractor_id = create_user(app, "temp", user_type="Contractor")
    login(client, "boss")

    response = client.post(
        f"/api/admin/users/{contractor_id}/permissions",
        json={"feature": "reports_view", "hasPermission": True},
    )

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["effectivePermissions"]["reports_view"] is True
    assert data["overrides"] == [{"feature": "reports_view", "has_permission": True}]

    fetched = client.get(f"/api/admin/users/{contractor_id}/permissions").get_json()["data"]
    assert fetched == data

    missing_flag = client.post(
        f"/api/admin/users/{contractor_id}/permissions", json={"feature": "reports_view"}
    )
    assert missing_flag.status_code == 400
    unknown = client.post(
        f"/api/admin/users/{contractor_id}/permissions",
        json={"feature": "fly", "hasPermission": True},
    )
    assert unknown.status_code == 400
