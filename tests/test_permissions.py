import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from opshub import create_app
from opshub.errors import ValidationError
from opshub.extensions import db
from opshub.models import Role, User
from opshub.permissions import (
    DEFAULT_FEATURE_PERMISSIONS,
    ROLE_ORDER,
    ROLE_PERMISSIONS,
    UserContext,
    build_user_context,
    can_access_resource,
    check_permissions,
    get_page_permissions,
    has_all_permissions,
    has_any_permission,
    has_permission,
    resolve_feature_template,
    resolve_role,
    resolve_user_permissions,
    set_user_override,
    update_feature_template,
)


@pytest.fixture
def app():
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "ADMIN_USER": "superuser",
        }
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


def make_context(role="employee", *, user_id=7, department_id=None, is_active=True):
    return UserContext(
        id=user_id,
        email="someone@example.com",
        username="someone",
        role=role,
        permissions=ROLE_PERMISSIONS[role],
        department_id=department_id,
        is_active=is_active,
    )


def make_user(username, role_names=(), user_type="Employee", email=None):
    user = User(username=username, email=email or f"{username}@example.com", user_type=user_type)
    user.set_password("password")
    user.roles = [Role.query.filter_by(name=name).one() for name in role_names]
    db.session.add(user)
    db.session.commit()
    return user


def test_every_role_has_a_permission_set():
    assert set(ROLE_ORDER) == set(ROLE_PERMISSIONS)
    assert ROLE_PERMISSIONS["manager"] < ROLE_PERMISSIONS["admin"] < ROLE_PERMISSIONS["super_admin"]


def test_permission_matrix_lookups():
    assert has_permission("manager", "orders.write")
    assert not has_permission("employee", "orders.write")
    assert not has_permission("nonexistent", "orders.read")
    assert has_any_permission("viewer", ["orders.write", "orders.read"])
    assert not has_all_permissions("viewer", ["orders.write", "orders.read"])
    assert has_all_permissions("lead", ["production.read", "production.write"])


def test_check_permissions_outcomes():
    assert check_permissions(None, ["orders.read"]).status_code == 401

    disabled = check_permissions(make_context(is_active=False), ["orders.read"])
    assert (disabled.valid, disabled.status_code, disabled.error) == (
        False,
        403,
        "Account is disabled",
    )
    assert check_permissions(
        make_context(is_active=False), [], enforce_active=False
    ).valid

    wrong_role = check_permissions(make_context(), [], allowed_roles=["admin"])
    assert wrong_role.error == "Insufficient role privileges"

    missing = check_permissions(make_context("viewer"), ["orders.write"])
    assert (missing.valid, missing.status_code) == (False, 403)

    granted = check_permissions(make_context("viewer"), ["orders.write", "orders.read"])
    assert granted.valid

    strict = check_permissions(
        make_context("viewer"), ["orders.write", "orders.read"], require_all=True
    )
    assert not strict.valid


def test_page_permissions():
    assert get_page_permissions("/dashboard/orders") == ("orders.read",)
    assert get_page_permissions("/dashboard/orders/42/edit") == ("orders.read",)
    assert get_page_permissions("/dashboard/ar-aging") == ("finance.read", "finance.view_sensitive")
    assert get_page_permissions("/somewhere/else") == ("customers.read",)


def test_resource_access():
    assert can_access_resource(make_context("admin"), {"created_by": 99})

    same_department = make_context(department_id="D1")
    assert can_access_resource(same_department, {"department_id": "D1"})
    assert not can_access_resource(same_department, {"department_id": "D2", "created_by": 7})

    owner = make_context()
    assert can_access_resource(owner, {"created_by": 7})
    assert can_access_resource(owner, {"assigned_to": "7"})
    assert not can_access_resource(owner, {"created_by": 8})


def test_highest_ranked_role_wins(app):
    with app.app_context():
        user = make_user("lead-employee", role_names=("employee", "lead"))
        assert resolve_role(user) == "lead"

        nobody = make_user("nobody")
        assert resolve_role(nobody) == "viewer"


def test_configured_admin_email_resolves_to_super_admin(app):
    app.config["ADMIN_EMAIL"] = "ops@example.com"
    with app.app_context():
        user = make_user("ops", role_names=("viewer",), email="OPS@example.com")
        context = build_user_context(user)
        assert context.role == "super_admin"
        assert context.is_admin
        assert "system.audit" in context.permissions


def test_feature_template_defaults_and_updates(app):
    with app.app_context():
        assert resolve_feature_template("Designer") == DEFAULT_FEATURE_PERMISSIONS["Designer"]

        updated = update_feature_template("Designer", {"qc_manage": True, "orders_view": False})
        assert updated["qc_manage"] is True
        assert updated["orders_view"] is False

        again = update_feature_template("Designer", {"qc_manage": False})
        assert again["qc_manage"] is False
        assert again["orders_view"] is False


def test_feature_template_validation(app):
    with app.app_context():
        with pytest.raises(ValidationError):
            update_feature_template("Astronaut", {"orders_view": True})
        with pytest.raises(ValidationError):
            update_feature_template("Employee", {"teleport": True})
        with pytest.raises(ValidationError):
            update_feature_template("Employee", {"orders_view": "yes"})


def test_user_overrides_layer_on_template(app):
    with app.app_context():
        user = make_user("contractor", user_type="Contractor")

        set_user_override(user, "reports_view", True)
        set_user_override(user, "orders_view", False)
        set_user_override(user, "orders_view", False)

        resolved = resolve_user_permissions(user)
        assert resolved["userType"] == "Contractor"
        assert resolved["defaultPermissions"]["orders_view"] is True
        assert resolved["effectivePermissions"]["orders_view"] is False
        assert resolved["effectivePermissions"]["reports_view"] is True
        assert [item["feature"] for item in resolved["overrides"]] == [
            "orders_view",
            "reports_view",
        ]

        with pytest.raises(ValidationError):
            set_user_override(user, "reports_view", "true")
