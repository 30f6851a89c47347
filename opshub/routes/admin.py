from flask import Blueprint, request

from opshub.api import get_json_payload, require_fields, success_response
from opshub.audit import record_admin_event
from opshub.errors import AuthorizationError, NotFoundError, ValidationError
from opshub.extensions import db
from opshub.models import Role, User
from opshub.permissions import (
    ROLE_ORDER,
    USER_TYPES,
    build_user_context,
    current_user_context,
    require_permissions,
    resolve_feature_template,
    resolve_role,
    resolve_user_permissions,
    set_user_override,
    update_feature_template,
)
from opshub.services.rate_limit import rate_limited

bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _audit(action: str, status_code: int = 200, **details) -> None:
    actor = current_user_context()
    record_admin_event(
        action,
        user_id=actor.id if actor else None,
        username=actor.username if actor else None,
        status_code=status_code,
        details=details,
    )


def _get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def _user_payload(user: User) -> dict:
    payload = user.to_dict()
    payload["role"] = resolve_role(user)
    return payload


@bp.get("/users")
@rate_limited("admin_moderate")
@require_permissions("users.read")
def list_users():
    users = User.query.order_by(User.username).all()
    _audit("list_users", count=len(users))
    return success_response([_user_payload(user) for user in users], total=len(users))


@bp.post("/users/<int:user_id>/roles")
@rate_limited("admin_strict")
@require_permissions("users.manage_roles")
def assign_roles(user_id: int):
    user = _get_user(user_id)
    data = get_json_payload()
    requested = data.get("roles")
    if not isinstance(requested, list) or not all(isinstance(name, str) for name in requested):
        raise ValidationError(errors={"roles": "Expected a list of role names"})

    unknown = sorted({name for name in requested if name not in ROLE_ORDER})
    if unknown:
        raise ValidationError(
            "Unknown roles",
            errors={"roles": f"Unknown roles: {', '.join(unknown)}"},
        )

    actor = current_user_context()
    if "super_admin" in requested and actor.role != "super_admin":
        raise ValidationError(errors={"roles": "Only a super admin can grant super_admin"})
    if resolve_role(user) == "super_admin" and actor.role != "super_admin":
        raise AuthorizationError("Only a super admin can change a super admin's roles")

    roles = Role.query.filter(Role.name.in_(requested)).all() if requested else []
    missing = {name for name in requested} - {role.name for role in roles}
    for name in sorted(missing):
        role = Role(name=name)
        db.session.add(role)
        roles.append(role)

    user.roles = roles
    db.session.commit()
    _audit("assign_roles", target_user_id=user.id, roles=sorted(role.name for role in roles))

    return success_response(
        {**_user_payload(user), "context": build_user_context(user).to_dict()}
    )


@bp.get("/permissions")
@rate_limited("admin_moderate")
@require_permissions("users.read")
def get_feature_templates():
    user_type = (request.args.get("userType") or "").strip()
    if user_type:
        if user_type not in USER_TYPES:
            raise ValidationError(errors={"userType": f"Must be one of: {', '.join(USER_TYPES)}"})
        data = {"userType": user_type, "permissions": resolve_feature_template(user_type)}
    else:
        data = {name: resolve_feature_template(name) for name in USER_TYPES}

    _audit("view_permission_templates", user_type=user_type or None)
    return success_response(data)


@bp.put("/permissions")
@rate_limited("admin_strict")
@require_permissions("users.manage_roles")
def put_feature_template():
    data = get_json_payload()
    require_fields(data, "userType", "permissions")

    user_type = data["userType"]
    permissions = update_feature_template(user_type, data["permissions"])
    _audit("update_permission_template", user_type=user_type, features=sorted(data["permissions"]))
    return success_response({"userType": user_type, "permissions": permissions})


@bp.get("/users/<int:user_id>/permissions")
@rate_limited("admin_moderate")
@require_permissions("users.read")
def get_user_permissions(user_id: int):
    user = _get_user(user_id)
    _audit("view_user_permissions", target_user_id=user.id)
    return success_response(resolve_user_permissions(user))


@bp.post("/users/<int:user_id>/permissions")
@rate_limited("admin_strict")
@require_permissions("users.manage_roles")
def set_user_permission(user_id: int):
    user = _get_user(user_id)
    data = get_json_payload()
    require_fields(data, "feature")
    if "hasPermission" not in data:
        raise ValidationError(errors={"hasPermission": "This field is required"})

    override = set_user_override(user, data["feature"], data["hasPermission"])
    _audit(
        "set_user_permission",
        target_user_id=user.id,
        feature=override.feature,
        has_permission=override.has_permission,
    )
    return success_response(resolve_user_permissions(user))
