"""Role based access control for the JSON API.

Every user resolves to a single RBAC role (the highest ranked role assigned
to them) and each role grants a fixed set of dotted permissions such as
``orders.read``. Route handlers declare what they need through
:func:`require_permissions`.

Separately, user *types* (Employee, Designer, ...) carry a template of
coarse feature flags that administrators can edit, with per-user overrides
layered on top.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, g
from flask_login import current_user

from opshub.errors import AuthenticationError, AuthorizationError, ValidationError
from opshub.extensions import db
from opshub.models import FeaturePermissionTemplate, User, UserFeatureOverride


ROLE_ORDER: tuple[str, ...] = (
    "super_admin",
    "admin",
    "manager",
    "lead",
    "employee",
    "contractor",
    "client",
    "viewer",
)

ROLE_DESCRIPTIONS: dict[str, str] = {
    "super_admin": "Full system access",
    "admin": "Company administration",
    "manager": "Department management",
    "lead": "Team leadership",
    "employee": "General employee access",
    "contractor": "Limited contractor access",
    "client": "Client portal access",
    "viewer": "Read-only access",
}

DEFAULT_ROLE = "viewer"
ADMIN_ROLES = frozenset({"super_admin", "admin"})

_MANAGER_PERMISSIONS = (
    "users.read", "users.update",
    "customers.create", "customers.read", "customers.update", "customers.write",
    "customers.export",
    "finance.read", "finance.create", "finance.update", "finance.view_sensitive",
    "orders.create", "orders.read", "orders.update", "orders.write",
    "orders.approve", "orders.ship",
    "products.create", "products.read", "products.update", "products.write",
    "inventory.manage",
    "projects.create", "projects.read", "projects.update", "projects.write",
    "projects.manage",
    "production.read", "production.update", "production.write",
    "production.manage", "shop_drawings.approve",
    "design.create", "design.read", "design.update", "design.approve",
    "reports.read", "reports.create", "reports.export", "analytics.view_all",
)

_ADMIN_PERMISSIONS = _MANAGER_PERMISSIONS + (
    "users.create", "users.manage_roles",
    "customers.delete",
    "finance.approve_payments",
    "orders.delete",
    "products.delete",
    "projects.delete",
    "system.configure", "system.integrations",
    "admin.gdpr.read", "admin.gdpr.manage", "admin.cache.read",
    "admin.cache.manage", "admin.security.read", "admin.security.scan",
)

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "super_admin": frozenset(
        _ADMIN_PERMISSIONS
        + ("users.delete", "finance.delete", "system.backup", "system.audit")
    ),
    "admin": frozenset(_ADMIN_PERMISSIONS),
    "manager": frozenset(_MANAGER_PERMISSIONS),
    "lead": frozenset(
        (
            "users.read",
            "customers.read", "customers.update",
            "finance.read", "finance.create", "finance.update",
            "orders.create", "orders.read", "orders.update", "orders.ship",
            "products.read", "products.update", "inventory.manage",
            "projects.create", "projects.read", "projects.update",
            "production.read", "production.update", "production.write",
            "design.create", "design.read", "design.update",
            "reports.read", "reports.create",
        )
    ),
    "employee": frozenset(
        (
            "customers.read", "customers.update",
            "finance.read", "finance.create",
            "orders.create", "orders.read", "orders.update",
            "products.read", "products.update",
            "projects.read", "projects.update",
            "production.read", "production.update",
            "design.create", "design.read", "design.update",
            "reports.read",
        )
    ),
    "contractor": frozenset(
        (
            "customers.read", "orders.read", "products.read", "projects.read",
            "production.read", "design.read", "reports.read",
        )
    ),
    "client": frozenset(("orders.read", "projects.read", "reports.read")),
    "viewer": frozenset(
        ("customers.read", "orders.read", "products.read", "projects.read", "reports.read")
    ),
}


def has_permission(role: str, permission: str) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def has_any_permission(role: str, permissions: Iterable[str]) -> bool:
    return any(has_permission(role, permission) for permission in permissions)


def has_all_permissions(role: str, permissions: Iterable[str]) -> bool:
    return all(has_permission(role, permission) for permission in permissions)


@dataclass(frozen=True)
class UserContext:
    id: int
    email: str
    username: str
    role: str
    permissions: frozenset[str]
    department_id: str | None = None
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "role": self.role,
            "permissions": sorted(self.permissions),
            "department_id": self.department_id,
            "is_active": self.is_active,
        }


@dataclass
class PermissionCheck:
    valid: bool
    user: UserContext | None = None
    error: str | None = None
    status_code: int | None = None


def _is_configured_superuser(user: User) -> bool:
    admin_username = current_app.config.get("ADMIN_USER")
    admin_email = current_app.config.get("ADMIN_EMAIL")
    if admin_username and user.username == admin_username:
        return True
    return bool(admin_email and user.email and user.email.lower() == admin_email.lower())


def resolve_role(user: User) -> str:
    """Return the highest ranked RBAC role assigned to ``user``."""

    if _is_configured_superuser(user):
        return "super_admin"
    assigned = set(user.role_names())
    for role in ROLE_ORDER:
        if role in assigned:
            return role
    return DEFAULT_ROLE


def build_user_context(user: User | None) -> UserContext | None:
    if user is None or not getattr(user, "is_authenticated", False):
        return None
    role = resolve_role(user)
    return UserContext(
        id=user.id,
        email=user.email or "",
        username=user.username,
        role=role,
        permissions=ROLE_PERMISSIONS.get(role, frozenset()),
        department_id=user.department_id,
        is_active=bool(user.is_active_account),
    )


def current_user_context() -> UserContext | None:
    """Return the :class:`UserContext` of the logged in user, cached per request."""

    if "user_context" not in g:
        g.user_context = build_user_context(current_user)
    return g.user_context


def check_permissions(
    user: UserContext | None,
    required: Sequence[str],
    *,
    require_all: bool = False,
    allowed_roles: Iterable[str] | None = None,
    enforce_active: bool = True,
) -> PermissionCheck:
    if user is None:
        return PermissionCheck(False, error="Authentication required", status_code=401)

    if enforce_active and not user.is_active:
        return PermissionCheck(False, user, "Account is disabled", 403)

    if allowed_roles is not None and user.role not in set(allowed_roles):
        return PermissionCheck(False, user, "Insufficient role privileges", 403)

    if required:
        if require_all:
            granted = has_all_permissions(user.role, required)
        else:
            granted = has_any_permission(user.role, required)
        if not granted:
            return PermissionCheck(False, user, "Insufficient permissions", 403)

    return PermissionCheck(True, user)


def require_permissions(
    *permissions: str,
    require_all: bool = False,
    allowed_roles: Iterable[str] | None = None,
    enforce_active: bool = True,
):
    """Decorator ensuring the active user holds the listed permissions.

    Without permissions the decorator only requires an authenticated,
    active account.
    """

    required = tuple(dict.fromkeys(name for name in permissions if name))
    roles = tuple(allowed_roles) if allowed_roles is not None else None

    def decorator(view_func):
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            result = check_permissions(
                current_user_context(),
                required,
                require_all=require_all,
                allowed_roles=roles,
                enforce_active=enforce_active,
            )
            if not result.valid:
                if result.status_code == 401:
                    raise AuthenticationError(result.error)
                raise AuthorizationError(result.error)
            return view_func(*args, **kwargs)

        return wrapped

    return decorator


PAGE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "/dashboard": ("customers.read",),
    "/dashboard/customers": ("customers.read",),
    "/dashboard/clients": ("customers.read",),
    "/dashboard/contacts": ("customers.read",),
    "/dashboard/leads": ("customers.read",),
    "/dashboard/crm": ("customers.read",),
    "/dashboard/payments": ("finance.read",),
    "/dashboard/ar-aging": ("finance.read", "finance.view_sensitive"),
    "/dashboard/finance": ("finance.read",),
    "/dashboard/budgets": ("finance.read",),
    "/dashboard/collections": ("finance.read",),
    "/dashboard/invoices": ("finance.read",),
    "/dashboard/orders": ("orders.read",),
    "/dashboard/contracts": ("orders.read",),
    "/dashboard/pipeline": ("orders.read",),
    "/dashboard/products": ("products.read",),
    "/dashboard/items": ("products.read",),
    "/dashboard/materials": ("products.read",),
    "/dashboard/projects": ("projects.read",),
    "/dashboard/design-projects": ("design.read",),
    "/dashboard/design-briefs": ("design.read",),
    "/dashboard/production": ("production.read",),
    "/dashboard/manufacturers": ("production.read",),
    "/dashboard/shop-drawings": ("production.read",),
    "/dashboard/qc-tracking": ("production.read",),
    "/dashboard/shipping": ("orders.read",),
    "/dashboard/shipping-quotes": ("orders.read",),
    "/dashboard/shipping-management": ("orders.read",),
    "/dashboard/analytics": ("reports.read",),
    "/dashboard/reports": ("reports.read",),
    "/dashboard/settings": ("users.read",),
    "/dashboard/admin": ("system.configure",),
    "/dashboard/workflows": ("projects.read",),
    "/dashboard/tasks": ("projects.read",),
    "/dashboard/my-tasks": ("projects.read",),
}

DEFAULT_PAGE_PERMISSIONS: tuple[str, ...] = ("customers.read",)


def get_page_permissions(pathname: str) -> tuple[str, ...]:
    """Return the permissions a page path requires."""

    if pathname in PAGE_PERMISSIONS:
        return PAGE_PERMISSIONS[pathname]
    for pattern, permissions in PAGE_PERMISSIONS.items():
        if pathname.startswith(pattern + "/"):
            return permissions
    return DEFAULT_PAGE_PERMISSIONS


def can_access_resource(user: UserContext, resource: Mapping[str, Any]) -> bool:
    if user.role in ADMIN_ROLES:
        return True

    department_id = resource.get("department_id")
    if user.department_id and department_id:
        return str(user.department_id) == str(department_id)

    owners = (resource.get("created_by"), resource.get("assigned_to"))
    return any(owner is not None and str(owner) == str(user.id) for owner in owners)


FEATURES: tuple[str, ...] = (
    "orders_view",
    "orders_create",
    "orders_edit",
    "orders_delete",
    "inventory_view",
    "inventory_edit",
    "inventory_create",
    "inventory_delete",
    "customers_view",
    "customers_edit",
    "customers_create",
    "customers_delete",
    "design_manage",
    "production_manage",
    "qc_manage",
    "finance_manage",
    "reports_view",
    "reports_create",
    "reports_edit",
    "admin_users",
    "admin_system",
)

_GRANTED_FEATURES: dict[str, frozenset[str]] = {
    "Employee": frozenset({"orders_view", "inventory_view", "customers_view", "reports_view"}),
    "Contractor": frozenset({"orders_view"}),
    "Designer": frozenset(
        {
            "orders_view", "orders_create", "orders_edit",
            "inventory_view", "inventory_edit", "inventory_create",
            "customers_view", "design_manage", "reports_view",
        }
    ),
    "Manufacturer": frozenset(
        {
            "orders_view", "orders_edit",
            "inventory_view", "inventory_edit", "inventory_create",
            "production_manage", "qc_manage", "reports_view",
        }
    ),
    "Finance": frozenset(
        {
            "orders_view", "orders_create", "orders_edit", "orders_delete",
            "inventory_view",
            "customers_view", "customers_edit", "customers_create",
            "finance_manage",
            "reports_view", "reports_create", "reports_edit",
            "admin_users",
        }
    ),
    "Super Admin": frozenset(FEATURES),
}

USER_TYPES: tuple[str, ...] = tuple(_GRANTED_FEATURES)

DEFAULT_FEATURE_PERMISSIONS: dict[str, dict[str, bool]] = {
    user_type: {feature: feature in granted for feature in FEATURES}
    for user_type, granted in _GRANTED_FEATURES.items()
}


def _validate_user_type(user_type: str) -> None:
    if user_type not in DEFAULT_FEATURE_PERMISSIONS:
        raise ValidationError(
            "Unknown user type",
            errors={"userType": f"Must be one of: {', '.join(USER_TYPES)}"},
        )


def _validate_feature(feature: str, *, path: str = "feature") -> None:
    if feature not in FEATURES:
        raise ValidationError("Unknown feature", errors={path: f"Unknown feature '{feature}'"})


def resolve_feature_template(user_type: str) -> dict[str, bool]:
    """Return the defaults for ``user_type`` overlaid with stored template rows."""

    permissions = dict(DEFAULT_FEATURE_PERMISSIONS.get(user_type, dict.fromkeys(FEATURES, False)))
    rows = FeaturePermissionTemplate.query.filter_by(user_type=user_type).all()
    for row in rows:
        if row.feature in permissions:
            permissions[row.feature] = bool(row.allowed)
    return permissions


def update_feature_template(user_type: str, permissions: Mapping[str, Any]) -> dict[str, bool]:
    """Persist a feature template for ``user_type`` and return the merged result."""

    _validate_user_type(user_type)
    if not isinstance(permissions, Mapping):
        raise ValidationError(errors={"permissions": "Expected an object of feature flags"})
    for feature, allowed in permissions.items():
        _validate_feature(feature, path=f"permissions.{feature}")
        if not isinstance(allowed, bool):
            raise ValidationError(errors={f"permissions.{feature}": "Must be a boolean"})

    existing = {
        row.feature: row
        for row in FeaturePermissionTemplate.query.filter_by(user_type=user_type).all()
    }
    for feature, allowed in permissions.items():
        row = existing.get(feature)
        if row is None:
            db.session.add(
                FeaturePermissionTemplate(user_type=user_type, feature=feature, allowed=allowed)
            )
        else:
            row.allowed = allowed
    db.session.commit()
    return resolve_feature_template(user_type)


def resolve_user_permissions(user: User) -> dict[str, Any]:
    defaults = resolve_feature_template(user.user_type)
    overrides = UserFeatureOverride.query.filter_by(user_id=user.id).order_by(
        UserFeatureOverride.feature
    ).all()
    effective = dict(defaults)
    for override in overrides:
        effective[override.feature] = bool(override.has_permission)
    return {
        "userType": user.user_type,
        "defaultPermissions": defaults,
        "overrides": [override.to_dict() for override in overrides],
        "effectivePermissions": effective,
    }


def set_user_override(user: User, feature: str, has_permission: Any) -> UserFeatureOverride:
    _validate_feature(feature)
    if not isinstance(has_permission, bool):
        raise ValidationError(errors={"hasPermission": "Must be a boolean"})

    override = UserFeatureOverride.query.filter_by(user_id=user.id, feature=feature).first()
    if override is None:
        override = UserFeatureOverride(user_id=user.id, feature=feature)
        db.session.add(override)
    override.has_permission = has_permission
    db.session.commit()
    return override
