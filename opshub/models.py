from datetime import datetime
from decimal import Decimal

from flask_login import UserMixin
from sqlalchemy import inspect
from sqlalchemy.orm.exc import DetachedInstanceError
from werkzeug.security import check_password_hash, generate_password_hash

from opshub.extensions import db


def _iso(value):
    if value is None:
        return None
    return value.isoformat()


def _money(value):
    if value is None:
        return None
    if isinstance(value, Decimal):
        return float(value)
    return value


user_roles = db.Table(
    "user_role",
    db.Column("user_id", db.Integer, db.ForeignKey("user.id"), primary_key=True),
    db.Column("role_id", db.Integer, db.ForeignKey("role.id"), primary_key=True),
)


class Role(db.Model):
    __tablename__ = "role"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), unique=True, nullable=False)
    description = db.Column(db.String(255))

    users = db.relationship(
        "User",
        secondary=user_roles,
        back_populates="roles",
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Role {self.name}>"


class User(UserMixin, db.Model):
    __tablename__ = "user"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(255), unique=True, nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    # Feature-permission template key, e.g. "Employee" or "Designer".
    user_type = db.Column(db.String(64), nullable=False, default="Employee")
    department_id = db.Column(db.String(64), nullable=True)
    is_active_account = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    roles = db.relationship(
        "Role",
        secondary=user_roles,
        back_populates="users",
        lazy="joined",
    )

    feature_overrides = db.relationship(
        "UserFeatureOverride",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    @property
    def is_active(self) -> bool:  # type: ignore[override]
        return bool(self.is_active_account)

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def has_role(self, role_name: str) -> bool:
        return self.has_any_role((role_name,))

    def role_names(self) -> list[str]:
        try:
            return sorted({role.name for role in self.roles})
        except DetachedInstanceError:
            identity = inspect(self).identity
            if not identity:
                return []
            refreshed = db.session.get(User, identity[0])
            if refreshed is None:
                return []
            return refreshed.role_names()

    def has_any_role(self, role_names) -> bool:
        if not role_names:
            return False
        assigned = set(self.role_names())
        return any(name in assigned for name in role_names)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "user_type": self.user_type,
            "department_id": self.department_id,
            "is_active": self.is_active,
            "roles": self.role_names(),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<User {self.username}>"


class FeaturePermissionTemplate(db.Model):
    __tablename__ = "feature_permission_template"
    __table_args__ = (
        db.UniqueConstraint("user_type", "feature", name="uq_feature_template"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_type = db.Column(db.String(64), nullable=False, index=True)
    feature = db.Column(db.String(64), nullable=False)
    allowed = db.Column(db.Boolean, nullable=False, default=False)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class UserFeatureOverride(db.Model):
    __tablename__ = "user_feature_override"
    __table_args__ = (
        db.UniqueConstraint("user_id", "feature", name="uq_user_feature_override"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    feature = db.Column(db.String(64), nullable=False)
    has_permission = db.Column(db.Boolean, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    user = db.relationship("User", back_populates="feature_overrides")

    def to_dict(self) -> dict:
        return {"feature": self.feature, "has_permission": self.has_permission}


class Customer(db.Model):
    __tablename__ = "customer"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    company_name = db.Column(db.String(255))
    email = db.Column(db.String(255), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    portal_settings = db.relationship(
        "PortalSettings",
        back_populates="customer",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def summary(self) -> dict:
        return {"id": self.id, "name": self.name, "company_name": self.company_name}


class PortalSettings(db.Model):
    __tablename__ = "portal_settings"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customer.id"), unique=True, nullable=False
    )
    show_production_tracking = db.Column(db.Boolean, nullable=False, default=True)

    customer = db.relationship("Customer", back_populates="portal_settings")


class OrderStatus:
    DRAFT = "draft"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PRODUCTION = "in_production"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    ALL = (
        DRAFT,
        PENDING,
        CONFIRMED,
        IN_PRODUCTION,
        SHIPPED,
        DELIVERED,
        CANCELLED,
    )


class Order(db.Model):
    __tablename__ = "order"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), unique=True, nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customer.id"), nullable=False)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(db.String(32), nullable=False, default=OrderStatus.DRAFT)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    customer = db.relationship("Customer", backref="orders", lazy="joined")
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    def to_dict(self, *, include_items: bool = False) -> dict:
        payload = {
            "id": self.id,
            "order_number": self.order_number,
            "total_amount": _money(self.total_amount),
            "status": self.status,
            "customer_id": self.customer_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "customer": self.customer.summary() if self.customer else None,
        }
        if include_items:
            payload["items"] = [item.to_dict() for item in self.items]
        return payload


class OrderItem(db.Model):
    __tablename__ = "order_item"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False)
    item_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", back_populates="items")
    production_items = db.relationship(
        "ProductionItem",
        back_populates="order_item",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "item_name": self.item_name,
            "quantity": self.quantity,
        }


class ProductionItem(db.Model):
    """Progress of one order item through one production stage."""

    __tablename__ = "production_item"
    __table_args__ = (
        db.UniqueConstraint("order_item_id", "stage", name="uq_production_item_stage"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_item_id = db.Column(
        db.Integer, db.ForeignKey("order_item.id"), nullable=False
    )
    stage = db.Column(db.String(32), nullable=False)
    progress = db.Column(db.Integer, nullable=False, default=0)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    order_item = db.relationship("OrderItem", back_populates="production_items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_item_id": self.order_item_id,
            "stage": self.stage,
            "progress": self.progress,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "notes": self.notes,
        }


class ProductionStatus(db.Model):
    __tablename__ = "production_status"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False)
    item_name = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(32), nullable=False, default="pending")
    priority = db.Column(db.String(16), nullable=False, default="normal")
    quantity = db.Column(db.Integer, nullable=False, default=1)
    completed_quantity = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=True)
    actual_start_date = db.Column(db.DateTime, nullable=True)
    actual_completion_date = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    order = db.relationship("Order")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "item_name": self.item_name,
            "status": self.status,
            "priority": self.priority,
            "quantity": self.quantity,
            "completed_quantity": self.completed_quantity,
            "notes": self.notes,
            "started_at": _iso(self.started_at),
            "actual_start_date": _iso(self.actual_start_date),
            "actual_completion_date": _iso(self.actual_completion_date),
            "updated_at": _iso(self.updated_at),
        }


class Collection(db.Model):
    __tablename__ = "collection"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    prefix = db.Column(db.String(32), nullable=True)
    description = db.Column(db.Text, nullable=True)
    image_url = db.Column(db.String(512), nullable=True)
    display_order = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    # ``metadata`` is reserved on declarative models.
    metadata_json = db.Column("metadata", db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def to_dict(self) -> dict:
        metadata = self.metadata_json or {}
        return {
            "id": self.id,
            "name": self.name,
            "prefix": self.prefix or "",
            "description": self.description or "",
            "image_url": self.image_url or "",
            "display_order": self.display_order or 1,
            "is_active": self.is_active is not False,
            "designer": metadata.get("designer") or "",
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ManufacturerStatus:
    PROSPECT = "prospect"
    APPROVED = "approved"
    PREFERRED = "preferred"
    SUSPENDED = "suspended"

    ALL = (PROSPECT, APPROVED, PREFERRED, SUSPENDED)


class Manufacturer(db.Model):
    __tablename__ = "manufacturer"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    contact_person = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(32), nullable=False, default=ManufacturerStatus.APPROVED)
    specialties = db.Column(db.JSON, nullable=False, default=list)
    quality_rating = db.Column(db.Numeric(3, 1), nullable=True)
    lead_time_days = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    projects = db.relationship(
        "ManufacturerProject",
        back_populates="manufacturer",
        cascade="all, delete-orphan",
    )

    def summary(self) -> dict:
        return {
            "id": self.id,
            "company_name": self.name,
            "contact_name": self.contact_person,
            "performance_rating": _money(self.quality_rating),
        }


class ManufacturerProject(db.Model):
    __tablename__ = "manufacturer_project"

    ACTIVE_STATUSES = ("planning", "in_progress", "on_hold")

    id = db.Column(db.Integer, primary_key=True)
    manufacturer_id = db.Column(
        db.Integer, db.ForeignKey("manufacturer.id"), nullable=False
    )
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(32), nullable=False, default="planning")
    priority = db.Column(db.String(16), nullable=False, default="normal")
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    manufacturer = db.relationship("Manufacturer", back_populates="projects")
    order = db.relationship("Order")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "manufacturer_id": self.manufacturer_id,
            "order_id": self.order_id,
            "name": self.name,
            "status": self.status,
            "priority": self.priority,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "manufacturer": self.manufacturer.summary() if self.manufacturer else None,
            "order": (
                {"id": self.order.id, "order_number": self.order.order_number}
                if self.order
                else None
            ),
        }


class DesignBoard(db.Model):
    __tablename__ = "design_board"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(32), nullable=False, default="active")
    project_id = db.Column(db.String(64), nullable=True)
    thumbnail = db.Column(db.String(512), nullable=True)
    is_template = db.Column(db.Boolean, nullable=False, default=False)
    is_public = db.Column(db.Boolean, nullable=False, default=False)
    settings = db.Column(db.JSON, nullable=False, default=dict)
    snapshot = db.Column(db.JSON, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    participants = db.relationship(
        "BoardPermission",
        back_populates="board",
        cascade="all, delete-orphan",
    )
    presence = db.relationship(
        "BoardPresence",
        back_populates="board",
        cascade="all, delete-orphan",
    )

    def to_dict(self, *, include_snapshot: bool = False) -> dict:
        payload = {
            "id": self.id,
            "name": self.name,
            "description": self.description or "",
            "status": self.status,
            "project_id": self.project_id,
            "thumbnail": self.thumbnail,
            "is_template": self.is_template,
            "is_public": self.is_public,
            "settings": self.settings or {},
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_snapshot:
            payload["snapshot"] = self.snapshot
        return payload


class BoardPermission(db.Model):
    __tablename__ = "board_permission"

    ROLES = ("admin", "editor", "viewer")

    id = db.Column(db.Integer, primary_key=True)
    board_id = db.Column(db.Integer, db.ForeignKey("design_board.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    user_email = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(16), nullable=False, default="viewer")
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    board = db.relationship("DesignBoard", back_populates="participants")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "board_id": self.board_id,
            "user_id": self.user_id,
            "user_email": self.user_email,
            "role": self.role,
            "created_at": _iso(self.created_at),
        }


class BoardPresence(db.Model):
    """Live cursor/viewport/selection state of one user on one board."""

    __tablename__ = "board_presence"
    __table_args__ = (
        db.UniqueConstraint("board_id", "user_id", name="uq_board_presence_user"),
        db.Index("ix_board_presence_board_active", "board_id", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    board_id = db.Column(db.Integer, db.ForeignKey("design_board.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    cursor_position = db.Column(db.JSON, nullable=True)
    viewport = db.Column(db.JSON, nullable=True)
    selected_objects = db.Column(db.JSON, nullable=False, default=list)
    color = db.Column(db.String(7), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_seen = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    board = db.relationship("DesignBoard", back_populates="presence")
    user = db.relationship("User", lazy="joined")

    def to_dict(self) -> dict:
        user_payload = None
        if self.user is not None:
            user_payload = {
                "id": self.user.id,
                "email": self.user.email,
                "username": self.user.username,
            }
        return {
            "id": self.id,
            "board_id": self.board_id,
            "user_id": self.user_id,
            "cursor_position": self.cursor_position,
            "viewport": self.viewport,
            "selected_objects": list(self.selected_objects or []),
            "color": self.color,
            "is_active": self.is_active,
            "last_seen": _iso(self.last_seen),
            "user": user_payload,
        }


class AccessLog(db.Model):
    __tablename__ = "access_log"

    EVENT_REQUEST = "request"
    EVENT_LOGIN_SUCCESS = "login_success"
    EVENT_LOGIN_FAILURE = "login_failure"
    EVENT_LOGOUT = "logout"
    EVENT_ADMIN_ACTION = "admin_action"
    EVENT_PORTAL_VIEW = "portal_view"

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(32), nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=True)
    username = db.Column(db.String(255), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    method = db.Column(db.String(16), nullable=True)
    path = db.Column(db.String(512), nullable=True)
    endpoint = db.Column(db.String(255), nullable=True)
    status_code = db.Column(db.Integer, nullable=True)
    details = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class ErrorLog(db.Model):
    __tablename__ = "error_log"

    id = db.Column(db.Integer, primary_key=True)
    level = db.Column(db.String(16), nullable=False)
    source = db.Column(db.String(255), nullable=True)
    error_type = db.Column(db.String(64), nullable=True)
    message = db.Column(db.Text, nullable=False)
    context_json = db.Column(db.JSON, nullable=True)
    request_id = db.Column(db.String(64), nullable=True)
    path = db.Column(db.String(512), nullable=True)
    user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "level": self.level,
            "source": self.source,
            "error_type": self.error_type,
            "message": self.message,
            "context": self.context_json,
            "request_id": self.request_id,
            "path": self.path,
            "user_id": self.user_id,
            "created_at": _iso(self.created_at),
        }
