"""initial operations schema

Revision ID: 20250601_initial_schema
Revises:
Create Date: 2025-06-01

"""

from alembic import op
import sqlalchemy as sa


revision = "20250601_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "role",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(64), nullable=False, unique=True),
        sa.Column("description", sa.String(255)),
    )
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(255), nullable=False, unique=True),
        sa.Column("email", sa.String(255), unique=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("user_type", sa.String(64), nullable=False, server_default="Employee"),
        sa.Column("department_id", sa.String(64)),
        sa.Column("is_active_account", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "user_role",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), primary_key=True),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("role.id"), primary_key=True),
    )
    op.create_table(
        "feature_permission_template",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_type", sa.String(64), nullable=False),
        sa.Column("feature", sa.String(64), nullable=False),
        sa.Column("allowed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_type", "feature", name="uq_feature_template"),
    )
    op.create_index(
        "ix_feature_permission_template_user_type",
        "feature_permission_template",
        ["user_type"],
    )
    op.create_table(
        "user_feature_override",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("feature", sa.String(64), nullable=False),
        sa.Column("has_permission", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "feature", name="uq_user_feature_override"),
    )

    op.create_table(
        "customer",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("company_name", sa.String(255)),
        sa.Column("email", sa.String(255), unique=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "portal_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "customer_id", sa.Integer(), sa.ForeignKey("customer.id"), nullable=False, unique=True
        ),
        sa.Column(
            "show_production_tracking", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
    )
    op.create_table(
        "order",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_number", sa.String(64), nullable=False, unique=True),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customer.id"), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "order_item",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("order.id"), nullable=False),
        sa.Column("item_name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_table(
        "production_item",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "order_item_id", sa.Integer(), sa.ForeignKey("order_item.id"), nullable=False
        ),
        sa.Column("stage", sa.String(32), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime()),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("notes", sa.Text()),
        sa.UniqueConstraint("order_item_id", "stage", name="uq_production_item_stage"),
    )
    op.create_table(
        "production_status",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("order.id"), nullable=False),
        sa.Column("item_name", sa.String(255)),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("priority", sa.String(16), nullable=False, server_default="normal"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("completed_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text()),
        sa.Column("started_at", sa.DateTime()),
        sa.Column("actual_start_date", sa.DateTime()),
        sa.Column("actual_completion_date", sa.DateTime()),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "collection",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("prefix", sa.String(32)),
        sa.Column("description", sa.Text()),
        sa.Column("image_url", sa.String(512)),
        sa.Column("display_order", sa.Integer()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "manufacturer",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("contact_person", sa.String(255)),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(64)),
        sa.Column("status", sa.String(32), nullable=False, server_default="approved"),
        sa.Column("specialties", sa.JSON(), nullable=False),
        sa.Column("quality_rating", sa.Numeric(3, 1)),
        sa.Column("lead_time_days", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "manufacturer_project",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "manufacturer_id", sa.Integer(), sa.ForeignKey("manufacturer.id"), nullable=False
        ),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("order.id")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="planning"),
        sa.Column("priority", sa.String(16), nullable=False, server_default="normal"),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "access_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("user_id", sa.Integer()),
        sa.Column("username", sa.String(255)),
        sa.Column("ip_address", sa.String(64)),
        sa.Column("user_agent", sa.String(512)),
        sa.Column("method", sa.String(16)),
        sa.Column("path", sa.String(512)),
        sa.Column("endpoint", sa.String(255)),
        sa.Column("status_code", sa.Integer()),
        sa.Column("details", sa.JSON()),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_access_log_event_type", "access_log", ["event_type"])
    op.create_table(
        "error_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("level", sa.String(16), nullable=False),
        sa.Column("source", sa.String(255)),
        sa.Column("error_type", sa.String(64)),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("context_json", sa.JSON()),
        sa.Column("request_id", sa.String(64)),
        sa.Column("path", sa.String(512)),
        sa.Column("user_id", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table("error_log")
    op.drop_index("ix_access_log_event_type", table_name="access_log")
    op.drop_table("access_log")
    op.drop_table("manufacturer_project")
    op.drop_table("manufacturer")
    op.drop_table("collection")
    op.drop_table("production_status")
    op.drop_table("production_item")
    op.drop_table("order_item")
    op.drop_table("order")
    op.drop_table("portal_settings")
    op.drop_table("customer")
    op.drop_table("user_feature_override")
    op.drop_index(
        "ix_feature_permission_template_user_type", table_name="feature_permission_template"
    )
    op.drop_table("feature_permission_template")
    op.drop_table("user_role")
    op.drop_table("user")
    op.drop_table("role")
