"""add design boards, sharing and presence

Revision ID: 20250615_add_design_boards
Revises: 20250601_initial_schema
Create Date: 2025-06-15

"""

from alembic import op
import sqlalchemy as sa


revision = "20250615_add_design_boards"
down_revision = "20250601_initial_schema"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "design_board",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("project_id", sa.String(64)),
        sa.Column("thumbnail", sa.String(512)),
        sa.Column("is_template", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("snapshot", sa.JSON()),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "board_permission",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("board_id", sa.Integer(), sa.ForeignKey("design_board.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id")),
        sa.Column("user_email", sa.String(255)),
        sa.Column("role", sa.String(16), nullable=False, server_default="viewer"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "board_presence",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("board_id", sa.Integer(), sa.ForeignKey("design_board.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("cursor_position", sa.JSON()),
        sa.Column("viewport", sa.JSON()),
        sa.Column("selected_objects", sa.JSON(), nullable=False),
        sa.Column("color", sa.String(7), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_seen", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("board_id", "user_id", name="uq_board_presence_user"),
    )
    op.create_index(
        "ix_board_presence_board_active", "board_presence", ["board_id", "is_active"]
    )


def downgrade():
    op.drop_index("ix_board_presence_board_active", table_name="board_presence")
    op.drop_table("board_presence")
    op.drop_table("board_permission")
    op.drop_table("design_board")
