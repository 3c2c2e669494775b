"""Initial schema: users and farms.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-18

Run with:
    cd backend && alembic upgrade head
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "farms",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("total_size", sa.Float(), nullable=False),
        sa.Column("location", sa.JSON(), nullable=True),
        sa.Column("soil_type", sa.String(20), server_default="loamy"),
        sa.Column("irrigation_type", sa.String(20), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        # Structured grid config; null until the first grid save
        sa.Column("grid_rows", sa.Integer(), nullable=True),
        sa.Column("grid_cols", sa.Integer(), nullable=True),
        sa.Column("plot_size", sa.Float(), nullable=True),
        sa.Column("plots", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_farms_owner_id", "farms", ["owner_id"])
    op.create_index("ix_farms_is_active", "farms", ["is_active"])


def downgrade() -> None:
    op.drop_index("ix_farms_is_active", table_name="farms")
    op.drop_index("ix_farms_owner_id", table_name="farms")
    op.drop_table("farms")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
