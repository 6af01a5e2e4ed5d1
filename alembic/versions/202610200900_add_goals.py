"""add savings goals

Revision ID: 202610200900
Revises: 202610190900
Create Date: 2026-10-20 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610200900"
down_revision = "202610190900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("target_amount", sa.Integer(), nullable=False),
        sa.Column(
            "current_amount", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_goals_user", "goals", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_goals_user", table_name="goals")
    op.drop_table("goals")
