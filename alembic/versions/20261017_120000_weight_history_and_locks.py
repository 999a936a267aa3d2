"""channel weight history and scheduler locks

Revision ID: 20261017_120000
Revises: 20261017_090000
Create Date: 2026-10-17 12:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261017_120000"
down_revision = "20261017_090000"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "channel_weight_history",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "channel_id",
            sa.BigInteger(),
            sa.ForeignKey("channels.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("importance_weight", sa.Float(), nullable=False),
        sa.Column("weight_mode", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.BigInteger(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "channel_weight_history_channel_idx", "channel_weight_history", ["channel_id", "id"]
    )

    op.create_table(
        "scheduler_locks",
        sa.Column("lock_name", sa.Text(), primary_key=True),
        sa.Column("holder_id", sa.Text(), nullable=False),
        sa.Column(
            "acquired_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("channel_weight_history_channel_idx", table_name="channel_weight_history")
    op.drop_table("channel_weight_history")
