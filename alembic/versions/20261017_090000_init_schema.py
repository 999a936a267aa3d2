"""init schema

Revision ID: 20261017_090000
Revises: 
Create Date: 2026-10-17 09:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "20261017_090000"
down_revision = None
branch_labels = None
depends_on = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "channels",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("tg_peer_id", sa.BigInteger(), nullable=True),
        sa.Column("access_hash", sa.BigInteger(), nullable=True),
        sa.Column("username", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), server_default=sa.text("''"), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("invite_link", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("importance_weight", sa.Float(), server_default=sa.text("1.0"), nullable=False),
        sa.Column("weight_mode", sa.Text(), server_default=sa.text("'manual'"), nullable=False),
        sa.Column("relevance_threshold", sa.Float(), nullable=True),
        sa.Column(
            "relevance_threshold_delta", sa.Float(), server_default=sa.text("0"), nullable=False
        ),
        sa.Column(
            "auto_relevance_enabled", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        sa.Column(
            "last_tg_message_id", sa.BigInteger(), server_default=sa.text("0"), nullable=False
        ),
        _created_at("added_at"),
        sa.Column("last_fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tg_peer_id", name="channels_tg_peer_id_key"),
    )
    op.create_index("channels_active_idx", "channels", ["is_active"])
    op.create_index("channels_username_idx", "channels", ["username"])

    op.create_table(
        "raw_messages",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "channel_id",
            sa.BigInteger(),
            sa.ForeignKey("channels.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tg_message_id", sa.BigInteger(), nullable=False),
        sa.Column("tg_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("entities", postgresql.JSONB(), nullable=True),
        sa.Column("media", postgresql.JSONB(), nullable=True),
        sa.Column("media_data", sa.LargeBinary(), nullable=True),
        sa.Column("links", postgresql.JSONB(), nullable=True),
        sa.Column("canonical_hash", sa.Text(), nullable=False),
        sa.Column("is_forward", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("views", sa.Integer(), nullable=True),
        sa.Column("forwards", sa.Integer(), nullable=True),
        sa.Column("processed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column(
            "discoveries_extracted", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        _created_at(),
        sa.UniqueConstraint(
            "channel_id", "tg_message_id", name="raw_messages_channel_message_uidx"
        ),
    )
    op.create_index("raw_messages_unprocessed_idx", "raw_messages", ["processed", "id"])
    op.create_index("raw_messages_hash_idx", "raw_messages", ["canonical_hash"])

    op.create_table(
        "items",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "raw_id",
            sa.BigInteger(),
            sa.ForeignKey("raw_messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "channel_id",
            sa.BigInteger(),
            sa.ForeignKey("channels.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tg_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("canonical_hash", sa.Text(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("topic", sa.Text(), nullable=True),
        sa.Column("language", sa.Text(), nullable=True),
        sa.Column("relevance_score", sa.Float(), nullable=True),
        sa.Column("importance_score", sa.Float(), nullable=True),
        sa.Column("status", sa.Text(), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("error", postgresql.JSONB(), nullable=True),
        sa.Column("drop_reason", sa.Text(), nullable=True),
        sa.Column("digested_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _created_at("updated_at"),
        sa.UniqueConstraint("raw_id", name="items_raw_id_key"),
        sa.CheckConstraint(
            "status IN ('pending','ready_pending','ready_digested','rejected','error')",
            name="items_status_check",
        ),
    )
    op.create_index("items_status_date_idx", "items", ["status", "tg_date"])
    op.create_index("items_hash_idx", "items", ["canonical_hash"])

    op.create_table(
        "digests",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "item_ids",
            postgresql.ARRAY(sa.BigInteger()),
            server_default=sa.text("'{}'"),
            nullable=False,
        ),
        sa.Column("status", sa.Text(), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("target_chat_id", sa.BigInteger(), nullable=True),
        sa.Column(
            "message_ids",
            postgresql.ARRAY(sa.BigInteger()),
            server_default=sa.text("'{}'"),
            nullable=False,
        ),
        sa.Column("first_message_id", sa.BigInteger(), nullable=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rating_up", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("rating_down", sa.Integer(), server_default=sa.text("0"), nullable=False),
        _created_at(),
        sa.UniqueConstraint("window_start", "window_end", name="digests_window_uidx"),
    )

    op.create_table(
        "clusters",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "digest_id",
            sa.BigInteger(),
            sa.ForeignKey("digests.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("topic", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column(
            "item_ids",
            postgresql.ARRAY(sa.BigInteger()),
            server_default=sa.text("'{}'"),
            nullable=False,
        ),
        sa.Column(
            "representative_item_id",
            sa.BigInteger(),
            sa.ForeignKey("items.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _created_at(),
    )

    op.create_table(
        "discoveries",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("discovery_key", sa.Text(), nullable=False),
        sa.Column("username", sa.Text(), nullable=True),
        sa.Column("tg_peer_id", sa.BigInteger(), nullable=True),
        sa.Column("access_hash", sa.BigInteger(), nullable=True),
        sa.Column("invite_hash", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("source_type", sa.Text(), nullable=False),
        sa.Column(
            "from_channel_id",
            sa.BigInteger(),
            sa.ForeignKey("channels.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("discovery_count", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("max_views", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_forwards", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("engagement_score", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.Text(), server_default=sa.text("'pending'"), nullable=False),
        sa.Column(
            "matched_channel_id",
            sa.BigInteger(),
            sa.ForeignKey("channels.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _created_at("first_seen_at"),
        _created_at("last_seen_at"),
        sa.UniqueConstraint("discovery_key", name="discoveries_discovery_key_key"),
    )
    op.create_index("discoveries_status_idx", "discoveries", ["status"])

    op.create_table(
        "settings",
        sa.Column("key", sa.Text(), primary_key=True),
        sa.Column("value", postgresql.JSONB(), nullable=True),
        _created_at("updated_at"),
        sa.Column("updated_by", sa.BigInteger(), nullable=True),
    )

    op.create_table(
        "setting_history",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("old_value", postgresql.JSONB(), nullable=True),
        sa.Column("new_value", postgresql.JSONB(), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("changed_by", sa.BigInteger(), nullable=True),
        _created_at("changed_at"),
    )
    op.create_index("setting_history_key_idx", "setting_history", ["key", "id"])

    op.create_table(
        "ratings",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "digest_id",
            sa.BigInteger(),
            sa.ForeignKey("digests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("value", sa.SmallInteger(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("digest_id", "user_id", name="ratings_digest_user_uidx"),
        sa.CheckConstraint("value IN (-1, 1)", name="ratings_value_check"),
    )

    op.create_table(
        "item_ratings",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "item_id",
            sa.BigInteger(),
            sa.ForeignKey("items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("rating", sa.Text(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("source", sa.Text(), server_default=sa.text("'bot'"), nullable=False),
        _created_at(),
        sa.UniqueConstraint("item_id", "user_id", name="item_ratings_item_user_uidx"),
    )

    op.create_table(
        "annotations",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "item_id",
            sa.BigInteger(),
            sa.ForeignKey("items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.Text(), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("assigned_to", sa.BigInteger(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("label", sa.Text(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("labeled_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint("item_id", name="annotations_item_id_key"),
    )
    op.create_index("annotations_status_idx", "annotations", ["status", "id"])

    op.create_table(
        "llm_usage",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("task", sa.Text(), nullable=False),
        sa.Column("requests", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("prompt_tokens", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "completion_tokens", sa.BigInteger(), server_default=sa.text("0"), nullable=False
        ),
        sa.Column("cost_usd", sa.Numeric(14, 6), server_default=sa.text("0"), nullable=False),
        sa.UniqueConstraint("day", "provider", "model", "task", name="llm_usage_key_uidx"),
    )

    op.create_table(
        "errors",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("scope", sa.Text(), nullable=False),
        sa.Column("ref_id", sa.BigInteger(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("errors_scope_idx", "errors", ["scope", "created_at"])

    op.create_table(
        "drop_reasons",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "raw_message_id",
            sa.BigInteger(),
            sa.ForeignKey("raw_messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "channel_id",
            sa.BigInteger(),
            sa.ForeignKey("channels.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("raw_message_id", name="drop_reasons_raw_message_id_key"),
    )
    op.create_index("drop_reasons_reason_idx", "drop_reasons", ["reason", "created_at"])


def downgrade() -> None:
    raise RuntimeError("init schema is forward-only")
