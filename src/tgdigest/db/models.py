from __future__ import annotations

from datetime import date, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Identity,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    SmallInteger,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

ITEM_PENDING = "pending"
ITEM_READY_PENDING = "ready_pending"
ITEM_READY_DIGESTED = "ready_digested"
ITEM_REJECTED = "rejected"
ITEM_ERROR = "error"
ITEM_STATUSES = (ITEM_PENDING, ITEM_READY_PENDING, ITEM_READY_DIGESTED, ITEM_REJECTED, ITEM_ERROR)

DIGEST_PENDING = "pending"
DIGEST_POSTED = "posted"
DIGEST_ERROR = "error"

DISCOVERY_PENDING = "pending"
DISCOVERY_REJECTED = "rejected"
DISCOVERY_APPROVED = "approved"
DISCOVERY_MATCHED = "matched"

WEIGHT_MODE_AUTO = "auto"
WEIGHT_MODE_MANUAL = "manual"


def _created_at() -> Mapped[datetime]:
    return mapped_column(DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


class Base(DeclarativeBase):
    pass


class Channel(Base):
    __tablename__ = "channels"

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    tg_peer_id: Mapped[int | None] = mapped_column(BigInteger, unique=True, nullable=True)
    access_hash: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    username: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str] = mapped_column(Text, server_default=sa.text("''"), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    invite_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, server_default=sa.text("true"), nullable=False)
    importance_weight: Mapped[float] = mapped_column(
        Float, server_default=sa.text("1.0"), nullable=False
    )
    weight_mode: Mapped[str] = mapped_column(
        Text, server_default=sa.text("'manual'"), nullable=False
    )
    relevance_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    relevance_threshold_delta: Mapped[float] = mapped_column(
        Float, server_default=sa.text("0"), nullable=False
    )
    auto_relevance_enabled: Mapped[bool] = mapped_column(
        Boolean, server_default=sa.text("false"), nullable=False
    )
    last_tg_message_id: Mapped[int] = mapped_column(
        BigInteger, server_default=sa.text("0"), nullable=False
    )
    added_at: Mapped[datetime] = _created_at()
    last_fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RawMessage(Base):
    __tablename__ = "raw_messages"
    __table_args__ = (
        UniqueConstraint("channel_id", "tg_message_id", name="raw_messages_channel_message_uidx"),
        Index("raw_messages_unprocessed_idx", "processed", "id"),
        Index("raw_messages_hash_idx", "canonical_hash"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    channel_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    tg_message_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tg_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    entities: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONB, nullable=True)
    media: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    media_data: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    links: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONB, nullable=True)
    canonical_hash: Mapped[str] = mapped_column(Text, nullable=False)
    is_forward: Mapped[bool] = mapped_column(Boolean, server_default=sa.text("false"), nullable=False)
    views: Mapped[int | None] = mapped_column(Integer, nullable=True)
    forwards: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, server_default=sa.text("false"), nullable=False)
    discoveries_extracted: Mapped[bool] = mapped_column(
        Boolean, server_default=sa.text("false"), nullable=False
    )
    created_at: Mapped[datetime] = _created_at()


class Item(Base):
    __tablename__ = "items"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','ready_pending','ready_digested','rejected','error')",
            name="items_status_check",
        ),
        Index("items_status_date_idx", "status", "tg_date"),
        Index("items_hash_idx", "canonical_hash"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    raw_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("raw_messages.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    channel_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    tg_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    canonical_hash: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    topic: Mapped[str | None] = mapped_column(Text, nullable=True)
    language: Mapped[str | None] = mapped_column(Text, nullable=True)
    relevance_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    importance_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(Text, server_default=sa.text("'pending'"), nullable=False)
    error: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    drop_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    digested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _created_at()


class Digest(Base):
    __tablename__ = "digests"
    __table_args__ = (
        UniqueConstraint("window_start", "window_end", name="digests_window_uidx"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    item_ids: Mapped[list[int]] = mapped_column(
        ARRAY(BigInteger), server_default=sa.text("'{}'"), nullable=False
    )
    status: Mapped[str] = mapped_column(Text, server_default=sa.text("'pending'"), nullable=False)
    target_chat_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    message_ids: Mapped[list[int]] = mapped_column(
        ARRAY(BigInteger), server_default=sa.text("'{}'"), nullable=False
    )
    first_message_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rating_up: Mapped[int] = mapped_column(Integer, server_default=sa.text("0"), nullable=False)
    rating_down: Mapped[int] = mapped_column(Integer, server_default=sa.text("0"), nullable=False)
    created_at: Mapped[datetime] = _created_at()


class Cluster(Base):
    __tablename__ = "clusters"

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    digest_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("digests.id", ondelete="CASCADE"), nullable=True
    )
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    topic: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    item_ids: Mapped[list[int]] = mapped_column(
        ARRAY(BigInteger), server_default=sa.text("'{}'"), nullable=False
    )
    representative_item_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("items.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = _created_at()


class Discovery(Base):
    __tablename__ = "discoveries"
    __table_args__ = (Index("discoveries_status_idx", "status"),)

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    discovery_key: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    username: Mapped[str | None] = mapped_column(Text, nullable=True)
    tg_peer_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    access_hash: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    invite_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    from_channel_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("channels.id", ondelete="SET NULL"), nullable=True
    )
    discovery_count: Mapped[int] = mapped_column(Integer, server_default=sa.text("1"), nullable=False)
    max_views: Mapped[int] = mapped_column(Integer, server_default=sa.text("0"), nullable=False)
    max_forwards: Mapped[int] = mapped_column(Integer, server_default=sa.text("0"), nullable=False)
    engagement_score: Mapped[float] = mapped_column(Float, server_default=sa.text("0"), nullable=False)
    status: Mapped[str] = mapped_column(Text, server_default=sa.text("'pending'"), nullable=False)
    matched_channel_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("channels.id", ondelete="SET NULL"), nullable=True
    )
    first_seen_at: Mapped[datetime] = _created_at()
    last_seen_at: Mapped[datetime] = _created_at()


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[Any] = mapped_column(JSONB, nullable=True)
    updated_at: Mapped[datetime] = _created_at()
    updated_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class SettingHistory(Base):
    __tablename__ = "setting_history"
    __table_args__ = (Index("setting_history_key_idx", "key", "id"),)

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    key: Mapped[str] = mapped_column(Text, nullable=False)
    old_value: Mapped[Any] = mapped_column(JSONB, nullable=True)
    new_value: Mapped[Any] = mapped_column(JSONB, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, server_default=sa.text("false"), nullable=False)
    changed_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    changed_at: Mapped[datetime] = _created_at()


class Rating(Base):
    __tablename__ = "ratings"
    __table_args__ = (
        UniqueConstraint("digest_id", "user_id", name="ratings_digest_user_uidx"),
        CheckConstraint("value IN (-1, 1)", name="ratings_value_check"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    digest_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("digests.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    value: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    created_at: Mapped[datetime] = _created_at()


class ItemRating(Base):
    __tablename__ = "item_ratings"
    __table_args__ = (
        UniqueConstraint("item_id", "user_id", name="item_ratings_item_user_uidx"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("items.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rating: Mapped[str] = mapped_column(Text, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(Text, server_default=sa.text("'bot'"), nullable=False)
    created_at: Mapped[datetime] = _created_at()


class Annotation(Base):
    __tablename__ = "annotations"
    __table_args__ = (Index("annotations_status_idx", "status", "id"),)

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("items.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    status: Mapped[str] = mapped_column(Text, server_default=sa.text("'pending'"), nullable=False)
    assigned_to: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    label: Mapped[str | None] = mapped_column(Text, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    labeled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class LLMUsage(Base):
    __tablename__ = "llm_usage"
    __table_args__ = (
        UniqueConstraint("day", "provider", "model", "task", name="llm_usage_key_uidx"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    task: Mapped[str] = mapped_column(Text, nullable=False)
    requests: Mapped[int] = mapped_column(Integer, server_default=sa.text("0"), nullable=False)
    prompt_tokens: Mapped[int] = mapped_column(BigInteger, server_default=sa.text("0"), nullable=False)
    completion_tokens: Mapped[int] = mapped_column(
        BigInteger, server_default=sa.text("0"), nullable=False
    )
    cost_usd: Mapped[float] = mapped_column(
        Numeric(14, 6, asdecimal=False), server_default=sa.text("0"), nullable=False
    )


class ErrorRecord(Base):
    __tablename__ = "errors"
    __table_args__ = (Index("errors_scope_idx", "scope", "created_at"),)

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    scope: Mapped[str] = mapped_column(Text, nullable=False)
    ref_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = _created_at()


class DropReason(Base):
    __tablename__ = "drop_reasons"
    __table_args__ = (Index("drop_reasons_reason_idx", "reason", "created_at"),)

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    raw_message_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("raw_messages.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    channel_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()


class ChannelWeightHistory(Base):
    __tablename__ = "channel_weight_history"
    __table_args__ = (Index("channel_weight_history_channel_idx", "channel_id", "id"),)

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    channel_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    importance_weight: Mapped[float] = mapped_column(Float, nullable=False)
    weight_mode: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[datetime] = _created_at()


class SchedulerLock(Base):
    __tablename__ = "scheduler_locks"

    lock_name: Mapped[str] = mapped_column(Text, primary_key=True)
    holder_id: Mapped[str] = mapped_column(Text, nullable=False)
    acquired_at: Mapped[datetime] = _created_at()
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index("channels_active_idx", Channel.is_active)
Index("channels_username_idx", Channel.username)
