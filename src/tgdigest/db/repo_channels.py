from __future__ import annotations

from datetime import datetime, timezone
from typing import List

from loguru import logger
from sqlalchemy import func, select, update

from tgdigest.db.models import WEIGHT_MODE_AUTO, WEIGHT_MODE_MANUAL, Channel, ChannelWeightHistory
from tgdigest.db.session import get_session

MIN_IMPORTANCE_WEIGHT = 0.1
MAX_IMPORTANCE_WEIGHT = 2.0


def clamp_weight(value: float) -> float:
    return max(MIN_IMPORTANCE_WEIGHT, min(MAX_IMPORTANCE_WEIGHT, float(value)))


def add_channel(
    *,
    username: str | None = None,
    invite_link: str | None = None,
    tg_peer_id: int | None = None,
    access_hash: int | None = None,
    title: str = "",
) -> Channel:
    """Insert a channel or reactivate the existing row with the same identity."""
    if not (username or invite_link or tg_peer_id):
        raise ValueError("channel needs a username, invite link or peer id")

    with get_session() as session:
        channel = None
        if tg_peer_id is not None:
            channel = session.execute(
                select(Channel).where(Channel.tg_peer_id == tg_peer_id)
            ).scalar_one_or_none()
        if channel is None and username:
            channel = session.execute(
                select(Channel).where(func.lower(Channel.username) == username.lower())
            ).scalar_one_or_none()
        if channel is None and invite_link:
            channel = session.execute(
                select(Channel).where(Channel.invite_link == invite_link)
            ).scalar_one_or_none()

        if channel:
            channel.is_active = True
            if title:
                channel.title = title
            if tg_peer_id is not None:
                channel.tg_peer_id = tg_peer_id
                channel.access_hash = access_hash
            logger.info("Reactivated channel id={}", channel.id)
        else:
            channel = Channel(
                username=username,
                invite_link=invite_link,
                tg_peer_id=tg_peer_id,
                access_hash=access_hash,
                title=title or (username or invite_link or ""),
                is_active=True,
            )
            session.add(channel)
            session.flush()
            logger.info("Inserted channel id={} username={}", channel.id, username)

        session.flush()
        return channel


def list_channels(active_only: bool = False) -> List[Channel]:
    with get_session() as session:
        stmt = select(Channel)
        if active_only:
            stmt = stmt.where(Channel.is_active.is_(True))
        stmt = stmt.order_by(Channel.id.asc())
        return list(session.execute(stmt).scalars())


def get_channel(channel_id: int) -> Channel | None:
    with get_session() as session:
        return session.get(Channel, channel_id)


def get_channel_by_peer_id(tg_peer_id: int) -> Channel | None:
    with get_session() as session:
        return session.execute(
            select(Channel).where(Channel.tg_peer_id == tg_peer_id)
        ).scalar_one_or_none()


def get_channel_by_username(username: str) -> Channel | None:
    cleaned = username.lstrip("@").strip()
    with get_session() as session:
        return session.execute(
            select(Channel).where(func.lower(Channel.username) == cleaned.lower())
        ).scalar_one_or_none()


def find_channel(ref: str) -> Channel | None:
    """Look a channel up by @username, internal id or Telegram peer id."""
    cleaned = ref.strip()
    if not cleaned:
        return None
    if cleaned.lstrip("-").isdigit():
        value = int(cleaned)
        channel = get_channel_by_peer_id(value)
        if channel is None and value > 0:
            channel = get_channel(value)
        return channel
    return get_channel_by_username(cleaned)


def set_channel_active(channel_id: int, is_active: bool) -> Channel:
    with get_session() as session:
        existing = session.get(Channel, channel_id)
        if not existing:
            raise RuntimeError("channel not found")
        existing.is_active = is_active
        session.flush()
        return existing


def update_channel_peer(
    channel_id: int,
    *,
    tg_peer_id: int,
    access_hash: int | None,
    title: str | None = None,
    username: str | None = None,
    description: str | None = None,
    clear_invite_link: bool = False,
) -> None:
    values: dict[str, object] = {"tg_peer_id": tg_peer_id, "access_hash": access_hash}
    if title:
        values["title"] = title
    if username:
        values["username"] = username
    if description is not None:
        values["description"] = description
    if clear_invite_link:
        values["invite_link"] = None
    with get_session() as session:
        session.execute(update(Channel).where(Channel.id == channel_id).values(**values))


def advance_last_message_id(channel_id: int, message_id: int) -> None:
    """Move the high-water mark forward, never backwards."""
    with get_session() as session:
        session.execute(
            update(Channel)
            .where(Channel.id == channel_id)
            .values(
                last_tg_message_id=func.greatest(Channel.last_tg_message_id, int(message_id)),
                last_fetched_at=datetime.now(timezone.utc),
            )
        )


def touch_channel_fetched(channel_id: int) -> None:
    with get_session() as session:
        session.execute(
            update(Channel)
            .where(Channel.id == channel_id)
            .values(last_fetched_at=datetime.now(timezone.utc))
        )


def set_channel_weight(
    channel_id: int, weight: float | None, updated_by: int | None = None
) -> Channel:
    """Pin a manual weight, or switch the channel to auto mode when weight is None."""
    with get_session() as session:
        channel = session.get(Channel, channel_id)
        if channel is None:
            raise RuntimeError("channel not found")
        if weight is None:
            channel.weight_mode = WEIGHT_MODE_AUTO
        else:
            channel.weight_mode = WEIGHT_MODE_MANUAL
            channel.importance_weight = clamp_weight(weight)
        session.add(
            ChannelWeightHistory(
                channel_id=channel.id,
                importance_weight=channel.importance_weight,
                weight_mode=channel.weight_mode,
                reason="manual" if weight is not None else "auto mode",
                updated_by=updated_by,
            )
        )
        session.flush()
        return channel


def apply_auto_weight(channel_id: int, weight: float, reason: str = "auto") -> bool:
    """Store a computed weight unless the channel was pinned manually meanwhile."""
    with get_session() as session:
        stored = session.execute(
            update(Channel)
            .where(Channel.id == channel_id, Channel.weight_mode == WEIGHT_MODE_AUTO)
            .values(importance_weight=clamp_weight(weight))
            .returning(Channel.importance_weight)
        ).scalar_one_or_none()
        if stored is None:
            return False
        session.add(
            ChannelWeightHistory(
                channel_id=channel_id,
                importance_weight=stored,
                weight_mode=WEIGHT_MODE_AUTO,
                reason=reason,
            )
        )
        return True


def list_weight_history(channel_id: int, limit: int = 10) -> list[ChannelWeightHistory]:
    with get_session() as session:
        stmt = (
            select(ChannelWeightHistory)
            .where(ChannelWeightHistory.channel_id == channel_id)
            .order_by(ChannelWeightHistory.id.desc())
            .limit(limit)
        )
        return list(session.execute(stmt).scalars())


def set_channel_relevance(channel_id: int, threshold: float | None) -> Channel:
    """Set the channel base relevance threshold; None falls back to the global one."""
    if threshold is not None and not 0.0 <= threshold <= 1.0:
        raise ValueError("relevance threshold must be in range 0..1")
    with get_session() as session:
        channel = session.get(Channel, channel_id)
        if channel is None:
            raise RuntimeError("channel not found")
        channel.relevance_threshold = threshold
        session.flush()
        return channel


def set_auto_relevance(channel_id: int, enabled: bool) -> Channel:
    with get_session() as session:
        channel = session.get(Channel, channel_id)
        if channel is None:
            raise RuntimeError("channel not found")
        channel.auto_relevance_enabled = enabled
        if not enabled:
            channel.relevance_threshold_delta = 0.0
        session.flush()
        return channel


def set_relevance_delta(channel_id: int, delta: float) -> None:
    with get_session() as session:
        session.execute(
            update(Channel)
            .where(Channel.id == channel_id)
            .values(relevance_threshold_delta=float(delta))
        )
