from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select

from tgdigest.db.models import (
    ITEM_READY_DIGESTED,
    ITEM_READY_PENDING,
    Channel,
    Digest,
    Item,
    RawMessage,
)
from tgdigest.db.session import get_session


@dataclass(slots=True)
class RollingStats:
    channel_id: int
    total_messages: int
    total_items_created: int
    total_items_digested: int
    avg_importance: float
    avg_relevance: float
    stddev_importance: float
    stddev_relevance: float


def rolling_channel_stats(since: datetime) -> dict[int, RollingStats]:
    """Per-channel message and item aggregates since the given instant."""
    with get_session() as session:
        message_counts = dict(
            session.execute(
                select(RawMessage.channel_id, func.count(RawMessage.id))
                .where(RawMessage.tg_date >= since)
                .group_by(RawMessage.channel_id)
            ).all()
        )
        item_rows = session.execute(
            select(
                Item.channel_id,
                func.count(Item.id).filter(
                    Item.status.in_([ITEM_READY_PENDING, ITEM_READY_DIGESTED])
                ),
                func.count(Item.id).filter(Item.status == ITEM_READY_DIGESTED),
                func.avg(Item.importance_score).filter(Item.status == ITEM_READY_DIGESTED),
                func.avg(Item.relevance_score),
                func.stddev_pop(Item.importance_score),
                func.stddev_pop(Item.relevance_score),
            )
            .where(Item.tg_date >= since)
            .group_by(Item.channel_id)
        ).all()

    stats: dict[int, RollingStats] = {}
    for channel_id, created, digested, avg_imp, avg_rel, std_imp, std_rel in item_rows:
        stats[channel_id] = RollingStats(
            channel_id=channel_id,
            total_messages=int(message_counts.get(channel_id, 0)),
            total_items_created=int(created or 0),
            total_items_digested=int(digested or 0),
            avg_importance=float(avg_imp or 0.0),
            avg_relevance=float(avg_rel or 0.0),
            stddev_importance=float(std_imp or 0.0),
            stddev_relevance=float(std_rel or 0.0),
        )
    for channel_id, count in message_counts.items():
        if channel_id not in stats:
            stats[channel_id] = RollingStats(
                channel_id=channel_id,
                total_messages=int(count),
                total_items_created=0,
                total_items_digested=0,
                avg_importance=0.0,
                avg_relevance=0.0,
                stddev_importance=0.0,
                stddev_relevance=0.0,
            )
    return stats


def count_channels(active_only: bool) -> int:
    with get_session() as session:
        stmt = select(func.count(Channel.id))
        if active_only:
            stmt = stmt.where(Channel.is_active.is_(True))
        return int(session.execute(stmt).scalar_one())


def count_unprocessed_messages() -> int:
    with get_session() as session:
        value = session.execute(
            select(func.count(RawMessage.id)).where(RawMessage.processed.is_(False))
        ).scalar_one()
        return int(value)


def count_messages_since(since: datetime) -> int:
    with get_session() as session:
        value = session.execute(
            select(func.count(RawMessage.id)).where(RawMessage.created_at >= since)
        ).scalar_one()
        return int(value)


def count_digests_by_status() -> dict[str, int]:
    with get_session() as session:
        rows = session.execute(
            select(Digest.status, func.count(Digest.id)).group_by(Digest.status)
        ).all()
        return {status: int(count) for status, count in rows}
