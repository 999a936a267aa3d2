from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from tgdigest.db.models import (
    ITEM_ERROR,
    ITEM_PENDING,
    ITEM_READY_DIGESTED,
    ITEM_READY_PENDING,
    ITEM_REJECTED,
    Channel,
    DropReason,
    Item,
    RawMessage,
)
from tgdigest.db.session import get_session


@dataclass(slots=True)
class ItemResult:
    raw_id: int
    channel_id: int
    tg_date: datetime
    canonical_hash: str
    status: str
    summary: str | None = None
    topic: str | None = None
    language: str | None = None
    relevance_score: float | None = None
    importance_score: float | None = None
    drop_reason: str | None = None
    drop_detail: str | None = None
    error: dict[str, Any] | None = None


@dataclass(slots=True)
class DigestCandidate:
    item_id: int
    raw_id: int
    channel_id: int
    channel_title: str
    channel_username: str | None
    channel_weight: float
    tg_message_id: int
    tg_date: datetime
    canonical_hash: str
    summary: str
    topic: str | None
    importance_score: float
    relevance_score: float
    has_media: bool
    links: list[dict[str, Any]] | None = None


def save_item_result(result: ItemResult) -> int | None:
    """Write the outcome of one raw message in a single transaction.

    An existing Item is only overwritten while it is still ``pending``; the raw
    message is marked processed either way.
    """
    values: dict[str, Any] = {
        "raw_id": result.raw_id,
        "channel_id": result.channel_id,
        "tg_date": result.tg_date,
        "canonical_hash": result.canonical_hash,
        "status": result.status,
        "summary": result.summary,
        "topic": result.topic,
        "language": result.language,
        "relevance_score": result.relevance_score,
        "importance_score": result.importance_score,
        "drop_reason": result.drop_reason,
        "error": result.error,
    }
    update_values = {key: value for key, value in values.items() if key != "raw_id"}
    update_values["updated_at"] = func.now()

    stmt = (
        pg_insert(Item)
        .values(**values)
        .on_conflict_do_update(
            index_elements=[Item.raw_id],
            set_=update_values,
            where=Item.status == ITEM_PENDING,
        )
        .returning(Item.id)
    )

    with get_session() as session:
        item_id = session.execute(stmt).scalar_one_or_none()
        if item_id is not None and result.drop_reason:
            session.execute(
                pg_insert(DropReason)
                .values(
                    raw_message_id=result.raw_id,
                    channel_id=result.channel_id,
                    reason=result.drop_reason,
                    detail=result.drop_detail,
                )
                .on_conflict_do_update(
                    index_elements=[DropReason.raw_message_id],
                    set_={"reason": result.drop_reason, "detail": result.drop_detail},
                )
            )
        session.execute(
            update(RawMessage).where(RawMessage.id == result.raw_id).values(processed=True)
        )
        return item_id


@dataclass(slots=True)
class ExpandedItem:
    item_id: int
    channel_title: str
    channel_username: str | None
    tg_message_id: int
    tg_date: datetime
    summary: str | None
    topic: str | None
    text: str | None
    links: list[dict[str, Any]] | None


def get_expanded_item(item_id: int) -> ExpandedItem | None:
    """Item with its source text, for the expanded view page."""
    with get_session() as session:
        row = session.execute(
            select(Item, Channel, RawMessage)
            .join(Channel, Channel.id == Item.channel_id)
            .join(RawMessage, RawMessage.id == Item.raw_id)
            .where(Item.id == item_id)
        ).first()
    if row is None:
        return None
    item, channel, raw = row
    return ExpandedItem(
        item_id=item.id,
        channel_title=channel.title,
        channel_username=channel.username,
        tg_message_id=raw.tg_message_id,
        tg_date=item.tg_date,
        summary=item.summary,
        topic=item.topic,
        text=raw.text,
        links=raw.links,
    )


def find_ready_hashes(hashes: Iterable[str], since: datetime) -> set[str]:
    values = sorted({value for value in hashes if value})
    if not values:
        return set()
    with get_session() as session:
        rows = session.execute(
            select(Item.canonical_hash).where(
                Item.canonical_hash.in_(values),
                Item.status.in_([ITEM_READY_PENDING, ITEM_READY_DIGESTED]),
                Item.tg_date >= since,
            )
        ).scalars()
        return set(rows)


def list_digest_candidates(start: datetime, end: datetime) -> list[DigestCandidate]:
    with get_session() as session:
        rows = session.execute(
            select(Item, Channel, RawMessage)
            .join(Channel, Channel.id == Item.channel_id)
            .join(RawMessage, RawMessage.id == Item.raw_id)
            .where(
                Item.status == ITEM_READY_PENDING,
                Item.tg_date >= start,
                Item.tg_date <= end,
            )
            .order_by(Item.tg_date.asc(), Item.id.asc())
        ).all()

    candidates: list[DigestCandidate] = []
    for item, channel, raw in rows:
        candidates.append(
            DigestCandidate(
                item_id=item.id,
                raw_id=item.raw_id,
                channel_id=channel.id,
                channel_title=channel.title,
                channel_username=channel.username,
                channel_weight=channel.importance_weight,
                tg_message_id=raw.tg_message_id,
                tg_date=item.tg_date,
                canonical_hash=item.canonical_hash,
                summary=item.summary or "",
                topic=item.topic,
                importance_score=item.importance_score or 0.0,
                relevance_score=item.relevance_score or 0.0,
                has_media=bool(raw.media),
                links=raw.links,
            )
        )
    return candidates


def reject_items(item_ids: Iterable[int], reason: str, detail: str | None = "digest") -> int:
    """Reject ready Items and record a drop reason for each of them."""
    ids = sorted({int(value) for value in item_ids})
    if not ids:
        return 0
    with get_session() as session:
        rows = session.execute(
            update(Item)
            .where(Item.id.in_(ids), Item.status == ITEM_READY_PENDING)
            .values(status=ITEM_REJECTED, drop_reason=reason, updated_at=func.now())
            .returning(Item.raw_id, Item.channel_id)
        ).all()
        if rows:
            stmt = pg_insert(DropReason).values(
                [
                    {
                        "raw_message_id": raw_id,
                        "channel_id": channel_id,
                        "reason": reason,
                        "detail": detail,
                    }
                    for raw_id, channel_id in rows
                ]
            )
            session.execute(
                stmt.on_conflict_do_update(
                    index_elements=[DropReason.raw_message_id],
                    set_={"reason": stmt.excluded.reason, "detail": stmt.excluded.detail},
                )
            )
        return len(rows)


def retry_failed_items() -> int:
    """Reset every errored Item to pending and requeue its raw message."""
    with get_session() as session:
        raw_ids = list(
            session.execute(
                update(Item)
                .where(Item.status == ITEM_ERROR)
                .values(status=ITEM_PENDING, error=None, updated_at=func.now())
                .returning(Item.raw_id)
            ).scalars()
        )
        if raw_ids:
            session.execute(
                update(RawMessage).where(RawMessage.id.in_(raw_ids)).values(processed=False)
            )
        return len(raw_ids)


def retry_item(item_id: int) -> bool:
    """Requeue one Item from a terminal state."""
    with get_session() as session:
        raw_id = session.execute(
            update(Item)
            .where(
                Item.id == item_id,
                Item.status.in_([ITEM_ERROR, ITEM_REJECTED, ITEM_READY_DIGESTED]),
            )
            .values(
                status=ITEM_PENDING,
                error=None,
                drop_reason=None,
                digested_at=None,
                updated_at=func.now(),
            )
            .returning(Item.raw_id)
        ).scalar_one_or_none()
        if raw_id is None:
            return False
        session.execute(update(RawMessage).where(RawMessage.id == raw_id).values(processed=False))
        return True


def count_items_by_status(since: datetime | None = None) -> dict[str, int]:
    with get_session() as session:
        stmt = select(Item.status, func.count(Item.id)).group_by(Item.status)
        if since is not None:
            stmt = stmt.where(Item.created_at >= since)
        return {status: int(count) for status, count in session.execute(stmt).all()}


def list_error_items(limit: int = 10) -> list[Item]:
    with get_session() as session:
        return list(
            session.execute(
                select(Item)
                .where(Item.status == ITEM_ERROR)
                .order_by(Item.updated_at.desc())
                .limit(limit)
            ).scalars()
        )


def drop_reason_counts(since: datetime) -> list[tuple[str, int]]:
    with get_session() as session:
        rows = session.execute(
            select(DropReason.reason, func.count(DropReason.id))
            .where(DropReason.created_at >= since)
            .group_by(DropReason.reason)
            .order_by(func.count(DropReason.id).desc())
        ).all()
        return [(reason, int(count)) for reason, count in rows]


def score_summary(since: datetime) -> dict[str, float | int]:
    with get_session() as session:
        row = session.execute(
            select(
                func.count(Item.id),
                func.avg(Item.relevance_score),
                func.avg(Item.importance_score),
                func.count(Item.id).filter(Item.status == ITEM_READY_PENDING),
                func.count(Item.id).filter(
                    and_(Item.status == ITEM_REJECTED, Item.drop_reason == "low_relevance")
                ),
            ).where(Item.created_at >= since)
        ).one()
    total, avg_relevance, avg_importance, ready, low_relevance = row
    return {
        "total": int(total or 0),
        "avg_relevance": float(avg_relevance or 0.0),
        "avg_importance": float(avg_importance or 0.0),
        "ready": int(ready or 0),
        "low_relevance": int(low_relevance or 0),
    }
