from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from tgdigest.db.models import Item, RawMessage
from tgdigest.db.session import get_session


def insert_raw_message(
    *,
    channel_id: int,
    tg_message_id: int,
    tg_date: datetime,
    text: str | None,
    entities: list[dict[str, Any]] | None,
    media: dict[str, Any] | None,
    canonical_hash: str,
    is_forward: bool,
    views: int | None,
    forwards: int | None,
) -> int | None:
    """Persist a fetched message; returns the new row id, or None if it already existed."""
    stmt = (
        pg_insert(RawMessage)
        .values(
            channel_id=channel_id,
            tg_message_id=tg_message_id,
            tg_date=tg_date,
            text=text,
            entities=entities,
            media=media,
            canonical_hash=canonical_hash,
            is_forward=is_forward,
            views=views,
            forwards=forwards,
        )
        .on_conflict_do_nothing(index_elements=[RawMessage.channel_id, RawMessage.tg_message_id])
        .returning(RawMessage.id)
    )
    with get_session() as session:
        return session.execute(stmt).scalar_one_or_none()


def list_unprocessed(limit: int) -> list[RawMessage]:
    with get_session() as session:
        stmt = (
            select(RawMessage)
            .where(RawMessage.processed.is_(False))
            .order_by(RawMessage.id.asc())
            .limit(limit)
        )
        return list(session.execute(stmt).scalars())


def set_media_data(raw_id: int, data: bytes) -> None:
    with get_session() as session:
        session.execute(update(RawMessage).where(RawMessage.id == raw_id).values(media_data=data))


def set_links(raw_id: int, links: list[dict[str, Any]]) -> None:
    with get_session() as session:
        session.execute(update(RawMessage).where(RawMessage.id == raw_id).values(links=links))


def recent_channel_context(channel_id: int, before: datetime, limit: int = 5) -> list[str]:
    """Summaries of the channel's latest processed items, oldest first."""
    with get_session() as session:
        rows = session.execute(
            select(Item.summary)
            .where(
                Item.channel_id == channel_id,
                Item.tg_date < before,
                Item.summary.is_not(None),
            )
            .order_by(Item.tg_date.desc())
            .limit(limit)
        ).scalars()
        return [value for value in reversed(list(rows)) if value]


def get_media_data(raw_id: int) -> bytes | None:
    with get_session() as session:
        return session.execute(
            select(RawMessage.media_data).where(RawMessage.id == raw_id)
        ).scalar_one_or_none()
