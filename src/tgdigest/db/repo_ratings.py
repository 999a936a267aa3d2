from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from tgdigest.db.models import Digest, Item, ItemRating, Rating
from tgdigest.db.session import get_session

ITEM_RATING_VALUES = ("good", "bad", "irrelevant")


@dataclass(slots=True)
class DigestRatingTotals:
    digest_id: int
    rating_up: int
    rating_down: int


@dataclass(slots=True)
class ChannelRatingRow:
    channel_id: int
    rating: str
    created_at: datetime


def save_digest_rating(digest_id: int, user_id: int, value: int) -> DigestRatingTotals:
    """Upsert one user's vote and refresh the digest aggregates."""
    if value not in (-1, 1):
        raise ValueError("rating value must be -1 or 1")

    stmt = (
        pg_insert(Rating)
        .values(digest_id=digest_id, user_id=user_id, value=value)
        .on_conflict_do_update(
            index_elements=[Rating.digest_id, Rating.user_id],
            set_={"value": value, "created_at": func.now()},
        )
    )
    with get_session() as session:
        session.execute(stmt)
        up, down = session.execute(
            select(
                func.count(Rating.id).filter(Rating.value > 0),
                func.count(Rating.id).filter(Rating.value < 0),
            ).where(Rating.digest_id == digest_id)
        ).one()
        session.execute(
            update(Digest)
            .where(Digest.id == digest_id)
            .values(rating_up=int(up or 0), rating_down=int(down or 0))
        )
    return DigestRatingTotals(digest_id=digest_id, rating_up=int(up or 0), rating_down=int(down or 0))


def save_item_rating(
    item_id: int,
    user_id: int,
    rating: str,
    comment: str | None = None,
    source: str = "bot",
) -> None:
    if rating not in ITEM_RATING_VALUES:
        raise ValueError(f"rating must be one of {', '.join(ITEM_RATING_VALUES)}")

    stmt = (
        pg_insert(ItemRating)
        .values(item_id=item_id, user_id=user_id, rating=rating, comment=comment, source=source)
        .on_conflict_do_update(
            index_elements=[ItemRating.item_id, ItemRating.user_id],
            set_={"rating": rating, "comment": comment, "source": source, "created_at": func.now()},
        )
    )
    with get_session() as session:
        session.execute(stmt)


def list_channel_ratings(since: datetime) -> list[ChannelRatingRow]:
    with get_session() as session:
        rows = session.execute(
            select(Item.channel_id, ItemRating.rating, ItemRating.created_at)
            .join(Item, Item.id == ItemRating.item_id)
            .where(ItemRating.created_at >= since)
        ).all()
        return [
            ChannelRatingRow(channel_id=channel_id, rating=rating, created_at=created_at)
            for channel_id, rating, created_at in rows
        ]
