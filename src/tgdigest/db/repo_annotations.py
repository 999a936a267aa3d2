from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from tgdigest.db.models import (
    ITEM_READY_DIGESTED,
    ITEM_READY_PENDING,
    ITEM_REJECTED,
    Annotation,
    Channel,
    Item,
)
from tgdigest.db.session import get_session

ANNOTATION_PENDING = "pending"
ANNOTATION_ASSIGNED = "assigned"
ANNOTATION_LABELED = "labeled"
ANNOTATION_SKIPPED = "skipped"
ANNOTATION_LABELS = ("good", "bad", "irrelevant")


@dataclass(slots=True)
class AssignedItem:
    annotation_id: int
    item_id: int
    channel_title: str
    channel_username: str | None
    summary: str | None
    topic: str | None
    status: str
    relevance_score: float | None
    importance_score: float | None


def enqueue_annotation_items(since: datetime, limit: int) -> int:
    """Queue recent scored Items for labeling; already queued Items are skipped."""
    with get_session() as session:
        item_ids = list(
            session.execute(
                select(Item.id)
                .outerjoin(Annotation, Annotation.item_id == Item.id)
                .where(
                    Item.created_at >= since,
                    Item.status.in_([ITEM_READY_PENDING, ITEM_READY_DIGESTED, ITEM_REJECTED]),
                    Item.summary.is_not(None),
                    Annotation.id.is_(None),
                )
                .order_by(Item.created_at.desc())
                .limit(limit)
            ).scalars()
        )
        if not item_ids:
            return 0
        result = session.execute(
            pg_insert(Annotation)
            .values([{"item_id": item_id} for item_id in item_ids])
            .on_conflict_do_nothing(index_elements=[Annotation.item_id])
            .returning(Annotation.id)
        )
        return len(list(result.scalars()))


def _load_assigned(session, user_id: int) -> AssignedItem | None:
    row = session.execute(
        select(Annotation, Item, Channel)
        .join(Item, Item.id == Annotation.item_id)
        .join(Channel, Channel.id == Item.channel_id)
        .where(Annotation.status == ANNOTATION_ASSIGNED, Annotation.assigned_to == user_id)
        .order_by(Annotation.assigned_at.asc())
        .limit(1)
    ).first()
    if row is None:
        return None
    annotation, item, channel = row
    return AssignedItem(
        annotation_id=annotation.id,
        item_id=item.id,
        channel_title=channel.title,
        channel_username=channel.username,
        summary=item.summary,
        topic=item.topic,
        status=item.status,
        relevance_score=item.relevance_score,
        importance_score=item.importance_score,
    )


def assign_next(user_id: int) -> AssignedItem | None:
    """Return the user's current assignment, or claim the oldest pending one."""
    with get_session() as session:
        current = _load_assigned(session, user_id)
        if current is not None:
            return current

        annotation_id = session.execute(
            select(Annotation.id)
            .where(Annotation.status == ANNOTATION_PENDING)
            .order_by(Annotation.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        ).scalar_one_or_none()
        if annotation_id is None:
            return None

        session.execute(
            update(Annotation)
            .where(Annotation.id == annotation_id)
            .values(status=ANNOTATION_ASSIGNED, assigned_to=user_id, assigned_at=func.now())
        )
        return _load_assigned(session, user_id)


def label_assigned(user_id: int, label: str, comment: str | None = None) -> int | None:
    """Label the user's current assignment; returns the item id or None."""
    if label not in ANNOTATION_LABELS:
        raise ValueError(f"label must be one of {', '.join(ANNOTATION_LABELS)}")
    with get_session() as session:
        return session.execute(
            update(Annotation)
            .where(Annotation.status == ANNOTATION_ASSIGNED, Annotation.assigned_to == user_id)
            .values(status=ANNOTATION_LABELED, label=label, comment=comment, labeled_at=func.now())
            .returning(Annotation.item_id)
        ).scalar_one_or_none()


def skip_assigned(user_id: int) -> int | None:
    with get_session() as session:
        return session.execute(
            update(Annotation)
            .where(Annotation.status == ANNOTATION_ASSIGNED, Annotation.assigned_to == user_id)
            .values(status=ANNOTATION_SKIPPED)
            .returning(Annotation.item_id)
        ).scalar_one_or_none()


def annotation_stats() -> dict[str, int]:
    with get_session() as session:
        rows = session.execute(
            select(Annotation.status, func.count(Annotation.id)).group_by(Annotation.status)
        ).all()
        return {status: int(count) for status, count in rows}
