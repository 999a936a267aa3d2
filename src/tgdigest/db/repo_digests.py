from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from tgdigest.db.models import (
    DIGEST_ERROR,
    DIGEST_PENDING,
    DIGEST_POSTED,
    ITEM_READY_DIGESTED,
    ITEM_READY_PENDING,
    Cluster,
    Digest,
    ErrorRecord,
    Item,
)
from tgdigest.db.session import get_session

STALE_PENDING_AFTER = timedelta(minutes=30)


@dataclass(slots=True)
class ClusterRecord:
    item_ids: list[int]
    representative_item_id: int | None
    topic: str | None = None
    summary: str | None = None


def create_pending_digest(
    window_start: datetime, window_end: datetime, target_chat_id: int | None
) -> Digest | None:
    """Claim a window; None when a digest for the same window already exists."""
    stmt = (
        pg_insert(Digest)
        .values(
            window_start=window_start,
            window_end=window_end,
            status=DIGEST_PENDING,
            target_chat_id=target_chat_id,
        )
        .on_conflict_do_nothing(index_elements=[Digest.window_start, Digest.window_end])
        .returning(Digest)
    )
    with get_session() as session:
        return session.execute(stmt).scalar_one_or_none()


def reopen_failed_digest(window_start: datetime, window_end: datetime) -> Digest | None:
    """Move an errored digest of the window back to pending for a manual rerun.

    A pending row older than ``STALE_PENDING_AFTER`` belongs to a build that died
    before recording its outcome and is reclaimed too.
    """
    stale_before = datetime.now(timezone.utc) - STALE_PENDING_AFTER
    stmt = (
        update(Digest)
        .where(
            Digest.window_start == window_start,
            Digest.window_end == window_end,
            or_(
                Digest.status == DIGEST_ERROR,
                and_(Digest.status == DIGEST_PENDING, Digest.created_at < stale_before),
            ),
        )
        .values(status=DIGEST_PENDING, created_at=func.now())
        .returning(Digest)
    )
    with get_session() as session:
        return session.execute(stmt).scalar_one_or_none()


def mark_digest_posted(
    digest_id: int,
    *,
    item_ids: list[int],
    message_ids: list[int],
    clusters: list[ClusterRecord],
) -> None:
    """Record delivery, flip Items to ready_digested and store clusters atomically."""
    now = datetime.now(timezone.utc)
    with get_session() as session:
        digest = session.get(Digest, digest_id, with_for_update=True)
        if digest is None:
            raise RuntimeError(f"digest {digest_id} not found")
        digest.status = DIGEST_POSTED
        digest.item_ids = [int(value) for value in item_ids]
        digest.message_ids = [int(value) for value in message_ids]
        digest.first_message_id = int(message_ids[0]) if message_ids else None
        digest.posted_at = now

        if item_ids:
            session.execute(
                update(Item)
                .where(
                    Item.id.in_(item_ids),
                    Item.status == ITEM_READY_PENDING,
                )
                .values(status=ITEM_READY_DIGESTED, digested_at=now, updated_at=func.now())
            )

        for cluster in clusters:
            session.add(
                Cluster(
                    digest_id=digest_id,
                    window_start=digest.window_start,
                    window_end=digest.window_end,
                    topic=cluster.topic,
                    summary=cluster.summary,
                    item_ids=[int(value) for value in cluster.item_ids],
                    representative_item_id=cluster.representative_item_id,
                )
            )


def mark_digest_error(digest_id: int, message: str, details: dict[str, Any] | None = None) -> None:
    with get_session() as session:
        session.execute(update(Digest).where(Digest.id == digest_id).values(status=DIGEST_ERROR))
        session.add(
            ErrorRecord(scope="digest", ref_id=digest_id, message=message, details=details)
        )


def list_recent_digests(limit: int = 10) -> list[Digest]:
    with get_session() as session:
        return list(
            session.execute(select(Digest).order_by(Digest.id.desc()).limit(limit)).scalars()
        )


def get_last_posted_digest() -> Digest | None:
    with get_session() as session:
        return session.execute(
            select(Digest)
            .where(Digest.status == DIGEST_POSTED)
            .order_by(Digest.posted_at.desc().nulls_last(), Digest.id.desc())
            .limit(1)
        ).scalar_one_or_none()
