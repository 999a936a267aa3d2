from __future__ import annotations

import math
from typing import Iterable, Protocol

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from tgdigest.db.models import (
    DISCOVERY_APPROVED,
    DISCOVERY_MATCHED,
    DISCOVERY_PENDING,
    DISCOVERY_REJECTED,
    Channel,
    Discovery,
    RawMessage,
)
from tgdigest.db.session import get_session


class CandidateLike(Protocol):
    source_type: str
    username: str | None
    tg_peer_id: int | None
    access_hash: int | None
    invite_hash: str | None
    title: str | None
    views: int
    forwards: int


def discovery_key(candidate: CandidateLike) -> str | None:
    if candidate.username:
        return f"u:{candidate.username.lower()}"
    if candidate.tg_peer_id:
        return f"p:{candidate.tg_peer_id}"
    if candidate.invite_hash:
        return f"i:{candidate.invite_hash}"
    return None


def engagement_score(views: int, forwards: int) -> float:
    return round(math.log1p(max(views, 0)) / 10.0 + math.log1p(max(forwards, 0)) / 5.0, 4)


def record_discoveries(
    raw_id: int | None,
    from_channel_id: int | None,
    candidates: Iterable[CandidateLike],
) -> int:
    """Store candidates extracted from one raw message exactly once.

    The ``discoveries_extracted`` flag is flipped in the same transaction, so a
    second call for the same message is a no-op. Service messages are not stored
    as raw messages and pass ``raw_id=None``.
    """
    with get_session() as session:
        if raw_id is not None:
            claimed = session.execute(
                update(RawMessage)
                .where(RawMessage.id == raw_id, RawMessage.discoveries_extracted.is_(False))
                .values(discoveries_extracted=True)
                .returning(RawMessage.id)
            ).scalar_one_or_none()
            if claimed is None:
                return 0

        own_peer_id = None
        if from_channel_id is not None:
            own_peer_id = session.execute(
                select(Channel.tg_peer_id).where(Channel.id == from_channel_id)
            ).scalar_one_or_none()

        stored = 0
        seen: set[str] = set()
        for candidate in candidates:
            key = discovery_key(candidate)
            if key is None or key in seen:
                continue
            if own_peer_id is not None and candidate.tg_peer_id == own_peer_id:
                continue
            seen.add(key)
            stmt = pg_insert(Discovery).values(
                discovery_key=key,
                username=candidate.username,
                tg_peer_id=candidate.tg_peer_id,
                access_hash=candidate.access_hash,
                invite_hash=candidate.invite_hash,
                title=candidate.title,
                source_type=candidate.source_type,
                from_channel_id=from_channel_id,
                max_views=candidate.views,
                max_forwards=candidate.forwards,
                engagement_score=engagement_score(candidate.views, candidate.forwards),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[Discovery.discovery_key],
                set_={
                    "discovery_count": Discovery.discovery_count + 1,
                    "max_views": func.greatest(Discovery.max_views, stmt.excluded.max_views),
                    "max_forwards": func.greatest(
                        Discovery.max_forwards, stmt.excluded.max_forwards
                    ),
                    "engagement_score": Discovery.engagement_score
                    + stmt.excluded.engagement_score,
                    "title": func.coalesce(stmt.excluded.title, Discovery.title),
                    "tg_peer_id": func.coalesce(Discovery.tg_peer_id, stmt.excluded.tg_peer_id),
                    "access_hash": func.coalesce(
                        stmt.excluded.access_hash, Discovery.access_hash
                    ),
                    "last_seen_at": func.now(),
                },
            )
            session.execute(stmt)
            stored += 1

        _match_known_channels(session)
        return stored


def _match_known_channels(session) -> None:
    session.execute(
        update(Discovery)
        .where(
            Discovery.status == DISCOVERY_PENDING,
            or_(
                and_(
                    Discovery.username.is_not(None),
                    func.lower(Discovery.username) == func.lower(Channel.username),
                ),
                and_(
                    Discovery.tg_peer_id.is_not(None),
                    Discovery.tg_peer_id == Channel.tg_peer_id,
                ),
            ),
        )
        .values(status=DISCOVERY_MATCHED, matched_channel_id=Channel.id)
        .execution_options(synchronize_session=False)
    )


def list_pending_discoveries(limit: int = 10) -> list[Discovery]:
    with get_session() as session:
        return list(
            session.execute(
                select(Discovery)
                .where(Discovery.status == DISCOVERY_PENDING)
                .order_by(
                    Discovery.engagement_score.desc(),
                    Discovery.discovery_count.desc(),
                    Discovery.id.asc(),
                )
                .limit(limit)
            ).scalars()
        )


def list_unresolved_discoveries(limit: int = 20) -> list[Discovery]:
    """Pending discoveries known only by peer id or invite hash."""
    with get_session() as session:
        return list(
            session.execute(
                select(Discovery)
                .where(
                    Discovery.status == DISCOVERY_PENDING,
                    Discovery.username.is_(None),
                )
                .order_by(Discovery.last_seen_at.desc())
                .limit(limit)
            ).scalars()
        )


def update_discovery_resolution(
    discovery_id: int,
    *,
    username: str | None,
    title: str | None,
    tg_peer_id: int | None,
    access_hash: int | None,
) -> None:
    values: dict[str, object] = {}
    if username:
        values["username"] = username
    if title:
        values["title"] = title
    if tg_peer_id:
        values["tg_peer_id"] = tg_peer_id
    if access_hash:
        values["access_hash"] = access_hash
    if not values:
        return
    with get_session() as session:
        session.execute(update(Discovery).where(Discovery.id == discovery_id).values(**values))
        _match_known_channels(session)


def approve_discovery(discovery_id: int) -> Discovery | None:
    """Pending → approved; returns None when the row is missing or already decided."""
    with get_session() as session:
        row = session.execute(
            update(Discovery)
            .where(Discovery.id == discovery_id, Discovery.status == DISCOVERY_PENDING)
            .values(status=DISCOVERY_APPROVED)
            .returning(Discovery)
        ).scalar_one_or_none()
        return row


def reject_discovery(discovery_id: int) -> bool:
    with get_session() as session:
        result = session.execute(
            update(Discovery)
            .where(Discovery.id == discovery_id, Discovery.status == DISCOVERY_PENDING)
            .values(status=DISCOVERY_REJECTED)
        )
        return bool(result.rowcount)


def mark_discovery_matched(discovery_id: int, channel_id: int) -> None:
    with get_session() as session:
        session.execute(
            update(Discovery)
            .where(Discovery.id == discovery_id)
            .values(status=DISCOVERY_MATCHED, matched_channel_id=channel_id)
        )


def count_discoveries_by_status() -> dict[str, int]:
    with get_session() as session:
        rows = session.execute(
            select(Discovery.status, func.count(Discovery.id)).group_by(Discovery.status)
        ).all()
        return {status: int(count) for status, count in rows}
