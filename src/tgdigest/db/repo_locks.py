from __future__ import annotations

import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy import delete, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert

from tgdigest.db.models import SchedulerLock
from tgdigest.db.session import get_session

DEFAULT_LOCK_TTL = timedelta(minutes=5)


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def try_acquire_lock(name: str, holder_id: str, ttl: timedelta = DEFAULT_LOCK_TTL) -> bool:
    """Take the named lock when it is free, expired or already ours."""
    now = datetime.now(timezone.utc)
    stmt = pg_insert(SchedulerLock).values(
        lock_name=name, holder_id=holder_id, acquired_at=now, expires_at=now + ttl
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[SchedulerLock.lock_name],
        set_={
            "holder_id": stmt.excluded.holder_id,
            "acquired_at": stmt.excluded.acquired_at,
            "expires_at": stmt.excluded.expires_at,
        },
        where=or_(SchedulerLock.expires_at < now, SchedulerLock.holder_id == holder_id),
    ).returning(SchedulerLock.lock_name)
    with get_session() as session:
        return session.execute(stmt).scalar_one_or_none() is not None


def release_lock(name: str, holder_id: str) -> bool:
    with get_session() as session:
        result = session.execute(
            delete(SchedulerLock).where(
                SchedulerLock.lock_name == name, SchedulerLock.holder_id == holder_id
            )
        )
        return bool(result.rowcount)


@contextmanager
def scheduler_lock(
    name: str, holder_id: str, ttl: timedelta = DEFAULT_LOCK_TTL
) -> Iterator[bool]:
    """Yield whether this process holds ``name``; releases it on exit."""
    acquired = try_acquire_lock(name, holder_id, ttl)
    if not acquired:
        logger.info("lock busy name={} holder={}", name, holder_id)
    try:
        yield acquired
    finally:
        if acquired:
            release_lock(name, holder_id)
