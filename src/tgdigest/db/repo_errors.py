from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy import delete, select

from tgdigest.db.models import ErrorRecord
from tgdigest.db.session import get_session


def record_error(
    scope: str,
    message: str,
    *,
    ref_id: int | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    with get_session() as session:
        session.add(ErrorRecord(scope=scope, ref_id=ref_id, message=message, details=details))
    logger.error("error recorded scope={} ref_id={} message={}", scope, ref_id, message)


def list_errors(limit: int = 10, scope: str | None = None) -> list[ErrorRecord]:
    with get_session() as session:
        stmt = select(ErrorRecord).order_by(ErrorRecord.id.desc()).limit(limit)
        if scope:
            stmt = stmt.where(ErrorRecord.scope == scope)
        return list(session.execute(stmt).scalars())


def clear_errors(scope: str | None = None) -> int:
    with get_session() as session:
        stmt = delete(ErrorRecord)
        if scope:
            stmt = stmt.where(ErrorRecord.scope == scope)
        result = session.execute(stmt)
        return int(result.rowcount or 0)


def clear_digest_errors() -> int:
    return clear_errors("digest")
