from __future__ import annotations

from typing import Any, Iterable

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

from tgdigest.db.models import Setting, SettingHistory
from tgdigest.db.session import get_session


def get_setting(key: str, default: Any = None) -> Any:
    """Read a setting; store failures degrade to ``default`` with a warning."""
    try:
        with get_session() as session:
            row = session.get(Setting, key)
    except SQLAlchemyError as exc:
        logger.warning("settings read failed key={} error={}", key, exc)
        return default
    if row is None or row.value is None:
        return default
    return row.value


def get_settings_map(keys: list[str]) -> dict[str, Any]:
    if not keys:
        return {}
    try:
        with get_session() as session:
            rows = session.execute(select(Setting).where(Setting.key.in_(keys))).scalars()
            return {row.key: row.value for row in rows if row.value is not None}
    except SQLAlchemyError as exc:
        logger.warning("settings read failed keys={} error={}", ",".join(keys), exc)
        return {}


def save_setting_with_history(key: str, value: Any, changed_by: int | None = None) -> None:
    """Upsert a setting and append a history row in one transaction."""
    with get_session() as session:
        session.execute(
            pg_insert(Setting)
            .values(key=key, value=None, updated_by=changed_by)
            .on_conflict_do_nothing(index_elements=[Setting.key])
        )
        # Row lock serializes concurrent writers of the same key.
        row = session.execute(
            select(Setting).where(Setting.key == key).with_for_update()
        ).scalar_one()
        old_value = row.value
        row.value = value
        row.updated_by = changed_by
        row.updated_at = func.now()
        session.add(
            SettingHistory(
                key=key,
                old_value=old_value,
                new_value=value,
                is_deleted=False,
                changed_by=changed_by,
            )
        )
    logger.info("settings saved key={} changed_by={}", key, changed_by)


def delete_setting_with_history(key: str, changed_by: int | None = None) -> bool:
    """Remove a setting and append a tombstone history row; False when absent."""
    with get_session() as session:
        row = session.execute(
            select(Setting).where(Setting.key == key).with_for_update()
        ).scalar_one_or_none()
        if row is None:
            return False
        old_value = row.value
        session.execute(delete(Setting).where(Setting.key == key))
        session.add(
            SettingHistory(
                key=key,
                old_value=old_value,
                new_value=None,
                is_deleted=True,
                changed_by=changed_by,
            )
        )
    logger.info("settings deleted key={} changed_by={}", key, changed_by)
    return True


def list_setting_history(limit: int = 10, key: str | None = None) -> list[SettingHistory]:
    with get_session() as session:
        stmt = select(SettingHistory).order_by(SettingHistory.id.desc()).limit(limit)
        if key:
            stmt = stmt.where(SettingHistory.key == key)
        return list(session.execute(stmt).scalars())


def replay_setting_history(rows: Iterable[SettingHistory]) -> dict[str, Any]:
    """Rebuild settings from history rows given in id order; tombstones drop the key."""
    state: dict[str, Any] = {}
    for row in rows:
        if row.is_deleted:
            state.pop(row.key, None)
        else:
            state[row.key] = row.new_value
    return state


def audit_setting(key: str) -> tuple[Any, bool]:
    """Current value of ``key`` and whether replaying its history reproduces it."""
    with get_session() as session:
        rows = list(
            session.execute(
                select(SettingHistory)
                .where(SettingHistory.key == key)
                .order_by(SettingHistory.id.asc())
            ).scalars()
        )
        current = session.get(Setting, key)
    replayed = replay_setting_history(rows)
    if current is None:
        return None, key not in replayed
    return current.value, key in replayed and replayed[key] == current.value
