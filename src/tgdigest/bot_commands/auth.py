from __future__ import annotations

from typing import Any

from aiogram.types import CallbackQuery, Message
from loguru import logger

from tgdigest.config import get_settings
from tgdigest.db.repo_settings import get_setting

ADMIN_IDS_SETTING_KEY = "admin_ids"


def _coerce_ids(value: Any) -> set[int]:
    if value is None:
        return set()
    if isinstance(value, (int, str)):
        value = [value]
    if not isinstance(value, list):
        return set()
    result: set[int] = set()
    for item in value:
        try:
            result.add(int(str(item).strip()))
        except ValueError:
            logger.warning("bot auth ignoring invalid admin id value={}", item)
    return result


def admin_ids() -> set[int]:
    """Union of ``ADMIN_IDS`` and the ``admin_ids`` setting."""
    configured = set(get_settings().admin_ids)
    return configured | _coerce_ids(get_setting(ADMIN_IDS_SETTING_KEY, []))


def is_user_allowed(user_id: int) -> bool:
    return user_id in admin_ids()


async def ensure_allowed(event: Message | CallbackQuery) -> bool:
    user = event.from_user
    if user is None:
        return False
    if not is_user_allowed(user.id):
        logger.warning("bot access denied user_id={}", user.id)
        if isinstance(event, CallbackQuery):
            await event.answer("Access denied", show_alert=True)
        else:
            await event.answer("Access denied")
        return False
    return True
