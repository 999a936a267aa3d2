from __future__ import annotations

import asyncio

from aiogram import Bot, Dispatcher
from loguru import logger
from sqlalchemy import text

from tgdigest.bot_commands.discover import router as discover_router
from tgdigest.bot_commands.feedback import router as feedback_router
from tgdigest.bot_commands.handlers import get_bot_commands
from tgdigest.bot_commands.handlers import router as admin_router
from tgdigest.bot_commands.llm_commands import router as llm_router
from tgdigest.config import ConfigError, Settings, get_settings
from tgdigest.db.engine import get_engine
from tgdigest.digest.scheduler import DigestScheduler, build_digest_scheduler
from tgdigest.llm.gateway import LLMGateway, build_gateway


def _make_digest_runner(settings: Settings, gateway: LLMGateway) -> DigestScheduler | None:
    if settings.digest_target_chat_id is None:
        logger.warning("bot DIGEST_TARGET_CHAT_ID is not set, /digest is disabled")
        return None
    return build_digest_scheduler(settings, gateway)


def build_dispatcher(settings: Settings) -> Dispatcher:
    dp = Dispatcher()
    gateway = build_gateway(settings)
    dp["gateway"] = gateway
    dp["digest_runner"] = _make_digest_runner(settings, gateway)
    dp.include_router(admin_router)
    dp.include_router(llm_router)
    dp.include_router(feedback_router)
    dp.include_router(discover_router)
    return dp


async def run_bot() -> None:
    settings = get_settings()
    settings.require("bot")
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        raise ConfigError(
            "Database is unavailable. Start PostgreSQL and apply migrations (`alembic upgrade head`)."
        ) from exc

    bot = Bot(token=settings.bot_token)
    dp = build_dispatcher(settings)

    async def on_startup(bot: Bot) -> None:
        await bot.set_my_commands(get_bot_commands())
        logger.info("bot commands registered count={}", len(get_bot_commands()))

    async def on_shutdown(bot: Bot) -> None:
        logger.info("bot shutting down")

    dp.startup.register(on_startup)
    dp.shutdown.register(on_shutdown)

    logger.info("bot polling started")
    try:
        await dp.start_polling(bot)
    finally:
        await bot.session.close()
        logger.info("bot stopped")


def run_bot_sync() -> None:
    asyncio.run(run_bot())
