from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

import click
from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table
from sqlalchemy import inspect

from tgdigest import __version__
from tgdigest.config import MODES, ConfigError, Settings, get_settings
from tgdigest.db.engine import get_engine, ping
from tgdigest.logging import configure_logging
from tgdigest.runtime import install_async_signal_handlers, install_signal_handlers
from tgdigest.telegram.user_client import UserTelegramClient

console = Console()


def _redact_database_url(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.password:
        return url

    netloc = parsed.netloc.replace(parsed.password, "***")
    return parsed._replace(netloc=netloc).geturl()


def _load_settings(mode: str | None = None) -> Settings:
    try:
        settings = get_settings()
        if mode is not None:
            settings.require(mode)
    except (ConfigError, ValidationError) as exc:
        console.print(f"Config error: {exc}")
        raise SystemExit(1) from exc
    return settings


def _make_user_client(settings: Settings) -> UserTelegramClient:
    return UserTelegramClient(
        api_id=settings.tg_api_id,
        api_hash=settings.tg_api_hash,
        session_path=settings.tg_session_path,
        phone=settings.tg_phone,
        password=settings.tg_2fa_password,
    )


def _run_bot() -> None:
    from tgdigest.bot_commands.app import run_bot_sync

    run_bot_sync()


def _run_reader(settings: Settings, once: bool) -> None:
    from tgdigest.ingest.reader import Reader

    async def _run() -> None:
        client = _make_user_client(settings)
        await client.connect(allow_interactive_login=False)
        reader = Reader(
            client,
            rate_limit_rps=settings.rate_limit_rps,
            fetch_limit=settings.reader_fetch_limit,
        )
        try:
            if once:
                received = await reader.run_cycle()
                await reader.drain()
                console.print(f"messages={received}")
                return
            stop = asyncio.Event()
            install_async_signal_handlers(stop, "reader")
            await reader.run(stop)
        finally:
            await client.disconnect()

    asyncio.run(_run())


def _run_worker(settings: Settings, once: bool) -> None:
    from tgdigest.llm.gateway import build_gateway
    from tgdigest.pipeline.worker import Worker

    worker = Worker(
        build_gateway(settings),
        batch_size=settings.worker_batch_size,
        concurrency=settings.worker_concurrency,
        poll_interval=settings.worker_poll_interval,
        default_relevance=settings.relevance_threshold,
    )
    if once:
        stats = worker.run_once()
        console.print(
            f"claimed={stats.claimed} ready={stats.ready} rejected={stats.rejected} "
            f"errors={stats.errors} deferred={stats.deferred}"
        )
        return
    stop = threading.Event()
    install_signal_handlers(stop, "pipeline worker")
    worker.run(stop)


def _run_digest(settings: Settings, once: bool) -> None:
    from tgdigest.digest.scheduler import build_digest_scheduler
    from tgdigest.llm.gateway import build_gateway

    scheduler = build_digest_scheduler(settings, build_gateway(settings))
    if once:
        outcome = scheduler.run_once()
        console.print(
            f"status={outcome.status} digest_id={outcome.digest_id or '-'} "
            f"items={len(outcome.item_ids)} parts={outcome.parts}"
        )
        if outcome.error:
            console.print(f"error={outcome.error}")
            raise SystemExit(1)
        return
    stop = threading.Event()
    install_signal_handlers(stop, "scheduler")
    scheduler.run(stop)


def _run_http(settings: Settings) -> None:
    from tgdigest.health import run_http

    run_http(settings)


@click.group(invoke_without_command=True)
@click.option(
    "--mode",
    type=click.Choice(MODES),
    default=None,
    help="Role to run: bot, reader, worker, digest or http.",
)
@click.option("--once", is_flag=True, default=False, help="Run a single cycle and exit.")
@click.pass_context
def main(ctx: click.Context, mode: str | None, once: bool) -> None:
    """Telegram channel digest."""
    load_dotenv()
    settings = _load_settings()
    configure_logging(settings.log_level)

    if ctx.invoked_subcommand is not None:
        return
    if mode is None:
        console.print(ctx.get_help())
        return

    settings = _load_settings(mode)
    logger.info("tgdigest starting mode={} once={} version={}", mode, once, __version__)
    try:
        if mode == "bot":
            _run_bot()
        elif mode == "reader":
            _run_reader(settings, once)
        elif mode == "worker":
            _run_worker(settings, once)
        elif mode == "digest":
            _run_digest(settings, once)
        else:
            _run_http(settings)
    except ConfigError as exc:
        console.print(f"Error: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        logger.info("tgdigest interrupted mode={}", mode)


@main.command()
def version() -> None:
    """Print package version."""
    console.print(__version__)


@main.command()
def doctor() -> None:
    """Check configuration and database connectivity."""
    settings = _load_settings()

    table = Table(title="Config")
    table.add_column("Key", style="bold")
    table.add_column("Value")

    safe_values = {
        "DATABASE_URL": _redact_database_url(settings.database_url),
        "TG_API_ID": settings.tg_api_id,
        "TG_SESSION_PATH": settings.tg_session_path,
        "BOT_TOKEN": "set" if settings.bot_token else None,
        "ADMIN_IDS": ",".join(str(value) for value in settings.admin_ids) or None,
        "DIGEST_TARGET_CHAT_ID": settings.digest_target_chat_id,
        "LLM providers": ",".join(
            name
            for name, key in (
                ("google", settings.google_api_key),
                ("anthropic", settings.anthropic_api_key),
                ("openai", settings.openai_api_key),
            )
            if key
        )
        or None,
        "LLM_DAILY_BUDGET": settings.llm_daily_budget or "off",
        "DIGEST_WINDOW": settings.digest_window,
        "RELEVANCE_THRESHOLD": settings.relevance_threshold,
        "IMPORTANCE_THRESHOLD": settings.importance_threshold,
        "HEALTH_PORT": settings.health_port,
        "EXPANDED_VIEW_BASE_URL": settings.expanded_view_base_url,
    }
    for key, value in safe_values.items():
        table.add_row(key, "—" if value is None else str(value))
    console.print(table)

    modes = Table(title="Modes")
    modes.add_column("Mode", style="bold")
    modes.add_column("Config")
    for mode in MODES:
        try:
            settings.require(mode)
        except ConfigError as exc:
            modes.add_row(mode, str(exc))
        else:
            modes.add_row(mode, "OK")
    console.print(modes)

    try:
        ping()
    except Exception as exc:
        console.print(f"DB check failed: {exc}")
        raise SystemExit(1) from exc
    console.print("DB: OK")

    with get_engine().connect() as conn:
        schema_ok = inspect(conn).has_table("items")
    console.print("DB schema: OK" if schema_ok else "DB schema: not migrated")


@main.command(name="tg:whoami")
def tg_whoami() -> None:
    """Authorize Telethon and print current user."""
    settings = _load_settings("reader")

    async def _run() -> None:
        client = _make_user_client(settings)
        await client.connect()
        try:
            console.print(await client.whoami())
        finally:
            await client.disconnect()

    try:
        asyncio.run(_run())
    except Exception as exc:
        console.print(f"Error: {exc}")
        raise SystemExit(1) from exc


@main.command(name="schedule:preview")
@click.option("--count", "-n", type=click.IntRange(1, 50), default=5, show_default=True)
def schedule_preview(count: int) -> None:
    """Show the next digest runs from the stored schedule."""
    from tgdigest.digest.scheduler import load_plan

    settings = _load_settings()
    plan = load_plan(settings.digest_window)
    if plan.schedule is None:
        console.print(f"No schedule: the digest runs every {plan.window_text}")
        return

    now = datetime.now(timezone.utc)
    if plan.anchor is not None and plan.anchor > now:
        now = plan.anchor
    zone = ZoneInfo(plan.schedule.timezone)
    table = Table(title=f"Next digests ({plan.schedule.timezone})")
    table.add_column("#", justify="right")
    table.add_column("Local")
    table.add_column("UTC")
    for index, slot in enumerate(plan.schedule.next_times(now, count), start=1):
        table.add_row(
            str(index),
            slot.astimezone(zone).strftime("%a %Y-%m-%d %H:%M"),
            slot.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


if __name__ == "__main__":
    main()
