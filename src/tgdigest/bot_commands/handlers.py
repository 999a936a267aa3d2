from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from aiogram import Router
from aiogram.filters import Command, CommandObject
from aiogram.types import BotCommand, Message
from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tgdigest.bot_commands.auth import ADMIN_IDS_SETTING_KEY, admin_ids, ensure_allowed
from tgdigest.bot_commands.parsing import (
    UsageError,
    apply_schedule_command,
    describe_schedule,
    format_value,
    parse_positive_int,
    parse_threshold,
    parse_toggle,
    parse_weight,
    split_args,
)
from tgdigest.config import get_settings
from tgdigest.db.engine import get_engine
from tgdigest.db.repo_channels import (
    add_channel,
    find_channel,
    list_channels,
    set_auto_relevance,
    set_channel_active,
    set_channel_relevance,
    list_weight_history,
    set_channel_weight,
)
from tgdigest.db.repo_digests import get_last_posted_digest
from tgdigest.db.repo_errors import clear_digest_errors, clear_errors, list_errors
from tgdigest.db.repo_items import (
    count_items_by_status,
    drop_reason_counts,
    list_error_items,
    retry_failed_items,
    retry_item,
    score_summary,
)
from tgdigest.db.repo_settings import (
    audit_setting,
    delete_setting_with_history,
    get_setting,
    list_setting_history,
    save_setting_with_history,
)
from tgdigest.db.repo_stats import (
    count_channels,
    count_digests_by_status,
    count_messages_since,
    count_unprocessed_messages,
)
from tgdigest.digest.autoweight import compute_channel_stats
from tgdigest.digest.scheduler import DigestScheduler
from tgdigest.htmlutils import escape
from tgdigest.pipeline.settings import (
    DEDUP_MODES,
    FILTER_MODES,
    SETTING_KEYS as PIPELINE_SETTING_KEYS,
)
from tgdigest.schedule import (
    SETTING_DIGEST_SCHEDULE,
    SETTING_DIGEST_SCHEDULE_ANCHOR,
    SETTING_DIGEST_WINDOW,
    Schedule,
    ScheduleError,
    format_duration,
    parse_schedule,
    parse_window,
)
from tgdigest.telegram.user_client import extract_invite_hash, extract_username

router = Router()
_digest_task: asyncio.Task[None] | None = None

TOGGLE_SETTINGS: dict[str, str] = {
    "editor": "editor_enabled",
    "consolidated": "consolidated_clusters_enabled",
    "ai_cover": "digest_ai_cover",
    "inline_images": "digest_inline_images",
    "others_narrative": "others_as_narrative",
    "relevance_gate": "digest_relevance_gate",
    "skip_forwards": "filters_skip_forwards",
    "ads": "filters_ads",
    "topics": "topics_enabled",
    "threshold_tuning": "auto_threshold_tuning_enabled",
}

_BOT_COMMANDS: tuple[tuple[str, str], ...] = (
    ("help", "Show commands"),
    ("status", "System status"),
    ("add", "Add channel: /add <@username|link>"),
    ("remove", "Disable channel: /remove <ref>"),
    ("list", "List channels"),
    ("channel", "Channel weight, relevance and stats"),
    ("settings", "Show runtime settings"),
    ("history", "Settings history: /history [key]"),
    ("schedule", "Digest schedule"),
    ("window", "Digest window: /window <6h|90m|reset>"),
    ("filters", "Filter patterns"),
    ("relevance", "Global relevance threshold"),
    ("importance", "Global importance threshold"),
    ("digest", "Build and post the digest now"),
    ("retry", "Retry failed items"),
    ("errors", "Recent errors"),
    ("llm", "LLM routing, budget and usage"),
    ("prompt", "Prompt versions"),
    ("annotate", "Label items"),
    ("discover", "Discovered channels"),
    ("ratings", "Recent digest ratings"),
    ("rate_item", "Rate an item: /rate_item <id> good|bad|irrelevant"),
)

_HELP_TEXT = "\n".join(
    [
        "<b>Channels</b>",
        "/add &lt;@username|t.me link|invite&gt; · /remove &lt;ref&gt; · /list",
        "/channel weight &lt;ref&gt; &lt;0.1-2.0|auto&gt;",
        "/channel relevance &lt;ref&gt; &lt;0-1|off|auto|manual&gt;",
        "/channel history &lt;ref&gt; · /channel stats [days]",
        "",
        "<b>Digest</b>",
        "/digest [retry] · /schedule show|preview|timezone|weekdays|weekends|clear",
        "/relevance &lt;0-1&gt; · /importance &lt;0-1&gt; · /top_n &lt;n&gt; · /window [6h|reset]",
        "/" + " · /".join(sorted(TOGGLE_SETTINGS)) + " &lt;on|off&gt;",
        "/language &lt;code|off&gt; · /dedup strict|semantic",
        "",
        "<b>Filters</b>",
        "/filters list|add allow|deny &lt;pattern&gt;|remove &lt;n&gt;|mode mixed|allowlist|denylist",
        "/min_length &lt;n&gt; · /ads_keywords [k1,k2,...]",
        "",
        "<b>Operations</b>",
        "/status · /settings · /history [key] · /errors [clear] · /retry [confirm|item_id]",
        "/admins [add|remove &lt;id&gt;] · /llm · /prompt · /annotate · /discover · /ratings",
    ]
)


def get_bot_commands() -> list[BotCommand]:
    return [BotCommand(command=name, description=description) for name, description in _BOT_COMMANDS]


def _user_id(message: Message) -> int | None:
    return message.from_user.id if message.from_user else None


async def _save(message: Message, key: str, value: Any) -> bool:
    try:
        save_setting_with_history(key, value, changed_by=_user_id(message))
    except SQLAlchemyError as exc:
        logger.error("bot setting save failed key={} error={}", key, exc)
        await message.answer("Failed to save the setting, see logs")
        return False
    logger.info("bot setting saved key={} user_id={}", key, _user_id(message))
    return True


def _format_channel_line(channel: Any) -> str:
    username = f"@{channel.username}" if channel.username else "—"
    status = "active" if channel.is_active else "disabled"
    relevance = "—" if channel.relevance_threshold is None else f"{channel.relevance_threshold:.2f}"
    return (
        f"{channel.id}. {escape(channel.title or '')} | {escape(username)} | {status} | "
        f"w={channel.importance_weight:.2f} ({channel.weight_mode}) | rel={relevance}"
    )


def _current_window() -> str:
    stored = get_setting(SETTING_DIGEST_WINDOW)
    if stored:
        try:
            return format_duration(parse_window(str(stored)))
        except ValueError as exc:
            logger.warning("bot stored digest window is invalid error={}", exc)
    return get_settings().digest_window


def _current_schedule() -> Schedule | None:
    payload = get_setting(SETTING_DIGEST_SCHEDULE)
    if not payload:
        return None
    try:
        return parse_schedule(payload)
    except ScheduleError as exc:
        logger.warning("bot stored schedule is invalid error={}", exc)
        return None


@router.message(Command("start", "help"))
async def cmd_help(message: Message) -> None:
    if not await ensure_allowed(message):
        return
    await message.answer(_HELP_TEXT, parse_mode="HTML")


@router.message(Command("status"))
async def cmd_status(message: Message) -> None:
    if not await ensure_allowed(message):
        return

    db_status = "OK"
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("bot status db check failed error={}", exc)
        await message.answer(f"DB: ERROR ({exc.__class__.__name__})")
        return

    since = datetime.now(timezone.utc) - timedelta(hours=24)
    statuses = count_items_by_status(since)
    drops = drop_reason_counts(since)
    scores = score_summary(since)
    digests = count_digests_by_status()
    last = get_last_posted_digest()
    schedule = _current_schedule()

    lines = [
        f"DB: {db_status}",
        f"Channels active/total: {count_channels(True)}/{count_channels(False)}",
        f"Messages 24h: {count_messages_since(since)}",
        f"Unprocessed messages: {count_unprocessed_messages()}",
        "Items 24h: " + (", ".join(f"{k}={v}" for k, v in sorted(statuses.items())) or "none"),
        "Drops 24h: " + (", ".join(f"{reason}={count}" for reason, count in drops[:6]) or "none"),
        f"Scores 24h: relevance={scores['avg_relevance']:.2f} importance={scores['avg_importance']:.2f} "
        f"low_relevance={scores['low_relevance']}/{scores['total']}",
        "Digests: " + (", ".join(f"{k}={v}" for k, v in sorted(digests.items())) or "none"),
    ]
    if last is not None:
        lines.append(
            f"Last digest: #{last.id} {format_value(last.posted_at)} "
            f"items={len(last.item_ids or [])} 👍{last.rating_up} 👎{last.rating_down}"
        )
    else:
        lines.append("Last digest: none")
    if schedule is not None and not schedule.is_empty():
        upcoming = schedule.next_times(datetime.now(timezone.utc), 1)
        lines.append(f"Next digest: {format_value(upcoming[0]) if upcoming else '—'}")
    else:
        lines.append(f"Digest every: {_current_window()}")
    await message.answer("\n".join(lines))


@router.message(Command("add"))
async def cmd_add(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    ref = (command.args or "").strip()
    if not ref:
        await message.answer("Usage: /add <@username|https://t.me/name|invite link>")
        return

    try:
        invite_hash = extract_invite_hash(ref)
        if invite_hash:
            channel = add_channel(invite_link=ref, title=ref)
        elif ref.lstrip("-").isdigit():
            channel = add_channel(tg_peer_id=int(ref), title=ref)
        else:
            channel = add_channel(username=extract_username(ref))
    except ValueError as exc:
        await message.answer(f"Error: {exc}")
        return
    except SQLAlchemyError as exc:
        logger.error("bot add channel failed ref={} error={}", ref, exc)
        await message.answer("Error: database is unavailable")
        return
    await message.answer(
        f"Added: {escape(channel.title or ref)} (id {channel.id}). "
        "The reader resolves it on the next cycle."
    )


@router.message(Command("remove"))
async def cmd_remove(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    ref = (command.args or "").strip()
    if not ref:
        await message.answer("Usage: /remove <@username|id>")
        return
    channel = find_channel(ref)
    if channel is None:
        await message.answer("Channel not found")
        return
    channel = set_channel_active(channel.id, False)
    await message.answer(f"Removed (disabled): {escape(channel.title or ref)}")


@router.message(Command("list"))
async def cmd_list(message: Message) -> None:
    if not await ensure_allowed(message):
        return
    channels = list_channels(active_only=False)
    if not channels:
        await message.answer("No channels")
        return
    lines = [_format_channel_line(channel) for channel in channels[:50]]
    if len(channels) > 50:
        lines.append(f"... showing 50 of {len(channels)}")
    await message.answer("\n".join(lines), parse_mode="HTML")


@router.message(Command("channel"))
async def cmd_channel(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    args = split_args(command.args)
    usage = (
        "Usage: /channel weight <ref> <0.1-2.0|auto> | relevance <ref> <0-1|off|auto|manual> "
        "| history <ref> | stats [days]"
    )
    if not args:
        await message.answer(usage)
        return

    action = args[0].lower()
    try:
        if action == "stats":
            days = parse_positive_int(args[1], name="days") if len(args) > 1 else 7
            await _reply_channel_stats(message, days)
            return
        if action == "history" and len(args) == 2:
            await _reply_weight_history(message, args[1])
            return
        if action not in ("weight", "relevance") or len(args) != 3:
            raise UsageError(usage)

        channel = find_channel(args[1])
        if channel is None:
            await message.answer("Channel not found")
            return

        if action == "weight":
            weight = parse_weight(args[2])
            channel = set_channel_weight(channel.id, weight, updated_by=_user_id(message))
            await message.answer(
                f"{escape(channel.title)}: weight {channel.importance_weight:.2f} ({channel.weight_mode})"
            )
            return

        value = args[2].lower()
        if value == "off":
            set_channel_relevance(channel.id, None)
            await message.answer(f"{escape(channel.title)}: channel relevance threshold removed")
        elif value in ("auto", "manual"):
            set_auto_relevance(channel.id, value == "auto")
            await message.answer(f"{escape(channel.title)}: auto-relevance {value}")
        else:
            threshold = parse_threshold(value)
            set_channel_relevance(channel.id, threshold)
            await message.answer(f"{escape(channel.title)}: relevance threshold {threshold:.2f}")
    except UsageError as exc:
        await message.answer(str(exc))


async def _reply_weight_history(message: Message, ref: str) -> None:
    channel = find_channel(ref)
    if channel is None:
        await message.answer("Channel not found")
        return
    rows = list_weight_history(channel.id, limit=10)
    if not rows:
        await message.answer(f"{escape(channel.title)}: no weight changes yet")
        return
    lines = [f"<b>{escape(channel.title)} weight history</b>"]
    for row in rows:
        lines.append(
            f"{row.updated_at:%Y-%m-%d %H:%M} {row.importance_weight:.2f} ({row.weight_mode}) "
            f"{escape(row.reason or '')} by {row.updated_by or '—'}"
        )
    await message.answer("\n".join(lines), parse_mode="HTML")


async def _reply_channel_stats(message: Message, days: int) -> None:
    stats = await asyncio.to_thread(compute_channel_stats, days)
    if not stats:
        await message.answer("No channels")
        return
    lines = [f"<b>Channel stats, last {days}d</b>"]
    for row in sorted(stats, key=lambda value: value.conversion_rate, reverse=True)[:30]:
        reliability = "—" if row.reliability is None else f"{row.reliability:.2f}"
        lines.append(
            f"{escape(row.title)}: msgs={row.messages} ready={row.items_created} "
            f"digested={row.items_digested} conv={row.conversion_rate:.0%} "
            f"rel={row.avg_relevance:.2f}±{row.stddev_relevance:.2f} "
            f"imp={row.avg_importance:.2f}±{row.stddev_importance:.2f} "
            f"reliability={reliability} ({row.ratings})"
        )
    await message.answer("\n".join(lines), parse_mode="HTML")


@router.message(Command("settings"))
async def cmd_settings(message: Message) -> None:
    if not await ensure_allowed(message):
        return
    keys = sorted(
        set(PIPELINE_SETTING_KEYS)
        | set(TOGGLE_SETTINGS.values())
        | {
            "digest_top_n",
            "importance_threshold",
            "dedup_mode",
            "topic_diversity_cap",
            "min_topic_count",
            SETTING_DIGEST_WINDOW,
        }
    )
    lines = ["<b>Runtime settings</b>"]
    for key in keys:
        value = get_setting(key)
        if key == "filters" and isinstance(value, list):
            value = f"{len(value)} pattern(s)"
        lines.append(f"{key}: {escape(format_value(value))}")
    await message.answer("\n".join(lines), parse_mode="HTML")


@router.message(Command("history"))
async def cmd_history(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    key = (command.args or "").strip() or None
    rows = list_setting_history(limit=15, key=key)
    if not rows:
        await message.answer("No history")
        return
    lines = []
    for row in rows:
        new_value = "(deleted)" if row.is_deleted else format_value(row.new_value)
        lines.append(
            f"{row.changed_at:%Y-%m-%d %H:%M} {row.key}: "
            f"{format_value(row.old_value)} → {new_value} by {row.changed_by or '—'}"
        )
    if key:
        try:
            current, consistent = audit_setting(key)
        except SQLAlchemyError as exc:
            logger.warning("bot history audit failed key={} error={}", key, exc)
        else:
            state = "matches history" if consistent else "differs from history"
            lines.append(f"Current: {format_value(current)} ({state})")
    await message.answer(escape("\n".join(lines)))


@router.message(Command(*TOGGLE_SETTINGS))
async def cmd_toggle(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    key = TOGGLE_SETTINGS[command.command.lower()]
    try:
        value = parse_toggle(command.args)
    except UsageError as exc:
        await message.answer(f"{exc}: /{command.command} on|off")
        return
    if value is None:
        await message.answer(f"{key}: {format_value(get_setting(key))}")
        return
    if await _save(message, key, value):
        await message.answer(f"{key}: {format_value(value)}")


@router.message(Command("relevance", "importance"))
async def cmd_threshold(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    key = f"{command.command.lower()}_threshold"
    if not command.args:
        default = getattr(get_settings(), key)
        await message.answer(f"{key}: {format_value(get_setting(key, default))}")
        return
    try:
        value = parse_threshold(command.args)
    except UsageError as exc:
        await message.answer(str(exc))
        return
    if await _save(message, key, value):
        await message.answer(f"{key}: {value:.2f}")


@router.message(Command("min_length", "top_n", "dedup_window"))
async def cmd_int_setting(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    key = {
        "min_length": "filters_min_length",
        "top_n": "digest_top_n",
        "dedup_window": "dedup_window_hours",
    }[command.command.lower()]
    if not command.args:
        await message.answer(f"{key}: {format_value(get_setting(key))}")
        return
    try:
        value = parse_positive_int(command.args, name=key)
    except UsageError as exc:
        await message.answer(str(exc))
        return
    if await _save(message, key, value):
        await message.answer(f"{key}: {value}")


@router.message(Command("dedup"))
async def cmd_dedup(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    value = (command.args or "").strip().lower()
    if value not in DEDUP_MODES:
        await message.answer(f"Usage: /dedup {'|'.join(DEDUP_MODES)}")
        return
    if await _save(message, "dedup_mode", value):
        await message.answer(f"dedup_mode: {value}")


@router.message(Command("language"))
async def cmd_language(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    value = (command.args or "").strip()
    if not value:
        await message.answer(f"digest_language: {format_value(get_setting('digest_language'))}")
        return
    if value.lower() == "off":
        delete_setting_with_history("digest_language", changed_by=_user_id(message))
        await message.answer("digest_language: auto")
        return
    if await _save(message, "digest_language", value):
        await message.answer(f"digest_language: {escape(value)}")


@router.message(Command("ads_keywords"))
async def cmd_ads_keywords(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    raw = (command.args or "").strip()
    if not raw:
        current = get_setting("filters_ads_keywords")
        await message.answer(f"filters_ads_keywords: {escape(format_value(current or 'defaults'))}")
        return
    keywords = [value.strip().lower() for value in raw.split(",") if value.strip()]
    if await _save(message, "filters_ads_keywords", keywords):
        await message.answer(f"filters_ads_keywords: {escape(', '.join(keywords))}")


@router.message(Command("filters"))
async def cmd_filters(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    args = split_args(command.args)
    patterns = get_setting("filters", [])
    if not isinstance(patterns, list):
        patterns = []
    action = args[0].lower() if args else "list"

    if action == "list":
        mode = get_setting("filters_mode", "mixed")
        lines = [f"mode: {mode}"]
        for index, pattern in enumerate(patterns, start=1):
            state = "" if pattern.get("active", True) else " (inactive)"
            lines.append(f"{index}. {pattern.get('type')} {pattern.get('pattern')}{state}")
        if not patterns:
            lines.append("no patterns")
        await message.answer(escape("\n".join(lines)))
        return

    if action == "add" and len(args) >= 3 and args[1].lower() in ("allow", "deny"):
        value = " ".join(args[2:]).strip()
        patterns = patterns + [{"type": args[1].lower(), "pattern": value, "active": True}]
        if await _save(message, "filters", patterns):
            await message.answer(f"Added {args[1].lower()} pattern #{len(patterns)}")
        return

    if action == "remove" and len(args) == 2:
        try:
            index = parse_positive_int(args[1], name="index")
        except UsageError as exc:
            await message.answer(str(exc))
            return
        if index > len(patterns):
            await message.answer("No such pattern")
            return
        removed = patterns[index - 1]
        patterns = patterns[: index - 1] + patterns[index:]
        if await _save(message, "filters", patterns):
            await message.answer(f"Removed {removed.get('type')} {escape(str(removed.get('pattern')))}")
        return

    if action == "mode" and len(args) == 2 and args[1].lower() in FILTER_MODES:
        if await _save(message, "filters_mode", args[1].lower()):
            await message.answer(f"filters_mode: {args[1].lower()}")
        return

    await message.answer(
        "Usage: /filters list | add allow|deny <pattern> | remove <n> | mode "
        + "|".join(FILTER_MODES)
    )


@router.message(Command("schedule"))
async def cmd_schedule(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    args = split_args(command.args)
    current = _current_schedule()
    action = args[0].lower() if args else "show"

    if action == "show":
        await message.answer(describe_schedule(current))
        return
    if action == "preview":
        count = 5
        try:
            if len(args) > 1:
                count = min(parse_positive_int(args[1], name="count"), 20)
        except UsageError as exc:
            await message.answer(str(exc))
            return
        if current is None or current.is_empty():
            await message.answer(describe_schedule(current))
            return
        upcoming = current.next_times(datetime.now(timezone.utc), count)
        await message.answer("\n".join(slot.strftime("%a %Y-%m-%d %H:%M %Z") for slot in upcoming))
        return

    try:
        updated = apply_schedule_command(current, args)
    except UsageError as exc:
        await message.answer(str(exc))
        return

    if updated is None:
        delete_setting_with_history(SETTING_DIGEST_SCHEDULE, changed_by=_user_id(message))
        delete_setting_with_history(SETTING_DIGEST_SCHEDULE_ANCHOR, changed_by=_user_id(message))
        await message.answer("Schedule cleared: the digest runs every DIGEST_WINDOW")
        return

    if not await _save(message, SETTING_DIGEST_SCHEDULE, updated.to_dict()):
        return
    anchor = datetime.now(timezone.utc).isoformat()
    await _save(message, SETTING_DIGEST_SCHEDULE_ANCHOR, anchor)
    await message.answer(describe_schedule(updated))


@router.message(Command("window"))
async def cmd_window(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    arg = (command.args or "").strip().lower()
    if not arg:
        await message.answer(f"Digest window: {_current_window()}")
        return
    if arg in {"reset", "default"}:
        delete_setting_with_history(SETTING_DIGEST_WINDOW, changed_by=_user_id(message))
        await message.answer(f"Digest window: {get_settings().digest_window} (DIGEST_WINDOW)")
        return
    try:
        window = parse_window(arg)
    except ValueError as exc:
        await message.answer(f"{exc}. Usage: /window <6h|90m|1h30m|reset>")
        return
    value = format_duration(window)
    if await _save(message, SETTING_DIGEST_WINDOW, value):
        await message.answer(f"Digest window: {value}")


@router.message(Command("digest"))
async def cmd_digest(message: Message, command: CommandObject, digest_runner: DigestScheduler | None) -> None:
    global _digest_task

    if not await ensure_allowed(message):
        return
    if digest_runner is None:
        await message.answer("Digest posting is not configured: set DIGEST_TARGET_CHAT_ID")
        return
    if _digest_task is not None and not _digest_task.done():
        await message.answer("A digest build is already running")
        return

    retry_failed = (command.args or "").strip().lower() == "retry"
    await message.answer("Building the digest...")

    async def _run() -> None:
        global _digest_task
        try:
            outcome = await asyncio.to_thread(digest_runner.run_once, retry_failed=retry_failed)
            if outcome.status == "posted":
                await message.answer(
                    f"Posted digest #{outcome.digest_id}: {len(outcome.item_ids)} items, "
                    f"{outcome.parts} message(s)"
                )
            elif outcome.status == "empty":
                await message.answer("Nothing to post in this window")
            elif outcome.status == "exists":
                await message.answer("This window was already handled. Use /digest retry after an error.")
            else:
                await message.answer(f"Digest failed: {escape(outcome.error or 'unknown error')}")
        except Exception as exc:
            logger.exception("bot digest run failed error={}", exc)
            await message.answer(f"Error: {escape(str(exc))}")
        finally:
            _digest_task = None

    _digest_task = asyncio.create_task(_run())


@router.message(Command("retry"))
async def cmd_retry(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    arg = (command.args or "").strip().lower()
    if arg == "confirm":
        count = retry_failed_items()
        await message.answer(f"Requeued {count} failed item(s)")
        return
    if arg.isdigit():
        ok = retry_item(int(arg))
        await message.answer("Requeued" if ok else "Item not found or not in a terminal state")
        return
    failed = list_error_items(limit=5)
    total = count_items_by_status().get("error", 0)
    lines = [f"{total} item(s) in error. Send /retry confirm to requeue all, or /retry <item_id>."]
    for item in failed:
        kind = (item.error or {}).get("kind", "?")
        lines.append(f"#{item.id} raw={item.raw_id} kind={kind}")
    await message.answer("\n".join(lines))


@router.message(Command("errors"))
async def cmd_errors(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    args = split_args(command.args)
    if args and args[0].lower() == "clear":
        scope = args[1].lower() if len(args) > 1 else None
        removed = clear_digest_errors() if scope == "digest" else clear_errors(scope)
        await message.answer(f"Cleared {removed} error row(s)")
        return

    scope = args[0].lower() if args else None
    rows = list_errors(limit=10, scope=scope)
    items = list_error_items(limit=5) if scope in (None, "items") else []
    if not rows and not items:
        await message.answer("No errors")
        return
    lines = [
        f"{row.created_at:%Y-%m-%d %H:%M} [{row.scope}] ref={row.ref_id or '—'} {row.message[:200]}"
        for row in rows
    ]
    for item in items:
        error = item.error or {}
        lines.append(f"item #{item.id} [{error.get('kind', '?')}] {str(error.get('message', ''))[:200]}")
    await message.answer(escape("\n".join(lines)))


@router.message(Command("admins"))
async def cmd_admins(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    args = split_args(command.args)
    stored = get_setting(ADMIN_IDS_SETTING_KEY, [])
    stored_ids = {int(value) for value in stored} if isinstance(stored, list) else set()

    if len(args) == 2 and args[0].lower() in ("add", "remove") and args[1].lstrip("-").isdigit():
        target = int(args[1])
        if args[0].lower() == "add":
            stored_ids.add(target)
        else:
            stored_ids.discard(target)
        if not await _save(message, ADMIN_IDS_SETTING_KEY, sorted(stored_ids)):
            return
    elif args:
        await message.answer("Usage: /admins [add|remove <user_id>]")
        return

    configured = set(get_settings().admin_ids)
    lines = [
        f"{user_id}{' (env)' if user_id in configured else ''}" for user_id in sorted(admin_ids())
    ]
    await message.answer("Admins:\n" + ("\n".join(lines) or "none"))
