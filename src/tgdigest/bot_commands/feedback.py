from __future__ import annotations

from datetime import datetime, timedelta, timezone

from aiogram import F, Router
from aiogram.filters import Command, CommandObject
from aiogram.types import CallbackQuery, Message
from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tgdigest.bot_commands.auth import ensure_allowed
from tgdigest.bot_commands.parsing import (
    UsageError,
    parse_positive_int,
    parse_rate_callback,
    split_args,
)
from tgdigest.db.repo_annotations import (
    ANNOTATION_LABELS,
    AssignedItem,
    annotation_stats,
    assign_next,
    enqueue_annotation_items,
    label_assigned,
    skip_assigned,
)
from tgdigest.db.repo_digests import list_recent_digests
from tgdigest.db.repo_ratings import ITEM_RATING_VALUES, save_digest_rating, save_item_rating
from tgdigest.htmlutils import escape

router = Router()

ANNOTATE_BATCH_LIMIT = 50
_ANNOTATE_USAGE = (
    "Usage: /annotate enqueue [hours] | next | label <good|bad|irrelevant> [comment] | skip | stats"
)


@router.callback_query(F.data.startswith("rate:"))
async def on_rate(callback: CallbackQuery) -> None:
    parsed = parse_rate_callback(callback.data)
    if parsed is None:
        await callback.answer("Unknown rating", show_alert=True)
        return
    try:
        totals = save_digest_rating(parsed.digest_id, callback.from_user.id, parsed.value)
    except IntegrityError:
        # digest row gone
        await callback.answer("Digest not found", show_alert=True)
        return
    except SQLAlchemyError as exc:
        logger.error("bot rating failed digest_id={} error={}", parsed.digest_id, exc)
        await callback.answer("Could not save the rating", show_alert=True)
        return
    logger.info(
        "bot digest rated digest_id={} user_id={} value={}",
        parsed.digest_id,
        callback.from_user.id,
        parsed.value,
    )
    await callback.answer(f"Thanks! 👍 {totals.rating_up} · 👎 {totals.rating_down}")


@router.message(Command("rate_item"))
async def cmd_rate_item(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    parts = (command.args or "").split(maxsplit=2)
    if len(parts) < 2 or parts[1].lower() not in ITEM_RATING_VALUES:
        await message.answer("Usage: /rate_item <item_id> good|bad|irrelevant [comment]")
        return
    try:
        item_id = parse_positive_int(parts[0], name="item_id")
    except UsageError as exc:
        await message.answer(str(exc))
        return
    comment = parts[2] if len(parts) > 2 else None
    try:
        save_item_rating(item_id, message.from_user.id, parts[1].lower(), comment)
    except IntegrityError:
        await message.answer(f"Item {item_id} not found")
        return
    await message.answer(f"Item {item_id} rated {parts[1].lower()}")


@router.message(Command("ratings"))
async def cmd_ratings(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    args = split_args(command.args)
    try:
        limit = parse_positive_int(args[0], name="limit") if args else 10
    except UsageError as exc:
        await message.answer(str(exc))
        return
    digests = list_recent_digests(limit=min(limit, 50))
    if not digests:
        await message.answer("No digests yet")
        return
    lines = ["<b>Recent digests</b>"]
    for digest in digests:
        when = digest.window_end.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M")
        lines.append(
            f"#{digest.id} {when} UTC [{digest.status}] "
            f"items={len(digest.item_ids or [])} 👍 {digest.rating_up} 👎 {digest.rating_down}"
        )
    await message.answer("\n".join(lines), parse_mode="HTML")


def _format_assignment(item: AssignedItem) -> str:
    channel = f"@{item.channel_username}" if item.channel_username else item.channel_title
    relevance = "—" if item.relevance_score is None else f"{item.relevance_score:.2f}"
    importance = "—" if item.importance_score is None else f"{item.importance_score:.2f}"
    return "\n".join(
        [
            f"<b>Item {item.item_id}</b> from {escape(channel or '')}",
            f"topic: {escape(item.topic or '—')} · status: {item.status}",
            f"relevance={relevance} importance={importance}",
            "",
            escape(item.summary or ""),
            "",
            "Reply with /annotate label good|bad|irrelevant [comment] or /annotate skip",
        ]
    )


@router.message(Command("annotate"))
async def cmd_annotate(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    parts = (command.args or "").split(maxsplit=2)
    action = parts[0].lower() if parts else "next"
    user_id = message.from_user.id

    try:
        if action == "enqueue":
            hours = parse_positive_int(parts[1], name="hours") if len(parts) > 1 else 24
            since = datetime.now(timezone.utc) - timedelta(hours=hours)
            queued = enqueue_annotation_items(since, ANNOTATE_BATCH_LIMIT)
            logger.info("bot annotate enqueue hours={} queued={}", hours, queued)
            await message.answer(f"Queued {queued} items from the last {hours}h")
            return

        if action == "next":
            item = assign_next(user_id)
            if item is None:
                await message.answer("Nothing to annotate. Try /annotate enqueue")
                return
            await message.answer(_format_assignment(item), parse_mode="HTML")
            return

        if action == "label":
            if len(parts) < 2 or parts[1].lower() not in ANNOTATION_LABELS:
                raise UsageError("Usage: /annotate label good|bad|irrelevant [comment]")
            comment = parts[2] if len(parts) > 2 else None
            item_id = label_assigned(user_id, parts[1].lower(), comment)
            if item_id is None:
                await message.answer("No item assigned. Use /annotate next")
                return
            await message.answer(f"Item {item_id} labeled {parts[1].lower()}. /annotate next")
            return

        if action == "skip":
            item_id = skip_assigned(user_id)
            if item_id is None:
                await message.answer("No item assigned")
                return
            await message.answer(f"Item {item_id} skipped. /annotate next")
            return

        if action == "stats":
            stats = annotation_stats()
            if not stats:
                await message.answer("Annotation queue is empty")
                return
            lines = [f"{status}: {count}" for status, count in sorted(stats.items())]
            await message.answer("Annotations\n" + "\n".join(lines))
            return
    except UsageError as exc:
        await message.answer(str(exc))
        return

    await message.answer(_ANNOTATE_USAGE)
