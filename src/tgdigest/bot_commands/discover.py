from __future__ import annotations

from aiogram import Router
from aiogram.filters import Command, CommandObject
from aiogram.types import Message
from loguru import logger

from tgdigest.bot_commands.auth import ensure_allowed
from tgdigest.bot_commands.parsing import UsageError, parse_positive_int, split_args
from tgdigest.db.models import Discovery
from tgdigest.db.repo_channels import add_channel
from tgdigest.db.repo_discoveries import (
    approve_discovery,
    count_discoveries_by_status,
    list_pending_discoveries,
    mark_discovery_matched,
    reject_discovery,
)
from tgdigest.htmlutils import escape

router = Router()

_USAGE = "Usage: /discover list [n] | approve <id> | reject <id> | stats"


def invite_link(invite_hash: str) -> str:
    return f"https://t.me/+{invite_hash}"


def describe_discovery(discovery: Discovery) -> str:
    if discovery.username:
        ref = f"@{discovery.username}"
    elif discovery.invite_hash:
        ref = invite_link(discovery.invite_hash)
    else:
        ref = f"peer {discovery.tg_peer_id}"
    title = f" {discovery.title}" if discovery.title and discovery.title != discovery.username else ""
    return (
        f"#{discovery.id} {escape(ref)}{escape(title)} [{discovery.source_type}] "
        f"seen={discovery.discovery_count} views={discovery.max_views} "
        f"fwd={discovery.max_forwards} score={discovery.engagement_score:.2f}"
    )


def channel_kwargs(discovery: Discovery) -> dict[str, object]:
    """Arguments for ``add_channel`` from whatever identity the discovery carries."""
    kwargs: dict[str, object] = {"title": discovery.title or ""}
    if discovery.username:
        kwargs["username"] = discovery.username
    if discovery.tg_peer_id:
        kwargs["tg_peer_id"] = discovery.tg_peer_id
        kwargs["access_hash"] = discovery.access_hash
    if discovery.invite_hash and not discovery.username:
        kwargs["invite_link"] = invite_link(discovery.invite_hash)
    return kwargs


@router.message(Command("discover"))
async def cmd_discover(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    args = split_args(command.args)
    action = args[0].lower() if args else "list"

    try:
        if action == "list":
            limit = parse_positive_int(args[1], name="n") if len(args) > 1 else 10
            rows = list_pending_discoveries(limit=min(limit, 50))
            if not rows:
                await message.answer("No pending discoveries")
                return
            lines = ["<b>Pending discoveries</b>"] + [describe_discovery(row) for row in rows]
            lines.append("")
            lines.append("/discover approve <id> adds the channel, /discover reject <id> hides it")
            await message.answer("\n".join(lines), parse_mode="HTML")
            return

        if action == "approve" and len(args) == 2:
            discovery_id = parse_positive_int(args[1], name="id")
            discovery = approve_discovery(discovery_id)
            if discovery is None:
                await message.answer(f"Discovery {discovery_id} is not pending")
                return
            try:
                channel = add_channel(**channel_kwargs(discovery))
            except ValueError as exc:
                await message.answer(f"Error: {exc}")
                return
            mark_discovery_matched(discovery.id, channel.id)
            logger.info(
                "bot discovery approved discovery_id={} channel_id={}", discovery.id, channel.id
            )
            await message.answer(f"Added channel id={channel.id} from discovery {discovery.id}")
            return

        if action == "reject" and len(args) == 2:
            discovery_id = parse_positive_int(args[1], name="id")
            if reject_discovery(discovery_id):
                await message.answer(f"Discovery {discovery_id} rejected")
            else:
                await message.answer(f"Discovery {discovery_id} is not pending")
            return

        if action == "stats":
            counts = count_discoveries_by_status()
            if not counts:
                await message.answer("No discoveries yet")
                return
            lines = [f"{status}: {count}" for status, count in sorted(counts.items())]
            await message.answer("Discoveries\n" + "\n".join(lines))
            return
    except UsageError as exc:
        await message.answer(str(exc))
        return

    await message.answer(_USAGE)
