from __future__ import annotations

from datetime import datetime, timedelta, timezone

from aiogram import Router
from aiogram.filters import Command, CommandObject
from aiogram.types import Message
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from tgdigest.bot_commands.auth import ensure_allowed
from tgdigest.bot_commands.parsing import UsageError, parse_positive_int, split_args
from tgdigest.db.repo_llm_usage import usage_since_days
from tgdigest.db.repo_settings import (
    delete_setting_with_history,
    get_setting,
    save_setting_with_history,
)
from tgdigest.htmlutils import escape
from tgdigest.llm import prompts
from tgdigest.llm.gateway import (
    BUDGET_SETTING_KEY,
    OVERRIDABLE_TASKS,
    LLMGateway,
    override_key,
    parse_override,
)

router = Router()

PROMPT_BASES = (
    prompts.SUMMARIZE,
    prompts.CLUSTER,
    prompts.NARRATIVE,
    prompts.CLUSTER_SUMMARY,
    prompts.CLUSTER_TOPIC,
    prompts.RELEVANCE_GATE,
)
_LLM_USAGE = (
    "Usage: /llm status | set <task> <provider:model|model> | reset <task> | "
    "budget <tokens|off> | usage [days]"
)
_PROMPT_USAGE = (
    "Usage: /prompt <base> [show | activate <version> | set <version> <text>]\n"
    "Bases: " + ", ".join(PROMPT_BASES)
)


def _changed_by(message: Message) -> int | None:
    return message.from_user.id if message.from_user else None


def render_llm_status(gateway: LLMGateway) -> str:
    lines = ["<b>Providers</b>"]
    statuses = gateway.status()
    if not statuses:
        lines.append("none configured")
    for status in statuses:
        state = "OPEN" if status.circuit_open else "closed"
        lines.append(f"{status.name}: circuit {state}, failures={status.failures}")

    lines.append("")
    lines.append("<b>Routing</b>")
    overrides = gateway.overrides()
    for task in OVERRIDABLE_TASKS:
        chain = " → ".join(str(ref) for ref in gateway.chain(task)) or "—"
        marker = " (override)" if task in overrides else ""
        lines.append(f"{task}{marker}: {escape(chain)}")

    budget = gateway.budget
    limit = "off" if budget.limit <= 0 else f"{budget.limit:,}"
    lines.append("")
    lines.append(f"Budget today: {budget.used():,} / {limit} tokens")
    return "\n".join(lines)


@router.message(Command("llm"))
async def cmd_llm(message: Message, command: CommandObject, gateway: LLMGateway) -> None:
    if not await ensure_allowed(message):
        return
    args = split_args(command.args)
    action = args[0].lower() if args else "status"

    try:
        if action == "status":
            gateway.refresh_overrides()
            await message.answer(render_llm_status(gateway), parse_mode="HTML")
            return

        if action == "set" and len(args) == 3:
            task = args[1].lower()
            if task not in OVERRIDABLE_TASKS:
                raise UsageError("Tasks: " + ", ".join(OVERRIDABLE_TASKS))
            try:
                ref = parse_override(args[2])
            except ValueError as exc:
                raise UsageError(str(exc)) from exc
            save_setting_with_history(override_key(task), str(ref), changed_by=_changed_by(message))
            gateway.refresh_override(override_key(task))
            await message.answer(f"{task} → {escape(str(ref))}")
            return

        if action == "reset" and len(args) == 2:
            task = args[1].lower()
            if task not in OVERRIDABLE_TASKS:
                raise UsageError("Tasks: " + ", ".join(OVERRIDABLE_TASKS))
            delete_setting_with_history(override_key(task), changed_by=_changed_by(message))
            gateway.refresh_override(override_key(task))
            await message.answer(f"{task}: default routing")
            return

        if action == "budget" and len(args) == 2:
            if args[1].lower() == "off":
                tokens = 0
            else:
                tokens = parse_positive_int(args[1].replace("_", ""), name="budget")
            save_setting_with_history(BUDGET_SETTING_KEY, tokens, changed_by=_changed_by(message))
            gateway.refresh_overrides()
            await message.answer(f"Daily budget: {'off' if tokens == 0 else f'{tokens:,} tokens'}")
            return

        if action == "usage":
            days = parse_positive_int(args[1], name="days") if len(args) > 1 else 1
            await message.answer(_render_usage(days), parse_mode="HTML")
            return
    except UsageError as exc:
        await message.answer(escape(str(exc)))
        return
    except SQLAlchemyError as exc:
        logger.error("bot llm command failed action={} error={}", action, exc)
        await message.answer("Database error, see logs")
        return

    await message.answer(escape(_LLM_USAGE))


def _render_usage(days: int) -> str:
    today = datetime.now(timezone.utc).date()
    rows = usage_since_days(days, today)
    if not rows:
        return f"No LLM usage in the last {days}d"
    since = today - timedelta(days=days - 1)
    lines = [f"<b>LLM usage since {since.isoformat()}</b>"]
    total_tokens = 0
    total_cost = 0.0
    for row in rows:
        tokens = row.prompt_tokens + row.completion_tokens
        total_tokens += tokens
        total_cost += row.cost_usd
        lines.append(
            f"{escape(row.provider)}:{escape(row.model)} [{row.task}] "
            f"req={row.requests} tokens={tokens:,} ${row.cost_usd:.4f}"
        )
    lines.append(f"Total: {total_tokens:,} tokens, ${total_cost:.4f}")
    return "\n".join(lines)


@router.message(Command("prompt"))
async def cmd_prompt(message: Message, command: CommandObject) -> None:
    if not await ensure_allowed(message):
        return
    raw = (command.args or "").strip()
    parts = raw.split(maxsplit=3)
    if not parts or parts[0].lower() not in PROMPT_BASES:
        await message.answer(escape(_PROMPT_USAGE))
        return

    base = parts[0].lower()
    action = parts[1].lower() if len(parts) > 1 else "show"

    if action == "show":
        prompt = prompts.load_prompt(base, get_setting)
        await message.answer(
            f"<b>{base}</b> active={escape(prompt.version)}\n<pre>{escape(prompt.text[:3500])}</pre>",
            parse_mode="HTML",
        )
        return

    if action == "activate" and len(parts) == 3:
        version = parts[2].strip()
        if version != prompts.DEFAULT_VERSION and not get_setting(prompts.version_key(base, version)):
            await message.answer(f"Unknown version {escape(version)} for {base}")
            return
        save_setting_with_history(prompts.active_key(base), version, changed_by=_changed_by(message))
        await message.answer(f"{base}: active version {escape(version)}")
        return

    if action == "set" and len(parts) == 4:
        version = parts[2].strip()
        if version == prompts.DEFAULT_VERSION:
            await message.answer(f"{prompts.DEFAULT_VERSION} is built in, pick another version name")
            return
        save_setting_with_history(
            prompts.version_key(base, version), parts[3], changed_by=_changed_by(message)
        )
        await message.answer(
            f"{base}: stored version {escape(version)}. Activate with /prompt {base} activate {escape(version)}"
        )
        return

    await message.answer(escape(_PROMPT_USAGE))
