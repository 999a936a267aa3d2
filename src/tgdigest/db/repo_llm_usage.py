from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from tgdigest.db.models import LLMUsage
from tgdigest.db.session import get_session


@dataclass(slots=True)
class UsageRow:
    provider: str
    model: str
    task: str
    requests: int
    prompt_tokens: int
    completion_tokens: int
    cost_usd: float


def record_usage(
    *,
    day: date,
    provider: str,
    model: str,
    task: str,
    prompt_tokens: int,
    completion_tokens: int,
    cost_usd: float,
) -> None:
    stmt = pg_insert(LLMUsage).values(
        day=day,
        provider=provider,
        model=model,
        task=task,
        requests=1,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        cost_usd=cost_usd,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[LLMUsage.day, LLMUsage.provider, LLMUsage.model, LLMUsage.task],
        set_={
            "requests": LLMUsage.requests + 1,
            "prompt_tokens": LLMUsage.prompt_tokens + stmt.excluded.prompt_tokens,
            "completion_tokens": LLMUsage.completion_tokens + stmt.excluded.completion_tokens,
            "cost_usd": LLMUsage.cost_usd + stmt.excluded.cost_usd,
        },
    )
    with get_session() as session:
        session.execute(stmt)


def tokens_used_on(day: date) -> int:
    with get_session() as session:
        value = session.execute(
            select(
                func.coalesce(func.sum(LLMUsage.prompt_tokens + LLMUsage.completion_tokens), 0)
            ).where(LLMUsage.day == day)
        ).scalar_one()
        return int(value)


def usage_summary(since: date) -> list[UsageRow]:
    with get_session() as session:
        rows = session.execute(
            select(
                LLMUsage.provider,
                LLMUsage.model,
                LLMUsage.task,
                func.sum(LLMUsage.requests),
                func.sum(LLMUsage.prompt_tokens),
                func.sum(LLMUsage.completion_tokens),
                func.sum(LLMUsage.cost_usd),
            )
            .where(LLMUsage.day >= since)
            .group_by(LLMUsage.provider, LLMUsage.model, LLMUsage.task)
            .order_by(func.sum(LLMUsage.cost_usd).desc())
        ).all()
    return [
        UsageRow(
            provider=provider,
            model=model,
            task=task,
            requests=int(requests or 0),
            prompt_tokens=int(prompt or 0),
            completion_tokens=int(completion or 0),
            cost_usd=float(cost or 0.0),
        )
        for provider, model, task, requests, prompt, completion, cost in rows
    ]


def usage_since_days(days: int, today: date) -> list[UsageRow]:
    return usage_summary(today - timedelta(days=max(days, 1) - 1))
