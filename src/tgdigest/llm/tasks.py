from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger

from tgdigest.htmlutils import sanitize_html
from tgdigest.llm import prompts
from tgdigest.llm.base import CompletionRequest
from tgdigest.llm.errors import EmptyResponseError, LLMError
from tgdigest.llm.gateway import (
    TASK_CLUSTER,
    TASK_COVER,
    TASK_NARRATIVE,
    TASK_SUMMARIZE,
    TASK_TOPIC,
    LLMGateway,
)

SettingGetter = Callable[[str, Any], Any]

MAX_MESSAGE_CHARS = 6000
MAX_SUMMARY_CHARS = 600
_TOPIC_BY_LOWER = {topic.lower(): topic for topic in prompts.TOPIC_CHOICES}


@dataclass(slots=True)
class SummaryResult:
    summary: str
    relevance_score: float
    importance_score: float
    topic: str | None
    language: str | None


def _score(value: Any, default: float = 0.5) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(0.0, min(1.0, number))


def _topic(value: Any) -> str | None:
    text = str(value or "").strip()
    if not text:
        return None
    return _TOPIC_BY_LOWER.get(text.lower(), text[:64])


def _system(
    base: str,
    get_setting: SettingGetter | None,
    *,
    language: str | None = None,
    count: int = 0,
) -> str:
    prompt = prompts.load_prompt(base, get_setting)
    return prompts.apply_tokens(prompt.text, language=language, count=count)


def summarize_message(
    gateway: LLMGateway,
    text: str,
    *,
    channel_title: str,
    context: list[str] | None = None,
    language: str | None = None,
    get_setting: SettingGetter | None = None,
) -> SummaryResult:
    """Summarize one post; raises EmptyResponseError when no summary comes back."""
    parts = [f"Channel: {channel_title}"]
    if context:
        parts.append("Background (earlier posts of the channel):")
        parts.extend(f"- {line}" for line in context)
    parts.append(">>> MESSAGE <<<")
    parts.append(text[:MAX_MESSAGE_CHARS])

    payload = gateway.complete_json(
        TASK_SUMMARIZE,
        CompletionRequest(
            prompt="\n".join(parts),
            system=_system(prompts.SUMMARIZE, get_setting, language=language),
            max_tokens=512,
        ),
    )
    summary = sanitize_html(str(payload.get("summary") or "").strip())[:MAX_SUMMARY_CHARS].strip()
    if not summary:
        raise EmptyResponseError("empty summary")

    detected = str(payload.get("language") or "").strip().lower()[:8] or None
    return SummaryResult(
        summary=summary,
        relevance_score=_score(payload.get("relevance_score")),
        importance_score=_score(payload.get("importance_score")),
        topic=_topic(payload.get("topic")),
        language=detected,
    )


def assign_topic(gateway: LLMGateway, summary: str) -> str | None:
    payload = gateway.complete_json(
        TASK_TOPIC,
        CompletionRequest(
            prompt=summary, system=prompts.default_prompt(prompts.TOPIC), max_tokens=64
        ),
    )
    return _topic(payload.get("topic"))


def group_summaries(
    gateway: LLMGateway,
    summaries: list[str],
    *,
    get_setting: SettingGetter | None = None,
) -> list[list[int]]:
    """Group summaries reporting the same event; returns zero-based index groups.

    Every index lands in exactly one group. Indexes the model skipped or repeated
    are repaired into singleton groups.
    """
    if len(summaries) < 2:
        return [[index] for index in range(len(summaries))]

    payload = gateway.complete_json(
        TASK_CLUSTER,
        CompletionRequest(
            prompt=prompts.numbered(summaries),
            system=_system(prompts.CLUSTER, get_setting, count=len(summaries)),
            max_tokens=1024,
        ),
    )
    raw_groups = payload.get("groups")
    if not isinstance(raw_groups, list):
        raw_groups = []

    seen: set[int] = set()
    groups: list[list[int]] = []
    for raw in raw_groups:
        if not isinstance(raw, list):
            continue
        group: list[int] = []
        for value in raw:
            try:
                index = int(value) - 1
            except (TypeError, ValueError):
                continue
            if 0 <= index < len(summaries) and index not in seen:
                seen.add(index)
                group.append(index)
        if group:
            groups.append(group)

    for index in range(len(summaries)):
        if index not in seen:
            groups.append([index])
    return groups


def write_narrative(
    gateway: LLMGateway,
    summaries: list[str],
    *,
    language: str | None = None,
    get_setting: SettingGetter | None = None,
) -> str:
    completion = gateway.complete(
        TASK_NARRATIVE,
        CompletionRequest(
            prompt=prompts.numbered(summaries),
            system=_system(prompts.NARRATIVE, get_setting, language=language, count=len(summaries)),
            max_tokens=900,
            temperature=0.4,
        ),
    )
    return sanitize_html(completion.text.strip())


def cluster_summary(
    gateway: LLMGateway,
    summaries: list[str],
    *,
    language: str | None = None,
    get_setting: SettingGetter | None = None,
) -> str:
    completion = gateway.complete(
        TASK_NARRATIVE,
        CompletionRequest(
            prompt=prompts.numbered(summaries),
            system=_system(prompts.CLUSTER_SUMMARY, get_setting, language=language),
            max_tokens=300,
        ),
    )
    return sanitize_html(completion.text.strip())


def cluster_topic(
    gateway: LLMGateway,
    summaries: list[str],
    *,
    language: str | None = None,
    get_setting: SettingGetter | None = None,
) -> str:
    completion = gateway.complete(
        TASK_TOPIC,
        CompletionRequest(
            prompt=prompts.numbered(summaries),
            system=_system(prompts.CLUSTER_TOPIC, get_setting, language=language),
            max_tokens=32,
        ),
    )
    return completion.text.strip().strip(".").strip()[:80]


def relevance_gate(
    gateway: LLMGateway,
    summaries: list[str],
    *,
    get_setting: SettingGetter | None = None,
) -> list[int]:
    """Zero-based indexes the model keeps; an unusable answer keeps everything."""
    if not summaries:
        return []
    payload = gateway.complete_json(
        TASK_SUMMARIZE,
        CompletionRequest(
            prompt=prompts.numbered(summaries),
            system=_system(prompts.RELEVANCE_GATE, get_setting, count=len(summaries)),
            max_tokens=256,
        ),
    )
    keep = payload.get("keep")
    if not isinstance(keep, list):
        return list(range(len(summaries)))
    indexes: list[int] = []
    for value in keep:
        try:
            index = int(value) - 1
        except (TypeError, ValueError):
            continue
        if 0 <= index < len(summaries) and index not in indexes:
            indexes.append(index)
    return sorted(indexes)


def compress_summaries_for_cover(gateway: LLMGateway, summaries: list[str]) -> list[str]:
    completion = gateway.complete(
        TASK_COVER,
        CompletionRequest(
            prompt=prompts.numbered(summaries),
            system=prompts.apply_tokens(
                prompts.default_prompt(prompts.COVER), count=len(summaries)
            ),
            max_tokens=200,
        ),
    )
    themes = [line.strip(" -•\t") for line in completion.text.splitlines()]
    return [theme for theme in themes if theme][:5]


def generate_digest_cover(
    gateway: LLMGateway, topics: list[str], narrative: str | None = None
) -> bytes | None:
    """Render a digest cover image; any failure degrades to a text-only digest."""
    if not topics:
        return None
    lines = ["Editorial illustration for a news digest, flat style, no text, no real faces."]
    lines.append("Themes: " + "; ".join(topics))
    if narrative:
        lines.append("Mood: " + narrative[:300])
    try:
        return gateway.generate_image("\n".join(lines))
    except LLMError as exc:
        logger.warning("digest cover failed kind={} error={}", exc.kind, exc)
        return None
