from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

DEFAULT_VERSION = "v1"
LANG_PLACEHOLDER = "{{LANG_INSTRUCTION}}"
COUNT_PLACEHOLDER = "{{MESSAGE_COUNT}}"

SUMMARIZE = "summarize"
TOPIC = "topic"
CLUSTER = "cluster"
NARRATIVE = "narrative"
CLUSTER_SUMMARY = "cluster_summary"
CLUSTER_TOPIC = "cluster_topic"
COVER = "cover"
RELEVANCE_GATE = "relevance_gate"

TOPIC_CHOICES = (
    "Technology",
    "Finance",
    "Politics",
    "Business",
    "Science",
    "Health",
    "World News",
    "Local News",
    "Culture",
    "Sports",
    "Entertainment",
    "Education",
    "Humor",
)

_DEFAULTS: dict[str, str] = {
    SUMMARIZE: (
        "You read one Telegram channel post and return a JSON object with keys:\n"
        "- summary: one sentence with the key fact (who, what, why). Minimal HTML: <b> for up to 3 "
        "names or numbers, <i> for quotes. No meta phrases like 'the post says'.\n"
        "- relevance_score: 0.0-1.0, how relevant the post is to the channel audience "
        "(0.0-0.3 spam or off-topic, 0.4-0.6 routine, 0.7-1.0 on-theme or breaking).\n"
        "- importance_score: 0.0-1.0, how newsworthy or time-sensitive it is "
        "(0.0-0.3 opinion or evergreen, 0.4-0.6 notable, 0.7-1.0 significant or breaking).\n"
        "- topic: one of " + ", ".join(TOPIC_CHOICES) + " or a more specific label.\n"
        "- language: 2-letter code of the post language.\n"
        "Only summarize the section marked >>> MESSAGE <<<; background context is for tone only."
        "{{LANG_INSTRUCTION}}\n"
    ),
    TOPIC: (
        "Assign one coarse topic to this news summary. Answer with a JSON object "
        '{"topic": "..."} using one of: ' + ", ".join(TOPIC_CHOICES) + ".\n"
    ),
    CLUSTER: (
        "You get {{MESSAGE_COUNT}} numbered news summaries. Group the ones that report the same "
        'event. Return a JSON object {"groups": [[1, 4], [2], [3, 5]]} covering every number '
        "exactly once.\n"
    ),
    NARRATIVE: (
        "You are the editor of a news digest. Write a short overview (120-200 words) of the "
        "summaries below in Telegram HTML. Lead with the most significant story, then notable "
        "developments as bullet points (•). Every fact must come from the inputs. Use only <b> "
        "and <i> tags and close every tag.{{LANG_INSTRUCTION}}\n"
    ),
    CLUSTER_SUMMARY: (
        "Merge these related summaries about one event into a single sentence without repeated "
        "facts. Keep existing <b> tags, at most 3 bold terms.{{LANG_INSTRUCTION}}\n"
    ),
    CLUSTER_TOPIC: (
        "Write a 2-4 word topic label for these related summaries, like a short headline with no "
        "final punctuation.{{LANG_INSTRUCTION}}\n"
    ),
    COVER: (
        "Compress these {{MESSAGE_COUNT}} news summaries into at most 5 short visual themes "
        "(2-5 words each, no names of real people), one per line.\n"
    ),
    RELEVANCE_GATE: (
        "You get {{MESSAGE_COUNT}} numbered news summaries picked for a digest. Return a JSON object "
        '{"keep": [1, 3]} listing the numbers that are real news worth reading; drop '
        "ads, giveaways and repeated announcements.\n"
    ),
}

SettingGetter = Callable[[str, Any], Any]


@dataclass(slots=True)
class Prompt:
    base: str
    version: str
    text: str


def active_key(base: str) -> str:
    return f"prompt:{base}:active"


def version_key(base: str, version: str) -> str:
    return f"prompt:{base}:{version}"


def default_prompt(base: str) -> str:
    return _DEFAULTS[base]


def load_prompt(base: str, get_setting: SettingGetter | None = None) -> Prompt:
    """Resolve the active prompt version from settings, falling back to the built-in v1."""
    version = DEFAULT_VERSION
    if get_setting is not None:
        active = get_setting(active_key(base), None)
        if isinstance(active, str) and active.strip():
            version = active.strip()
        override = get_setting(version_key(base, version), None)
        if isinstance(override, str) and override.strip():
            return Prompt(base=base, version=version, text=override)
    return Prompt(base=base, version=version, text=_DEFAULTS[base])


def language_instruction(language: str | None) -> str:
    if not language:
        return ""
    return f" IMPORTANT: write the output in {language} language."


def apply_tokens(template: str, *, language: str | None = None, count: int = 0) -> str:
    instruction = language_instruction(language)
    text = template.replace(COUNT_PLACEHOLDER, str(count))
    if LANG_PLACEHOLDER in text:
        return text.replace(LANG_PLACEHOLDER, instruction)
    if instruction:
        return text.rstrip() + instruction + "\n"
    return text


def numbered(lines: list[str]) -> str:
    return "".join(f"[{index}] {line}\n" for index, line in enumerate(lines, start=1))
