from __future__ import annotations

import re
from dataclasses import dataclass

from tgdigest.pipeline.settings import (
    FILTER_MODE_ALLOWLIST,
    FILTER_MODE_DENYLIST,
    FILTER_MODE_MIXED,
    PipelineSettings,
)

REASON_FORWARDED = "forwarded"
REASON_EMOJI_ONLY = "emoji_only"
REASON_BOILERPLATE = "boilerplate"
REASON_MIN_LENGTH = "min_length"
REASON_ADS = "ads"
REASON_DENY = "deny_keyword"
REASON_ALLOW_MISS = "allow_miss"

_BOILERPLATE_PREFIXES = (
    "subscribe",
    "share this",
    "share",
    "donate",
    "support us",
    "follow",
    "подпис",
    "поддерж",
    "подел",
    "донат",
    "спонсор",
)
_URL_LINE_RE = re.compile(r"^(?:https?://|t\.me/|www\.)\S+$", re.IGNORECASE)


@dataclass(slots=True)
class FilterDecision:
    reason: str
    detail: str | None = None


def is_emoji_only(text: str) -> bool:
    """True when the text has no letters or digits at all."""
    return not any(char.isalnum() for char in text)


def _is_boilerplate_line(line: str) -> bool:
    return line.lower().startswith(_BOILERPLATE_PREFIXES)


def is_boilerplate_only(text: str) -> bool:
    lines = [line.strip() for line in text.replace("\r\n", "\n").split("\n")]
    non_empty = [line for line in lines if line]
    if not non_empty:
        return False
    for line in non_empty:
        if _URL_LINE_RE.match(line) or not _is_boilerplate_line(line):
            return False
    return True


class Filterer:
    """Cheap text filters that run before any LLM call."""

    def __init__(self, settings: PipelineSettings) -> None:
        self._settings = settings
        self._ads = tuple(keyword.casefold() for keyword in settings.ads_keywords)
        self._deny = [p.pattern.casefold() for p in settings.patterns if p.type == "deny"]
        self._allow = [p.pattern.casefold() for p in settings.patterns if p.type == "allow"]

    def check(
        self, text: str | None, *, is_forward: bool = False, has_media: bool = False
    ) -> FilterDecision | None:
        """Return the drop decision, or None when the message passes."""
        settings = self._settings
        body = (text or "").strip()

        if settings.skip_forwards and is_forward:
            return FilterDecision(REASON_FORWARDED)

        if not body:
            if has_media:
                return FilterDecision(REASON_MIN_LENGTH, "media_only")
            return FilterDecision(REASON_EMOJI_ONLY)
        if is_emoji_only(body):
            return FilterDecision(REASON_EMOJI_ONLY)

        if is_boilerplate_only(body):
            return FilterDecision(REASON_BOILERPLATE)

        if settings.min_length > 0 and len(body) < settings.min_length:
            return FilterDecision(REASON_MIN_LENGTH, f"length={len(body)}")

        folded = body.casefold()
        if settings.ads_enabled:
            for keyword in self._ads:
                if keyword and keyword in folded:
                    return FilterDecision(REASON_ADS, keyword)

        if settings.filter_mode in (FILTER_MODE_DENYLIST, FILTER_MODE_MIXED):
            for pattern in self._deny:
                if pattern in folded:
                    return FilterDecision(REASON_DENY, pattern)

        if settings.filter_mode in (FILTER_MODE_ALLOWLIST, FILTER_MODE_MIXED) and self._allow:
            if not any(pattern in folded for pattern in self._allow):
                return FilterDecision(REASON_ALLOW_MISS)

        return None
