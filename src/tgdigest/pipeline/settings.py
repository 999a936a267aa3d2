from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

DEDUP_STRICT = "strict"
DEDUP_SEMANTIC = "semantic"
DEDUP_MODES = (DEDUP_STRICT, DEDUP_SEMANTIC)

FILTER_MODE_MIXED = "mixed"
FILTER_MODE_ALLOWLIST = "allowlist"
FILTER_MODE_DENYLIST = "denylist"
FILTER_MODES = (FILTER_MODE_MIXED, FILTER_MODE_ALLOWLIST, FILTER_MODE_DENYLIST)

DEFAULT_ADS_KEYWORDS = (
    "#ad",
    "sponsored",
    "promo",
    "реклама",
    "подпишись",
    "купи",
    "зарабатывай",
    "выигрывай",
)

SETTING_KEYS = (
    "filters_skip_forwards",
    "filters_min_length",
    "filters_ads",
    "filters_ads_keywords",
    "filters_mode",
    "filters",
    "relevance_threshold",
    "topics_enabled",
    "dedup_mode",
    "dedup_window_hours",
    "digest_language",
)


@dataclass(slots=True)
class FilterPattern:
    type: str
    pattern: str


@dataclass(slots=True)
class PipelineSettings:
    skip_forwards: bool = False
    min_length: int = 20
    ads_enabled: bool = False
    ads_keywords: tuple[str, ...] = DEFAULT_ADS_KEYWORDS
    filter_mode: str = FILTER_MODE_MIXED
    patterns: list[FilterPattern] = field(default_factory=list)
    relevance_threshold: float = 0.5
    topics_enabled: bool = True
    dedup_mode: str = DEDUP_STRICT
    dedup_window_hours: int = 36
    language: str | None = None


def as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _patterns(value: Any) -> list[FilterPattern]:
    if not isinstance(value, list):
        return []
    patterns: list[FilterPattern] = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        kind = str(entry.get("type", "")).strip().lower()
        pattern = str(entry.get("pattern", "")).strip()
        if kind in {"allow", "deny"} and pattern and entry.get("active", True):
            patterns.append(FilterPattern(type=kind, pattern=pattern))
    return patterns


def load_pipeline_settings(
    get_settings_map: Callable[[list[str]], dict[str, Any]],
    *,
    default_relevance: float = 0.5,
) -> PipelineSettings:
    """Read the runtime-tunable pipeline knobs; unknown or broken values keep defaults."""
    raw = get_settings_map(list(SETTING_KEYS))
    defaults = PipelineSettings(relevance_threshold=default_relevance)

    keywords = raw.get("filters_ads_keywords")
    if isinstance(keywords, list) and keywords:
        ads_keywords = tuple(str(word).strip() for word in keywords if str(word).strip())
    else:
        ads_keywords = defaults.ads_keywords

    mode = str(raw.get("filters_mode") or defaults.filter_mode).strip().lower()
    if mode not in FILTER_MODES:
        logger.warning(
            "pipeline settings unknown filters_mode={} using={}", mode, defaults.filter_mode
        )
        mode = defaults.filter_mode

    dedup_mode = str(raw.get("dedup_mode") or defaults.dedup_mode).strip().lower()
    if dedup_mode not in DEDUP_MODES:
        logger.warning(
            "pipeline settings unknown dedup_mode={} using={}", dedup_mode, defaults.dedup_mode
        )
        dedup_mode = defaults.dedup_mode

    threshold = as_float(raw.get("relevance_threshold"), defaults.relevance_threshold)
    language = raw.get("digest_language")

    return PipelineSettings(
        skip_forwards=as_bool(raw.get("filters_skip_forwards"), defaults.skip_forwards),
        min_length=max(0, as_int(raw.get("filters_min_length"), defaults.min_length)),
        ads_enabled=as_bool(raw.get("filters_ads"), defaults.ads_enabled),
        ads_keywords=ads_keywords,
        filter_mode=mode,
        patterns=_patterns(raw.get("filters")),
        relevance_threshold=max(0.0, min(1.0, threshold)),
        topics_enabled=as_bool(raw.get("topics_enabled"), defaults.topics_enabled),
        dedup_mode=dedup_mode,
        dedup_window_hours=max(
            0, as_int(raw.get("dedup_window_hours"), defaults.dedup_window_hours)
        ),
        language=str(language).strip() if isinstance(language, str) and language.strip() else None,
    )
