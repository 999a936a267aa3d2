from __future__ import annotations

from typing import Any

from tgdigest.db.repo_channels import clamp_weight


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def effective_relevance_threshold(global_threshold: float, channel: Any | None) -> float:
    """max(global, channel base) plus the auto-relevance delta when enabled, within [0, 1]."""
    threshold = float(global_threshold)
    if channel is None:
        return _clamp(threshold)
    base = getattr(channel, "relevance_threshold", None)
    if base is not None:
        threshold = max(threshold, float(base))
    if getattr(channel, "auto_relevance_enabled", False):
        threshold += float(getattr(channel, "relevance_threshold_delta", 0.0) or 0.0)
    return _clamp(threshold)


def weighted_importance(importance: float | None, channel_weight: float | None) -> float:
    weight = clamp_weight(channel_weight if channel_weight is not None else 1.0)
    return min(1.0, max(0.0, float(importance or 0.0)) * weight)
